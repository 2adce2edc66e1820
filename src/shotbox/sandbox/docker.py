"""Docker Engine API runtime for the browser container."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any, Final
from urllib.parse import urlsplit

import httpx

from shotbox.domain.container import ContainerHandle, ContainerState, PortBinding
from shotbox.errors import ContainerError, CreationError, RemovalError, StartError
from shotbox.sandbox.options import ContainerOptions

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST: Final[str] = "unix:///var/run/docker.sock"
_UDS_BASE_URL: Final[str] = "http://docker"


def resolve_docker_endpoint(docker_host: str) -> tuple[str, httpx.AsyncBaseTransport | None]:
    """Map a ``DOCKER_HOST`` value onto an httpx base URL and transport."""

    parts = urlsplit(docker_host)
    if parts.scheme == "unix":
        return _UDS_BASE_URL, httpx.AsyncHTTPTransport(uds=parts.path)
    if parts.scheme == "tcp":
        return f"http://{parts.netloc}", None
    if parts.scheme in ("http", "https"):
        return docker_host.rstrip("/"), None
    raise ValueError(f"unsupported DOCKER_HOST: {docker_host!r}")


class DockerEngineRuntime:
    """Drives container lifecycle through the Docker Engine HTTP API."""

    def __init__(
        self,
        *,
        docker_host: str = DEFAULT_DOCKER_HOST,
        api_version: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._prefix = f"/v{api_version.lstrip('v')}" if api_version else ""
        self._timeout = timeout
        self._owns_client = client is None
        if client is None:
            base_url, transport = resolve_docker_endpoint(docker_host)
            client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._client: httpx.AsyncClient = client

    async def create(self, options: ContainerOptions) -> ContainerHandle:
        body = _create_body(options)
        logger.info(
            "creating browser container",
            extra={
                "data": {
                    "image": options.image,
                    "container_name": options.container_name,
                    "ports": [binding.key for binding in options.port_bindings],
                    "cap_add": list(options.cap_add),
                }
            },
        )
        try:
            response = await self._client.post(
                self._path("/containers/create"),
                params={"name": options.container_name},
                json=body,
            )
        except httpx.HTTPError as exc:
            raise CreationError(f"container runtime unreachable: {exc!r}") from exc
        if response.status_code != 201:
            detail = _summarize_response(response)
            raise CreationError(
                f"container create rejected with status {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CreationError(
                f"container create returned an undecodable body: {_summarize_response(response)}",
                status_code=response.status_code,
            ) from exc
        container_id = payload.get("Id") if isinstance(payload, Mapping) else None
        if not container_id:
            raise CreationError("container create did not return an identifier")
        for warning in payload.get("Warnings") or ():
            logger.warning("container create warning: %s", warning, extra={"container": container_id})

        return ContainerHandle(
            id=str(container_id),
            name=options.container_name,
            image=options.image,
            port_bindings={binding.container_port: binding for binding in options.port_bindings},
        )

    async def start(self, handle: ContainerHandle) -> None:
        if handle.state is not ContainerState.CREATED:
            raise StartError(f"container {handle.short_id} cannot start from state {handle.state}")
        try:
            response = await self._client.post(self._path(f"/containers/{handle.id}/start"))
        except httpx.HTTPError as exc:
            handle.state = ContainerState.FAILED
            raise StartError(f"container runtime unreachable: {exc!r}") from exc
        if response.status_code != 204:
            handle.state = ContainerState.FAILED
            detail = _summarize_response(response)
            raise StartError(
                f"container start rejected with status {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        handle.state = ContainerState.RUNNING
        logger.info("browser container started", extra={"container": handle.short_id})
        await self._refresh_port_bindings(handle)

    async def logs(self, handle: ContainerHandle, *, timestamps: bool = False) -> AsyncIterator[bytes]:
        params = {"follow": "1", "stdout": "1", "stderr": "1"}
        if timestamps:
            params["timestamps"] = "1"
        # Follow streams idle for as long as the container is quiet.
        timeout = httpx.Timeout(self._timeout, read=None)
        async with self._client.stream(
            "GET",
            self._path(f"/containers/{handle.id}/logs"),
            params=params,
            timeout=timeout,
        ) as response:
            if response.status_code != 200:
                await response.aread()
                raise ContainerError(
                    f"log stream rejected with status {response.status_code}: "
                    f"{_summarize_response(response)}",
                    stage="logs",
                    status_code=response.status_code,
                )
            async for chunk in response.aiter_raw():
                yield chunk

    async def stop(self, handle: ContainerHandle, *, grace_seconds: int) -> None:
        if handle.state is ContainerState.REMOVED:
            return
        if handle.state is ContainerState.RUNNING:
            handle.state = ContainerState.STOPPING
        logger.info("stopping browser container", extra={"container": handle.short_id})
        try:
            response = await self._client.post(
                self._path(f"/containers/{handle.id}/stop"),
                params={"t": str(grace_seconds)},
                timeout=self._timeout + grace_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "container stop failed (ignored): %r",
                exc,
                extra={"container": handle.short_id},
            )
            return
        # 304: already stopped, 404: already gone.
        if response.status_code not in (204, 304, 404):
            logger.warning(
                "container stop failed (ignored): status=%s detail=%s",
                response.status_code,
                _summarize_response(response),
                extra={"container": handle.short_id},
            )

    async def remove(self, handle: ContainerHandle, *, force: bool = True) -> None:
        if handle.state is ContainerState.REMOVED:
            return
        params = {"force": "1" if force else "0", "v": "1"}
        try:
            response = await self._client.delete(
                self._path(f"/containers/{handle.id}"),
                params=params,
            )
        except httpx.HTTPError as exc:
            raise RemovalError(f"container runtime unreachable: {exc!r}") from exc

        status = response.status_code
        if status == 204:
            handle.state = ContainerState.REMOVED
            logger.info("browser container removed", extra={"container": handle.short_id})
            return
        detail = _summarize_response(response)
        if status == 404 or (status == 409 and "in progress" in detail):
            handle.state = ContainerState.REMOVED
            logger.debug(
                "container already removed: status=%s detail=%s",
                status,
                detail,
                extra={"container": handle.short_id},
            )
            return
        raise RemovalError(
            f"container remove rejected with status {status}: {detail}",
            status_code=status,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _refresh_port_bindings(self, handle: ContainerHandle) -> None:
        try:
            response = await self._client.get(self._path(f"/containers/{handle.id}/json"))
            response.raise_for_status()
            ports = response.json().get("NetworkSettings", {}).get("Ports") or {}
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning(
                "container inspect failed; keeping declared port bindings: %r",
                exc,
                extra={"container": handle.short_id},
            )
            return

        for container_port, declared in list(handle.port_bindings.items()):
            published = _published_binding(ports.get(declared.key))
            if published is None:
                continue
            host_ip, host_port = published
            handle.port_bindings[container_port] = PortBinding(
                container_port=container_port,
                host_port=host_port,
                host_ip=host_ip or declared.host_ip,
            )

    def _path(self, path: str) -> str:
        return f"{self._prefix}{path}"


def _create_body(options: ContainerOptions) -> dict[str, Any]:
    port_bindings = {
        binding.key: [
            {
                "HostIp": binding.host_ip,
                "HostPort": str(binding.host_port) if binding.host_port else "",
            }
        ]
        for binding in options.port_bindings
    }
    body: dict[str, Any] = {
        "Image": options.image,
        "Tty": False,
        "AttachStdout": True,
        "AttachStderr": True,
        "ExposedPorts": {binding.key: {} for binding in options.port_bindings},
        "HostConfig": {
            "PortBindings": port_bindings,
            "CapAdd": list(options.cap_add),
        },
    }
    if options.env:
        body["Env"] = [f"{key}={value}" for key, value in options.env.items()]
    if options.command:
        body["Cmd"] = list(options.command)
    return body


def _published_binding(entries: object) -> tuple[str, int] | None:
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        host_port = str(entry.get("HostPort") or "")
        if host_port.isdigit():
            return str(entry.get("HostIp") or ""), int(host_port)
    return None


def _summarize_response(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = response.text
    if isinstance(data, Mapping) and "message" in data:
        data = data["message"]
    text = str(data)
    return text if len(text) <= 500 else text[:500] + "..."


__all__ = ["DEFAULT_DOCKER_HOST", "DockerEngineRuntime", "resolve_docker_endpoint"]
