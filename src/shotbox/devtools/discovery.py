"""DevTools HTTP discovery and the readiness probe built on it."""

from __future__ import annotations

import asyncio
import logging
from typing import Final
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError

from shotbox.domain.target import Target, TargetKind
from shotbox.errors import ReadinessTimeoutError

logger = logging.getLogger(__name__)

# Keep the scheme and path readable; escape "?", "&", "=" and "#" so the whole URL
# stays one query value.
_URL_SAFE: Final[str] = ":/@"

_TARGET_LIST: Final[TypeAdapter[list[Target]]] = TypeAdapter(list[Target])

# Failures that mean "the browser is not listening yet", as opposed to "listening but
# without a usable target". A 4xx from the list endpoint
# is handled as an empty poll before it gets here.
_NOT_READY_ERRORS: Final[tuple[type[Exception], ...]] = (
    httpx.TransportError,
    httpx.HTTPStatusError,
    ValidationError,
    ValueError,
)


class DevToolsDiscovery:
    """Client for the browser's ``/json`` discovery endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 2.0,
        create_method: str = "PUT",
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._create_method = create_method.upper()
        self._owns_client = client is None
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def list_targets(self) -> list[Target]:
        response = await self._client.get("/json/list")
        response.raise_for_status()
        return _TARGET_LIST.validate_python(response.json())

    async def create_target(self, url: str = "about:blank") -> Target:
        path = f"/json/new?{quote(url, safe=_URL_SAFE)}"
        response = await self._client.request(self._create_method, path)
        response.raise_for_status()
        return Target.model_validate(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ReadinessProbe:
    """Polls discovery until a debuggable target exists, creating one if needed.

    Only a reachable endpoint counts toward the create fallback: one that lists no
    matching target, or rejects the list request with a 4xx. Transport errors, 5xx
    answers and unparsable payloads are just retried until the deadline.
    """

    def __init__(
        self,
        discovery: DevToolsDiscovery,
        *,
        poll_interval: float = 0.5,
        create_after_attempts: int = 3,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if create_after_attempts < 1:
            raise ValueError("create_after_attempts must be at least 1")
        self._discovery = discovery
        self._poll_interval = poll_interval
        self._create_after = create_after_attempts

    async def resolve(self, kind: TargetKind, deadline: float) -> Target:
        """Return a target of ``kind``; ``deadline`` is an event-loop timestamp."""

        loop = asyncio.get_running_loop()
        attempts = 0
        empty_polls = 0
        last_error: BaseException | None = None

        while loop.time() < deadline:
            attempts += 1
            try:
                async with asyncio.timeout_at(deadline):
                    target = await self._poll_once(kind)
                    if target is None:
                        empty_polls += 1
                        if empty_polls >= self._create_after:
                            target = await self._try_create(kind)
            except TimeoutError as exc:
                last_error = last_error or exc
                break
            except _NOT_READY_ERRORS as exc:
                last_error = exc
                logger.debug(
                    "devtools endpoint not ready: %r",
                    exc,
                    extra={"data": {"base_url": self._discovery.base_url, "attempt": attempts}},
                )
            else:
                if target is not None:
                    logger.info(
                        "devtools target resolved",
                        extra={
                            "data": {
                                "target_id": target.id,
                                "kind": target.kind.value,
                                "attempts": attempts,
                            }
                        },
                    )
                    return target

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self._poll_interval, remaining))

        raise ReadinessTimeoutError(
            f"no {kind.value} target at {self._discovery.base_url} after {attempts} attempts"
            f" (last_error={last_error!r})",
            attempts=attempts,
            last_error=last_error,
        )

    async def _poll_once(self, kind: TargetKind) -> Target | None:
        try:
            targets = await self._discovery.list_targets()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code >= 500:
                raise
            # A 4xx comes from a listening browser: treat it as an empty list.
            logger.debug(
                "devtools target list rejected: status=%s",
                exc.response.status_code,
                extra={"data": {"base_url": self._discovery.base_url}},
            )
            return None
        for target in targets:
            if target.kind is kind and target.debuggable:
                return target
        return None

    async def _try_create(self, kind: TargetKind) -> Target | None:
        try:
            target = await self._discovery.create_target()
        except _NOT_READY_ERRORS as exc:
            logger.warning(
                "devtools target creation failed: %r",
                exc,
                extra={"data": {"base_url": self._discovery.base_url}},
            )
            return None
        if target.kind is not kind or not target.debuggable:
            logger.warning(
                "created devtools target is not usable",
                extra={"data": {"target_id": target.id, "type": target.type}},
            )
            return None
        return target


__all__ = ["DevToolsDiscovery", "ReadinessProbe"]
