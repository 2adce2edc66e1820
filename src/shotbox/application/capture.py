"""Top-level capture run: container, readiness, session, navigation, teardown."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import AsyncExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Tracer

from shotbox.application.navigate import PageNavigator
from shotbox.devtools.discovery import DevToolsDiscovery, ReadinessProbe
from shotbox.devtools.session import Connector, DevToolsSession
from shotbox.domain.capture import CaptureOutcome, CaptureRequest, NavigationResult
from shotbox.domain.container import ContainerHandle
from shotbox.domain.target import Target, TargetKind
from shotbox.errors import CaptureError, DeadlineExceededError
from shotbox.observability.tracing import traced
from shotbox.sandbox.log_stream import LogConsumer, LogDrainWorker, logging_consumer
from shotbox.sandbox.manager import ContainerRuntime
from shotbox.sandbox.options import DEVTOOLS_PORT, ContainerOptions

logger = logging.getLogger(__name__)

DiscoveryFactory = Callable[[str], DevToolsDiscovery]


@dataclass
class _RunState:
    stage: str = "create"
    teardown_errors: list[BaseException] = field(default_factory=list)

    async def guarded(self, label: str, step: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
        try:
            await step(*args, **kwargs)
        except Exception as exc:
            self.teardown_errors.append(exc)
            logger.warning(
                "teardown step failed: %s",
                label,
                exc_info=exc,
                extra={"data": {"step": label, "stage": self.stage}},
            )


class CapturePipeline:
    """Runs one capture and guarantees teardown on every exit path.

    Teardown unwinds in order: session close, container stop, container remove, log
    worker stop. Each step is best-effort; its failure is recorded but never replaces
    the run's own outcome.
    """

    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        options: ContainerOptions,
        devtools_host: str = "127.0.0.1",
        devtools_port: int = DEVTOOLS_PORT,
        discovery_factory: DiscoveryFactory | None = None,
        connector: Connector | None = None,
        log_consumer: LogConsumer | None = None,
        settle_delay_seconds: float = 2.0,
        poll_interval: float = 0.5,
        create_after_attempts: int = 3,
        log_stop_timeout: float = 2.0,
        tracer: Tracer | None = None,
    ) -> None:
        self._runtime = runtime
        self._options = options
        self._devtools_host = devtools_host
        self._devtools_port = devtools_port
        self._discovery_factory = discovery_factory or DevToolsDiscovery
        self._connector = connector
        self._log_consumer = log_consumer
        self._settle_delay = settle_delay_seconds
        self._poll_interval = poll_interval
        self._create_after = create_after_attempts
        self._log_stop_timeout = log_stop_timeout
        self._tracer = tracer or trace.get_tracer("shotbox.capture")

    async def run(self, request: CaptureRequest) -> CaptureOutcome:
        state = _RunState()
        logger.info(
            "capture run starting",
            extra={"data": {"url": request.url, "image": self._options.image}},
        )
        with traced("shotbox.capture", tracer=self._tracer, attributes={"capture.url": request.url}):
            try:
                handle, result = await self._run(request, state)
            except CaptureError as exc:
                exc.at_stage(state.stage)
                exc.teardown_errors = tuple(state.teardown_errors)
                self._log_failure(exc)
                raise
            except TimeoutError as exc:
                error = DeadlineExceededError(
                    f"run deadline of {request.timeout_seconds}s expired during {state.stage}",
                    stage=state.stage,
                )
                error.teardown_errors = tuple(state.teardown_errors)
                self._log_failure(error)
                raise error from exc

        logger.info(
            "capture run succeeded",
            extra={
                "data": {
                    "url": request.url,
                    "container": handle.short_id,
                    "bytes": len(result.screenshot),
                    "teardown_errors": len(state.teardown_errors),
                }
            },
        )
        return CaptureOutcome(
            result=result,
            container_id=handle.id,
            teardown_errors=tuple(state.teardown_errors),
        )

    async def _run(self, request: CaptureRequest, state: _RunState) -> tuple[ContainerHandle, NavigationResult]:
        async with AsyncExitStack() as stack:
            with self._stage(state, "create"):
                handle = await self._runtime.create(self._options)
            deadline = asyncio.get_running_loop().time() + request.timeout_seconds

            drain = LogDrainWorker(
                source=lambda: self._runtime.logs(handle, timestamps=self._options.log_timestamps),
                consumer=self._log_consumer or logging_consumer(handle.short_id),
                container=handle.short_id,
            )
            # Callbacks unwind LIFO: registered in reverse teardown order.
            stack.push_async_callback(state.guarded, "log worker stop", drain.stop, timeout=self._log_stop_timeout)
            stack.push_async_callback(state.guarded, "container remove", self._runtime.remove, handle, force=True)
            stack.push_async_callback(
                state.guarded,
                "container stop",
                self._runtime.stop,
                handle,
                grace_seconds=self._options.stop_timeout_seconds,
            )

            with self._stage(state, "start"):
                await self._runtime.start(handle)
                drain.start()

            with self._stage(state, "settle"):
                async with asyncio.timeout_at(deadline):
                    await asyncio.sleep(self._settle_delay)

            with self._stage(state, "readiness"):
                target = await self._resolve_target(handle, deadline)

            with self._stage(state, "connect"):
                session = await DevToolsSession.open(target, deadline=deadline, connector=self._connector)
            stack.push_async_callback(state.guarded, "session close", session.close)

            with self._stage(state, "navigate"):
                navigator = PageNavigator(session)
                try:
                    result = await navigator.run(request)
                finally:
                    state.stage = navigator.stage

        return handle, result

    async def _resolve_target(self, handle: ContainerHandle, deadline: float) -> Target:
        host_port = handle.host_port(self._devtools_port)
        discovery = self._discovery_factory(f"http://{self._devtools_host}:{host_port}")
        probe = ReadinessProbe(
            discovery,
            poll_interval=self._poll_interval,
            create_after_attempts=self._create_after,
        )
        try:
            return await probe.resolve(TargetKind.PAGE, deadline)
        finally:
            await discovery.aclose()

    @contextmanager
    def _stage(self, state: _RunState, stage: str) -> Iterator[None]:
        state.stage = stage
        with traced(f"shotbox.capture.{stage}", tracer=self._tracer, attributes={"capture.stage": stage}):
            yield

    @staticmethod
    def _log_failure(exc: CaptureError) -> None:
        logger.error(
            "capture run failed: %s",
            exc.describe(),
            extra={
                "data": {
                    "kind": exc.kind,
                    "stage": exc.stage,
                    "category": exc.category,
                    "teardown_errors": [repr(err) for err in exc.teardown_errors],
                }
            },
        )


__all__ = ["CapturePipeline", "DiscoveryFactory"]
