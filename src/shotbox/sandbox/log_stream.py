"""Background worker draining a container's multiplexed log stream."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing

from shotbox.domain.logs import LogFrame
from shotbox.errors import LogFrameError
from shotbox.sandbox.demux import demux

logger = logging.getLogger(__name__)

LogConsumer = Callable[[LogFrame], bool | None]
LogSource = Callable[[], AsyncIterator[bytes]]


def logging_consumer(container: str, *, logger_name: str = "shotbox.container") -> LogConsumer:
    """Return a consumer that forwards every frame to a logger."""

    container_log = logging.getLogger(logger_name)

    def _consume(frame: LogFrame) -> bool:
        container_log.info(
            "%s",
            frame.text(),
            extra={"data": {"stream": frame.stream.value, "container": container}},
        )
        return True

    return _consume


class LogDrainWorker:
    """Supervised asyncio task feeding demultiplexed frames to a consumer.

    Errors from the stream or the framing are recorded on ``error`` and logged; they
    never propagate to whoever owns the worker. A consumer returning ``False`` ends
    draining early.
    """

    worker_name = "container-log-drain"

    def __init__(
        self,
        *,
        source: LogSource,
        consumer: LogConsumer,
        container: str = "",
    ) -> None:
        self._source = source
        self._consumer = consumer
        self._container = container
        self._task: asyncio.Task[None] | None = None
        self.frames = 0
        self.error: BaseException | None = None

    def start(self) -> None:
        """Start draining (idempotent)."""

        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=self.worker_name)

    async def stop(self, *, timeout: float = 2.0) -> None:
        """Wait up to ``timeout`` for the stream to end, then cancel the task."""

        task = self._task
        if task is None:
            return
        try:
            if not task.done():
                await asyncio.wait({task}, timeout=timeout)
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        finally:
            self._task = None
        logger.debug(
            "log drain stopped",
            extra={"data": {"container": self._container, "frames": self.frames}},
        )

    async def wait(self) -> None:
        """Block until the stream has been fully drained."""

        task = self._task
        if task is not None:
            await asyncio.shield(task)

    @property
    def running(self) -> bool:
        task = self._task
        return bool(task is not None and not task.done())

    async def _run(self) -> None:
        stream = self._source()
        try:
            async with aclosing(demux(stream)) as frames:
                async for frame in frames:
                    self.frames += 1
                    if self._consumer(frame) is False:
                        break
        except LogFrameError as exc:
            self.error = exc
            logger.warning(
                "container log stream violated framing: %s",
                exc,
                extra={"data": {"container": self._container, "frames": self.frames}},
            )
        except Exception as exc:
            self.error = exc
            logger.exception(
                "container log stream failed",
                extra={"data": {"container": self._container, "frames": self.frames}},
            )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()


__all__ = ["LogConsumer", "LogDrainWorker", "LogSource", "logging_consumer"]
