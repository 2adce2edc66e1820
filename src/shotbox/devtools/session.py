"""Chrome DevTools Protocol session over a single WebSocket connection.

One reader task owns the receive side. Messages carrying an ``id`` resolve the
matching pending command; messages carrying only a ``method`` are events and are
appended to every subscription for that method. Both paths use non-blocking hand-offs,
so an event burst never delays a command response and vice versa.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from types import TracebackType
from typing import Any, Protocol

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from shotbox.domain.target import Target
from shotbox.errors import CommandError, SessionClosedError, SessionConnectionError, SubscriptionError

logger = logging.getLogger(__name__)

JsonObject = dict[str, Any]


class SessionTransport(Protocol):
    """Bidirectional text-message transport (a WebSocket in production)."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[SessionTransport]]


async def connect_websocket(url: str) -> SessionTransport:
    # Screenshots travel base64-encoded inside one message.
    return await websocket_connect(url, max_size=None)


class EventSubscription:
    """Buffered events for one method, filled from subscription time on.

    Events are only removed from the buffer by a receive that returns them, so a
    receive abandoned by a timeout never loses one.
    """

    def __init__(self, session: DevToolsSession, method: str) -> None:
        self.method = method
        self._session = session
        self._buffer: deque[JsonObject] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False

    def deliver(self, params: JsonObject) -> None:
        if self._closed:
            return
        self._buffer.append(params)
        self._wakeup.set()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def receive(self) -> JsonObject:
        return await self._session.receive(self)

    async def _get(self) -> JsonObject:
        while not self._buffer:
            if self._closed:
                raise SessionClosedError(f"subscription to {self.method} is closed")
            self._wakeup.clear()
            await self._wakeup.wait()
        return self._buffer.popleft()

    def _mark_closed(self) -> None:
        self._closed = True
        self._wakeup.set()

    def close(self) -> None:
        if self._closed:
            return
        self._mark_closed()
        self._session._unsubscribe(self)


class DevToolsSession:
    """Correlated commands plus buffered event subscriptions on one connection."""

    def __init__(
        self,
        transport: SessionTransport,
        *,
        deadline: float | None = None,
        name: str = "devtools",
    ) -> None:
        self._transport = transport
        self._deadline = deadline
        self._name = name
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future[JsonObject]]] = {}
        self._subscriptions: dict[str, list[EventSubscription]] = {}
        self.closed_event = asyncio.Event()
        self._close_reason: str | None = None
        self._reader = asyncio.create_task(self._read_loop(), name=f"{name}-reader")

    @classmethod
    async def open(
        cls,
        target: Target,
        *,
        deadline: float | None = None,
        connector: Connector | None = None,
    ) -> DevToolsSession:
        """Connect to ``target`` and start routing messages."""

        if not target.websocket_url:
            raise SessionConnectionError(f"target {target.id} has no debugger URL")
        connect = connector or connect_websocket
        loop = asyncio.get_running_loop()
        try:
            async with asyncio.timeout_at(deadline):
                transport = await connect(target.websocket_url)
        except TimeoutError as exc:
            if deadline is not None and loop.time() >= deadline:
                raise
            # The client gave up on a stalled handshake before the run deadline.
            raise SessionConnectionError(
                f"devtools handshake with {target.websocket_url} timed out: {exc!r}"
            ) from exc
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            raise SessionConnectionError(
                f"devtools handshake with {target.websocket_url} failed: {exc!r}"
            ) from exc
        logger.info(
            "devtools session opened",
            extra={"data": {"target_id": target.id, "url": target.websocket_url}},
        )
        return cls(transport, deadline=deadline, name=f"devtools-{target.id[:8]}")

    # ------------------------------------------------------------------
    # public API

    @property
    def closed(self) -> bool:
        return self.closed_event.is_set()

    @property
    def deadline(self) -> float | None:
        return self._deadline

    async def enable_domain(self, domain: str) -> JsonObject:
        return await self.command(f"{domain}.enable")

    def subscribe(self, method: str) -> EventSubscription:
        if self.closed:
            raise SubscriptionError(f"cannot subscribe to {method}: session is closed")
        subscription = EventSubscription(self, method)
        self._subscriptions.setdefault(method, []).append(subscription)
        return subscription

    async def command(self, method: str, params: Mapping[str, Any] | None = None) -> JsonObject:
        """Send one command and wait for its own response."""

        if self.closed:
            raise SessionClosedError(f"cannot send {method}: {self._close_reason or 'session closed'}")
        command_id = next(self._ids)
        future: asyncio.Future[JsonObject] = asyncio.get_running_loop().create_future()
        self._pending[command_id] = (method, future)
        message: JsonObject = {"id": command_id, "method": method}
        if params:
            message["params"] = dict(params)
        try:
            async with asyncio.timeout_at(self._deadline):
                await self._transport.send(json.dumps(message))
                return await future
        except ConnectionClosed as exc:
            raise SessionClosedError(f"connection closed while sending {method}") from exc
        finally:
            self._pending.pop(command_id, None)

    async def receive(self, subscription: EventSubscription) -> JsonObject:
        """Return the next buffered event of ``subscription``, waiting if necessary."""

        async with asyncio.timeout_at(self._deadline):
            return await subscription._get()

    async def close(self) -> None:
        """Close the connection; pending commands fail with ``SessionClosedError``."""

        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        if not self.closed:
            self._shutdown("session closed")
        try:
            await self._transport.close()
        except Exception as exc:  # noqa: BLE001 - closing an already broken socket
            logger.debug("devtools transport close failed: %r", exc)

    async def __aenter__(self) -> DevToolsSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # helpers

    async def _read_loop(self) -> None:
        reason = "connection closed by remote"
        try:
            while True:
                raw = await self._transport.recv()
                self._dispatch(raw)
        except ConnectionClosed as exc:
            reason = f"connection closed by remote: {exc}"
        except asyncio.CancelledError:
            reason = "session closed"
            raise
        except Exception as exc:
            reason = f"reader failed: {exc!r}"
            logger.exception("devtools reader failed", extra={"data": {"session": self._name}})
        finally:
            self._shutdown(reason)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("dropping undecodable devtools message", extra={"data": {"session": self._name}})
            return
        if not isinstance(message, dict):
            return

        if "id" in message:
            self._resolve(message)
        elif "method" in message:
            params = message.get("params")
            for subscription in tuple(self._subscriptions.get(message["method"], ())):
                subscription.deliver(params if isinstance(params, dict) else {})

    def _resolve(self, message: JsonObject) -> None:
        entry = self._pending.get(message["id"])
        if entry is None:
            logger.warning(
                "dropping response for unknown command id",
                extra={"data": {"session": self._name, "id": message["id"]}},
            )
            return
        method, future = entry
        if future.done():
            return
        error = message.get("error")
        if isinstance(error, dict):
            future.set_exception(CommandError.from_payload(method, error))
            return
        result = message.get("result")
        future.set_result(result if isinstance(result, dict) else {})

    def _shutdown(self, reason: str) -> None:
        if self.closed:
            return
        self._close_reason = reason
        self.closed_event.set()
        for method, future in self._pending.values():
            if not future.done():
                future.set_exception(SessionClosedError(f"{method} aborted: {reason}"))
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription._mark_closed()
        self._subscriptions.clear()
        logger.debug("devtools session shut down: %s", reason, extra={"data": {"session": self._name}})

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.method)
        if subscriptions and subscription in subscriptions:
            subscriptions.remove(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.method]


__all__ = [
    "Connector",
    "DevToolsSession",
    "EventSubscription",
    "SessionTransport",
    "connect_websocket",
]
