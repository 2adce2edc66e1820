"""Failure taxonomy for a capture run.

Every terminal failure of the pipeline is a ``CaptureError`` subclass carrying the
``stage`` that failed and a coarse ``category`` so callers can tell runtime/container
problems apart from DevTools protocol faults and deadline expiry.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import ClassVar, Literal

ErrorCategory = Literal["infrastructure", "protocol", "timeout"]


class CaptureError(Exception):
    """Base class for capture pipeline failures."""

    category: ClassVar[ErrorCategory] = "infrastructure"
    default_stage: ClassVar[str] = "run"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage or self.default_stage
        self._stage_pinned = stage is not None
        self.teardown_errors: tuple[BaseException, ...] = ()

    @property
    def kind(self) -> str:
        return type(self).__name__

    def at_stage(self, stage: str) -> CaptureError:
        """Attribute the error to ``stage`` unless a stage was given explicitly."""

        if not self._stage_pinned:
            self.stage = stage
            self._stage_pinned = True
        return self

    def describe(self) -> str:
        return f"{self.kind} [stage={self.stage}]: {self}"


# --- container runtime -------------------------------------------------------


class ContainerError(CaptureError):
    """Raised when the container runtime rejects a lifecycle operation."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.status_code = status_code


class CreationError(ContainerError):
    default_stage = "create"


class StartError(ContainerError):
    default_stage = "start"


class RemovalError(ContainerError):
    default_stage = "remove"


# --- log stream ---------------------------------------------------------------


class LogFrameError(CaptureError):
    """Raised when the multiplexed log stream violates its framing."""

    default_stage = "logs"


class TruncationError(LogFrameError):
    """Raised when the stream ends inside a header or a declared payload."""

    def __init__(self, message: str, *, expected: int, received: int) -> None:
        super().__init__(message)
        self.expected = expected
        self.received = received


class MalformedFrameError(LogFrameError):
    """Raised for frames with an unsupported stream discriminant."""


# --- readiness ------------------------------------------------------------------


class ReadinessTimeoutError(CaptureError):
    category = "timeout"
    default_stage = "readiness"

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


# --- protocol session -----------------------------------------------------------


class ProtocolError(CaptureError):
    category = "protocol"


class SessionConnectionError(ProtocolError):
    """Raised when the DevTools WebSocket handshake fails."""

    default_stage = "connect"


class SessionClosedError(ProtocolError):
    """Raised for waits that were pending or started after the session closed."""


class SubscriptionError(ProtocolError):
    """Raised when subscribing on a closed session."""


class CommandError(ProtocolError):
    """Wraps an error object reported by the remote end for one command."""

    def __init__(
        self,
        method: str,
        *,
        code: int | None = None,
        message: str = "",
        data: object | None = None,
        stage: str | None = None,
    ) -> None:
        detail = f"{method} failed"
        if code is not None:
            detail = f"{detail} (code={code})"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail, stage=stage)
        self.method = method
        self.code = code
        self.remote_message = message
        self.data = data

    @classmethod
    def from_payload(cls, method: str, payload: Mapping[str, object]) -> CommandError:
        code = payload.get("code")
        message = payload.get("message")
        return cls(
            method,
            code=code if isinstance(code, int) else None,
            message=message if isinstance(message, str) else "",
            data=payload.get("data"),
        )


# --- navigation -------------------------------------------------------------------


class NavigationError(ProtocolError):
    """Raised when the browser reports a navigation failure (``errorText``)."""

    default_stage = "navigate"


class NavigationTimeoutError(CaptureError):
    category = "timeout"
    default_stage = "navigate"


class ScreenshotError(ProtocolError):
    default_stage = "capture"


class DeadlineExceededError(CaptureError):
    """Raised when the run deadline expires outside a more specific wait."""

    category = "timeout"


__all__ = [
    "CaptureError",
    "CommandError",
    "ContainerError",
    "CreationError",
    "DeadlineExceededError",
    "ErrorCategory",
    "LogFrameError",
    "MalformedFrameError",
    "NavigationError",
    "NavigationTimeoutError",
    "ProtocolError",
    "ReadinessTimeoutError",
    "RemovalError",
    "ScreenshotError",
    "SessionClosedError",
    "SessionConnectionError",
    "StartError",
    "SubscriptionError",
    "TruncationError",
]
