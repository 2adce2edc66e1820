"""Inputs and outputs of a single capture run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ScreenshotFormat = Literal["jpeg", "png", "webp"]

_LOSSY_FORMATS: frozenset[str] = frozenset({"jpeg", "webp"})


@dataclass(frozen=True, slots=True)
class ScreenshotOptions:
    format: ScreenshotFormat = "jpeg"
    quality: int | None = 80

    def __post_init__(self) -> None:
        if self.format not in ("jpeg", "png", "webp"):
            raise ValueError(f"unsupported screenshot format: {self.format!r}")
        if self.quality is not None and not 0 <= self.quality <= 100:
            raise ValueError("screenshot quality must be between 0 and 100")

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"format": self.format}
        if self.quality is not None and self.format in _LOSSY_FORMATS:
            params["quality"] = self.quality
        return params


@dataclass(frozen=True, slots=True)
class CaptureRequest:
    url: str
    expression: str = "document.title"
    screenshot: ScreenshotOptions = field(default_factory=ScreenshotOptions)
    timeout_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class NavigationResult:
    url: str
    value: Any
    screenshot: bytes
    format: ScreenshotFormat
    quality: int | None
    evaluation_error: str | None = None


@dataclass(frozen=True, slots=True)
class CaptureOutcome:
    result: NavigationResult
    container_id: str
    teardown_errors: tuple[BaseException, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.teardown_errors


__all__ = [
    "CaptureOutcome",
    "CaptureRequest",
    "NavigationResult",
    "ScreenshotFormat",
    "ScreenshotOptions",
]
