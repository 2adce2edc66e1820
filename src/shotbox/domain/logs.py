"""Demultiplexed container log records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class StreamKind(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True, slots=True)
class LogFrame:
    stream: StreamKind
    payload: bytes

    @property
    def length(self) -> int:
        return len(self.payload)

    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace").rstrip("\r\n")


__all__ = ["LogFrame", "StreamKind"]
