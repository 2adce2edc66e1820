"""DevTools target descriptors advertised by the discovery endpoint."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class TargetKind(StrEnum):
    PAGE = "page"
    OTHER = "other"


class Target(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    id: str
    type: str = "other"
    title: str = ""
    url: str = ""
    websocket_url: str | None = Field(default=None, alias="webSocketDebuggerUrl")

    @property
    def kind(self) -> TargetKind:
        return TargetKind.PAGE if self.type == TargetKind.PAGE.value else TargetKind.OTHER

    @property
    def debuggable(self) -> bool:
        return bool(self.websocket_url)


__all__ = ["Target", "TargetKind"]
