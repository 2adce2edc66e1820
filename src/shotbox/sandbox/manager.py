"""Container runtime interface used by the capture pipeline."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from shotbox.domain.container import ContainerHandle
from shotbox.sandbox.options import ContainerOptions


class ContainerRuntime(Protocol):
    """Lifecycle manager for the browser container; knows nothing about DevTools."""

    async def create(self, options: ContainerOptions) -> ContainerHandle:
        """Create (but do not start) a container and return its handle."""

    async def start(self, handle: ContainerHandle) -> None:
        """Start a created container and refresh its published ports."""

    def logs(self, handle: ContainerHandle, *, timestamps: bool = False) -> AsyncIterator[bytes]:
        """Return the raw, still-multiplexed combined stdout/stderr stream."""

    async def stop(self, handle: ContainerHandle, *, grace_seconds: int) -> None:
        """Request a graceful stop; never raises for already-stopped containers."""

    async def remove(self, handle: ContainerHandle, *, force: bool = True) -> None:
        """Remove the container; a second call on the same handle is a no-op."""

    async def aclose(self) -> None:
        """Release client-side resources."""


__all__ = ["ContainerRuntime"]
