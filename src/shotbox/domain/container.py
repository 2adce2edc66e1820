"""Container handle owned by the runtime adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class ContainerState(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    REMOVED = "removed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PortBinding:
    """One published TCP port: ``container_port`` reachable at ``host_ip:host_port``."""

    container_port: int
    host_port: int
    host_ip: str = "0.0.0.0"  # noqa: S104

    @property
    def key(self) -> str:
        return f"{self.container_port}/tcp"


@dataclass(slots=True)
class ContainerHandle:
    """Runtime identifier plus the state the runtime adapter last drove it to.

    Only the runtime mutates ``state`` and ``port_bindings``; everything else treats
    the handle as read-only.
    """

    id: str
    name: str
    image: str
    port_bindings: dict[int, PortBinding] = field(default_factory=dict)
    state: ContainerState = ContainerState.CREATED

    def host_port(self, container_port: int) -> int:
        binding = self.port_bindings.get(container_port)
        if binding is None:
            raise KeyError(f"container port {container_port} is not published")
        return binding.host_port

    @property
    def short_id(self) -> str:
        return self.id[:12]


__all__ = ["ContainerHandle", "ContainerState", "PortBinding"]
