"""Container launch options shared by runtime adapters."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final

from shotbox.domain.container import PortBinding

DEFAULT_IMAGE: Final[str] = "justinribeiro/chrome-headless:latest"
DEFAULT_CONTAINER_NAME: Final[str] = "chromium"
DEVTOOLS_PORT: Final[int] = 9222
# Chrome's own sandbox needs namespace syscalls the default profile denies.
DEFAULT_CAPABILITIES: Final[tuple[str, ...]] = ("SYS_ADMIN",)


@dataclass(frozen=True)
class ContainerOptions:
    """Configuration for launching the browser container."""

    image: str = DEFAULT_IMAGE
    container_name: str = DEFAULT_CONTAINER_NAME
    port_bindings: Sequence[PortBinding] = field(
        default_factory=lambda: (PortBinding(container_port=DEVTOOLS_PORT, host_port=DEVTOOLS_PORT),)
    )
    cap_add: Sequence[str] = DEFAULT_CAPABILITIES
    env: Mapping[str, str] = field(default_factory=dict)
    command: Sequence[str] | None = None
    stop_timeout_seconds: int = 1
    log_timestamps: bool = False

    def __post_init__(self) -> None:
        if not self.image:
            raise ValueError("container image must be provided")
        seen: set[int] = set()
        for binding in self.port_bindings:
            if not 0 < binding.container_port < 65536:
                raise ValueError(f"invalid container port: {binding.container_port}")
            if not 0 <= binding.host_port < 65536:
                raise ValueError(f"invalid host port: {binding.host_port}")
            if binding.container_port in seen:
                raise ValueError(f"duplicate binding for container port {binding.container_port}")
            seen.add(binding.container_port)


__all__ = [
    "ContainerOptions",
    "DEFAULT_CAPABILITIES",
    "DEFAULT_CONTAINER_NAME",
    "DEFAULT_IMAGE",
    "DEVTOOLS_PORT",
]
