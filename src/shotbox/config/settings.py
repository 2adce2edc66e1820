"""Environment-driven settings for a capture run."""

from __future__ import annotations

import logging
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from shotbox.domain.capture import CaptureRequest, ScreenshotFormat, ScreenshotOptions
from shotbox.domain.container import PortBinding
from shotbox.sandbox.docker import DEFAULT_DOCKER_HOST
from shotbox.sandbox.options import (
    DEFAULT_CAPABILITIES,
    DEFAULT_CONTAINER_NAME,
    DEFAULT_IMAGE,
    DEVTOOLS_PORT,
    ContainerOptions,
)

_SETTINGS_CONFIG = SettingsConfigDict(
    env_prefix="",
    extra="ignore",
    case_sensitive=False,
    frozen=True,
    env_file=".env",
    env_file_encoding="utf-8",
)


class ContainerSettings(BaseSettings):
    """Docker runtime and browser container settings."""

    model_config = _SETTINGS_CONFIG

    docker_host: str = Field(default=DEFAULT_DOCKER_HOST, alias="DOCKER_HOST")
    docker_api_version: str | None = Field(default=None, alias="SHOTBOX_DOCKER_API_VERSION")
    image: str = Field(default=DEFAULT_IMAGE, alias="SHOTBOX_IMAGE")
    container_name: str = Field(default=DEFAULT_CONTAINER_NAME, alias="SHOTBOX_CONTAINER_NAME")
    host_ip: str = Field(default="0.0.0.0", alias="SHOTBOX_HOST_IP")  # noqa: S104
    host_port: int = Field(
        default=DEVTOOLS_PORT,
        alias="SHOTBOX_HOST_PORT",
        ge=0,
        lt=65536,
        description="Published host port for DevTools; 0 lets the daemon pick one.",
    )
    container_port: int = Field(default=DEVTOOLS_PORT, alias="SHOTBOX_CONTAINER_PORT", gt=0, lt=65536)
    cap_add: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_CAPABILITIES, alias="SHOTBOX_CAP_ADD"
    )
    stop_grace_seconds: int = Field(default=1, alias="SHOTBOX_STOP_GRACE_SECONDS", ge=0)
    log_timestamps: bool = Field(default=False, alias="SHOTBOX_LOG_TIMESTAMPS")

    @field_validator("cap_add", mode="before")
    @classmethod
    def _split_capabilities(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(part.strip().upper() for part in value.split(",") if part.strip())
        return value

    def container_options(self, *, image: str | None = None) -> ContainerOptions:
        return ContainerOptions(
            image=image or self.image,
            container_name=self.container_name,
            port_bindings=(
                PortBinding(
                    container_port=self.container_port,
                    host_port=self.host_port,
                    host_ip=self.host_ip,
                ),
            ),
            cap_add=self.cap_add,
            stop_timeout_seconds=self.stop_grace_seconds,
            log_timestamps=self.log_timestamps,
        )


class DevToolsSettings(BaseSettings):
    """Readiness probing settings for the DevTools endpoint."""

    model_config = _SETTINGS_CONFIG

    host: str = Field(default="127.0.0.1", alias="SHOTBOX_DEVTOOLS_HOST")
    poll_interval_seconds: float = Field(default=0.5, alias="SHOTBOX_POLL_INTERVAL_SECONDS", gt=0)
    create_after_attempts: int = Field(default=3, alias="SHOTBOX_CREATE_AFTER_ATTEMPTS", ge=1)
    create_target_method: str = Field(default="PUT", alias="SHOTBOX_CREATE_TARGET_METHOD")


class CaptureSettings(BaseSettings):
    """What to capture and how long the run may take."""

    model_config = _SETTINGS_CONFIG

    url: str = Field(default="https://golang.org", alias="SHOTBOX_URL")
    expression: str = Field(default="document.title", alias="SHOTBOX_EXPRESSION")
    screenshot_format: ScreenshotFormat = Field(default="jpeg", alias="SHOTBOX_SCREENSHOT_FORMAT")
    screenshot_quality: int = Field(default=80, alias="SHOTBOX_SCREENSHOT_QUALITY", ge=0, le=100)
    output_path: str = Field(default="screenshot.jpg", alias="SHOTBOX_OUTPUT_PATH")
    timeout_seconds: float = Field(default=30.0, alias="SHOTBOX_TIMEOUT_SECONDS", gt=0)
    settle_delay_seconds: float = Field(default=2.0, alias="SHOTBOX_SETTLE_DELAY_SECONDS", ge=0)

    def request(self) -> CaptureRequest:
        return CaptureRequest(
            url=self.url,
            expression=self.expression,
            screenshot=ScreenshotOptions(format=self.screenshot_format, quality=self.screenshot_quality),
            timeout_seconds=self.timeout_seconds,
        )


class Settings(BaseSettings):
    """Complete configuration resolved from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    container: ContainerSettings = Field(default_factory=ContainerSettings)
    devtools: DevToolsSettings = Field(default_factory=DevToolsSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)

    @classmethod
    def load(cls) -> Settings:
        instance = cls()
        logger = logging.getLogger("shotbox.settings")
        logger.debug("settings loaded: %r", instance)
        return instance


__all__ = ["CaptureSettings", "ContainerSettings", "DevToolsSettings", "Settings"]
