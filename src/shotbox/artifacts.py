"""Screenshot sinks."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from shotbox.domain.capture import NavigationResult


class ScreenshotSink(Protocol):
    def write(self, result: NavigationResult) -> str:
        """Persist the screenshot and return where it went."""


class FileScreenshotSink:
    """Write screenshots to a local file, replacing it atomically."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def write(self, result: NavigationResult) -> str:
        if not result.screenshot:
            raise ValueError("refusing to write an empty screenshot")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = Path(f"{self._path}.tmp")
        tmp_path.write_bytes(result.screenshot)
        os.replace(tmp_path, self._path)
        return str(self._path)


__all__ = ["FileScreenshotSink", "ScreenshotSink"]
