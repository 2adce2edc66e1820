"""Navigate a page and capture it over an open DevTools session."""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Final

from shotbox.devtools.session import DevToolsSession, EventSubscription
from shotbox.domain.capture import CaptureRequest, NavigationResult, ScreenshotOptions
from shotbox.errors import (
    CaptureError,
    CommandError,
    NavigationError,
    NavigationTimeoutError,
    ScreenshotError,
)

logger = logging.getLogger(__name__)

PAGE_DOMAIN: Final[str] = "Page"
DOM_CONTENT_EVENT: Final[str] = "Page.domContentEventFired"


class PageNavigator:
    """Runs enable -> subscribe -> navigate -> await load -> evaluate -> capture.

    The subscription is registered before ``Page.navigate`` is sent, so a page that
    finishes loading before the navigate response arrives is still observed. Cleanup of
    the session and container belongs to the caller.
    """

    def __init__(self, session: DevToolsSession) -> None:
        self._session = session
        self.stage = "navigate"

    async def run(self, request: CaptureRequest) -> NavigationResult:
        async with self._step("navigate"):
            await self._session.enable_domain(PAGE_DOMAIN)
            loaded = self._session.subscribe(DOM_CONTENT_EVENT)
            try:
                await self._navigate(request.url, loaded)
            finally:
                loaded.close()

        async with self._step("evaluate"):
            value, evaluation_error = await self._evaluate(request.expression)

        async with self._step("capture"):
            screenshot = await self._capture(request.screenshot)

        return NavigationResult(
            url=request.url,
            value=value,
            screenshot=screenshot,
            format=request.screenshot.format,
            quality=request.screenshot.quality,
            evaluation_error=evaluation_error,
        )

    @asynccontextmanager
    async def _step(self, stage: str) -> AsyncIterator[None]:
        self.stage = stage
        try:
            yield
        except CaptureError as exc:
            exc.at_stage(stage)
            raise

    async def _navigate(self, url: str, loaded: EventSubscription) -> None:
        try:
            reply = await self._session.command("Page.navigate", {"url": url})
            error_text = reply.get("errorText")
            if error_text:
                raise NavigationError(f"navigation to {url} failed: {error_text}")
            logger.info(
                "navigation started",
                extra={"data": {"url": url, "frame_id": reply.get("frameId")}},
            )
            await self._session.receive(loaded)
        except TimeoutError as exc:
            raise NavigationTimeoutError(
                f"{DOM_CONTENT_EVENT} for {url} did not arrive before the deadline"
            ) from exc
        logger.info("page content loaded", extra={"data": {"url": url}})

    async def _evaluate(self, expression: str) -> tuple[Any, str | None]:
        try:
            reply = await self._session.command(
                "Runtime.evaluate",
                {"expression": expression, "returnByValue": True},
            )
        except CommandError as exc:
            logger.warning("expression evaluation failed: %s", exc, extra={"data": {"expression": expression}})
            return None, str(exc)

        details = reply.get("exceptionDetails")
        if isinstance(details, dict):
            exception = details.get("exception")
            description = exception.get("description") if isinstance(exception, dict) else None
            message = str(description or details.get("text") or "evaluation threw")
            logger.warning(
                "expression evaluation threw: %s",
                message,
                extra={"data": {"expression": expression}},
            )
            return None, message

        remote = reply.get("result")
        value = remote.get("value") if isinstance(remote, dict) else None
        logger.info("expression evaluated", extra={"data": {"expression": expression, "value": value}})
        return value, None

    async def _capture(self, options: ScreenshotOptions) -> bytes:
        try:
            reply = await self._session.command("Page.captureScreenshot", options.to_params())
        except CommandError as exc:
            raise ScreenshotError(f"screenshot capture failed: {exc}") from exc

        data = reply.get("data")
        if not isinstance(data, str) or not data:
            raise ScreenshotError("screenshot capture returned no image data")
        try:
            image = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ScreenshotError("screenshot capture returned undecodable image data") from exc
        if not image:
            raise ScreenshotError("screenshot capture returned an empty image")
        logger.info(
            "screenshot captured",
            extra={"data": {"format": options.format, "quality": options.quality, "bytes": len(image)}},
        )
        return image


__all__ = ["DOM_CONTENT_EVENT", "PAGE_DOMAIN", "PageNavigator"]
