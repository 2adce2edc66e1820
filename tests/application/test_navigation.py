from __future__ import annotations

import asyncio

import pytest

from shotbox.application.navigate import DOM_CONTENT_EVENT, PageNavigator
from shotbox.devtools.session import DevToolsSession
from shotbox.domain.capture import CaptureRequest, ScreenshotOptions
from shotbox.errors import CommandError, NavigationError, NavigationTimeoutError, ScreenshotError
from tests.fixtures.fakes import FAKE_JPEG, FakeDevToolsTransport

pytestmark = pytest.mark.anyio("asyncio")

URL = "https://example.com/"
LOADED = {"method": DOM_CONTENT_EVENT, "params": {"timestamp": 12.5}}


async def navigate(transport: FakeDevToolsTransport, request: CaptureRequest, *, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    async with DevToolsSession(transport, deadline=deadline) as session:
        navigator = PageNavigator(session)
        try:
            return await navigator.run(request)
        finally:
            transport.last_stage = navigator.stage


async def test_navigation_evaluates_and_captures_in_order() -> None:
    transport = FakeDevToolsTransport()

    result = await navigate(transport, CaptureRequest(url=URL))

    assert transport.methods == ["Page.enable", "Page.navigate", "Runtime.evaluate", "Page.captureScreenshot"]
    assert transport.sent[1]["params"] == {"url": URL}
    assert transport.sent[2]["params"] == {"expression": "document.title", "returnByValue": True}
    assert transport.sent[3]["params"] == {"format": "jpeg", "quality": 80}
    assert result.url == URL
    assert result.value == "Example Domain"
    assert result.screenshot == FAKE_JPEG
    assert result.format == "jpeg"
    assert result.quality == 80
    assert result.evaluation_error is None


async def test_load_event_before_navigate_response_is_observed() -> None:
    transport = FakeDevToolsTransport(events_before={"Page.navigate": [LOADED]}, events_after={})

    result = await navigate(transport, CaptureRequest(url=URL), timeout=1.0)

    assert result.screenshot == FAKE_JPEG


async def test_png_capture_omits_quality() -> None:
    transport = FakeDevToolsTransport()
    request = CaptureRequest(url=URL, screenshot=ScreenshotOptions(format="png", quality=50))

    result = await navigate(transport, request)

    assert transport.sent[-1]["params"] == {"format": "png"}
    assert result.format == "png"


async def test_navigation_error_text_fails_navigate_stage() -> None:
    transport = FakeDevToolsTransport(
        responses={"Page.navigate": {"frameId": "F", "errorText": "net::ERR_NAME_NOT_RESOLVED"}},
        events_after={},
    )

    with pytest.raises(NavigationError) as excinfo:
        await navigate(transport, CaptureRequest(url="https://nope.invalid/"))

    assert excinfo.value.stage == "navigate"
    assert "ERR_NAME_NOT_RESOLVED" in str(excinfo.value)
    assert "Runtime.evaluate" not in transport.methods


async def test_missing_load_event_is_a_navigation_timeout() -> None:
    transport = FakeDevToolsTransport(events_after={})

    with pytest.raises(NavigationTimeoutError) as excinfo:
        await navigate(transport, CaptureRequest(url=URL), timeout=0.05)

    assert excinfo.value.stage == "navigate"
    assert excinfo.value.category == "timeout"
    assert transport.methods == ["Page.enable", "Page.navigate"]


async def test_page_enable_failure_is_attributed_to_navigate_stage() -> None:
    transport = FakeDevToolsTransport(responses={"Page.enable": {"error": {"code": -32601, "message": "nope"}}})

    with pytest.raises(CommandError) as excinfo:
        await navigate(transport, CaptureRequest(url=URL))

    assert excinfo.value.stage == "navigate"


async def test_evaluation_exception_is_recorded_not_raised() -> None:
    transport = FakeDevToolsTransport(
        responses={
            "Runtime.evaluate": {
                "result": {"type": "object", "subtype": "error"},
                "exceptionDetails": {
                    "text": "Uncaught",
                    "exception": {"description": "ReferenceError: missing is not defined"},
                },
            }
        }
    )

    result = await navigate(transport, CaptureRequest(url=URL, expression="missing.value"))

    assert result.value is None
    assert result.evaluation_error == "ReferenceError: missing is not defined"
    assert result.screenshot == FAKE_JPEG


async def test_evaluation_command_error_is_recorded_not_raised() -> None:
    transport = FakeDevToolsTransport(
        responses={"Runtime.evaluate": {"error": {"code": -32000, "message": "Execution context was destroyed."}}}
    )

    result = await navigate(transport, CaptureRequest(url=URL))

    assert result.value is None
    assert "Execution context was destroyed." in (result.evaluation_error or "")
    assert "Page.captureScreenshot" in transport.methods


@pytest.mark.parametrize(
    "reply",
    [
        {"error": {"code": -32000, "message": "Unable to capture screenshot"}},
        {"data": ""},
        {"data": "not*base64"},
        {},
    ],
)
async def test_screenshot_failures_raise_screenshot_error(reply: dict[str, object]) -> None:
    transport = FakeDevToolsTransport(responses={"Page.captureScreenshot": reply})

    with pytest.raises(ScreenshotError) as excinfo:
        await navigate(transport, CaptureRequest(url=URL))

    assert excinfo.value.stage == "capture"
    assert transport.last_stage == "capture"


async def test_deadline_during_capture_leaves_stage_at_capture() -> None:
    transport = FakeDevToolsTransport(silent={"Page.captureScreenshot"})

    with pytest.raises(TimeoutError):
        await navigate(transport, CaptureRequest(url=URL), timeout=0.1)

    assert transport.last_stage == "capture"
