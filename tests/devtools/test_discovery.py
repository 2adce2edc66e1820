from __future__ import annotations

import asyncio

import httpx
import pytest

from shotbox.devtools.discovery import DevToolsDiscovery, ReadinessProbe
from shotbox.domain.target import Target, TargetKind
from shotbox.errors import ReadinessTimeoutError
from tests.fixtures.fakes import DiscoveryEndpoint, page_target

pytestmark = pytest.mark.anyio("asyncio")

BASE_URL = "http://127.0.0.1:9222"


def refused() -> httpx.ConnectError:
    return httpx.ConnectError("[Errno 111] Connection refused")


def deadline_in(seconds: float) -> float:
    return asyncio.get_running_loop().time() + seconds


async def test_list_targets_parses_discovery_payload() -> None:
    endpoint = DiscoveryEndpoint(
        [[page_target("A"), {"id": "SW", "type": "service_worker", "url": "chrome://sw", "extra": 1}]]
    )
    discovery = DevToolsDiscovery(BASE_URL, transport=endpoint.transport())
    try:
        targets = await discovery.list_targets()
    finally:
        await discovery.aclose()

    assert [target.id for target in targets] == ["A", "SW"]
    assert targets[0].kind is TargetKind.PAGE
    assert targets[0].websocket_url == "ws://127.0.0.1:9222/devtools/page/A"
    assert targets[1].kind is TargetKind.OTHER
    assert targets[1].debuggable is False


async def test_create_target_uses_configured_method() -> None:
    endpoint = DiscoveryEndpoint([[]], create_response=httpx.Response(200, json=page_target("NEW")))
    discovery = DevToolsDiscovery(BASE_URL, create_method="post", transport=endpoint.transport())
    try:
        target = await discovery.create_target()
    finally:
        await discovery.aclose()

    assert target.id == "NEW"
    assert endpoint.create_calls == ["POST"]


async def test_probe_retries_unreachable_endpoint_until_page_appears() -> None:
    endpoint = DiscoveryEndpoint([refused(), refused(), [page_target("PAGE-1")]])
    discovery = DevToolsDiscovery(BASE_URL, transport=endpoint.transport())
    probe = ReadinessProbe(discovery, poll_interval=0.01, create_after_attempts=1)

    target = await probe.resolve(TargetKind.PAGE, deadline_in(2.0))

    assert target.id == "PAGE-1"
    assert endpoint.list_calls == 3
    assert endpoint.create_calls == []


async def test_probe_skips_targets_of_other_kinds_and_without_debugger_url() -> None:
    undebuggable = {"id": "BUSY", "type": "page", "url": "about:blank"}
    worker = {"id": "SW", "type": "service_worker", "webSocketDebuggerUrl": "ws://127.0.0.1:9222/sw"}
    endpoint = DiscoveryEndpoint([[undebuggable, worker], [worker, page_target("PAGE-2")]])
    probe = ReadinessProbe(
        DevToolsDiscovery(BASE_URL, transport=endpoint.transport()),
        poll_interval=0.01,
        create_after_attempts=5,
    )

    target = await probe.resolve(TargetKind.PAGE, deadline_in(2.0))

    assert target.id == "PAGE-2"


async def test_probe_creates_target_after_consecutive_empty_polls() -> None:
    endpoint = DiscoveryEndpoint([[]], create_response=httpx.Response(200, json=page_target("NEW")))
    probe = ReadinessProbe(
        DevToolsDiscovery(BASE_URL, transport=endpoint.transport()),
        poll_interval=0.01,
        create_after_attempts=3,
    )

    target = await probe.resolve(TargetKind.PAGE, deadline_in(2.0))

    assert target.id == "NEW"
    assert endpoint.list_calls == 3
    assert endpoint.create_calls == ["PUT"]


async def test_unreachable_polls_never_trigger_creation() -> None:
    endpoint = DiscoveryEndpoint([refused()])
    probe = ReadinessProbe(
        DevToolsDiscovery(BASE_URL, transport=endpoint.transport()),
        poll_interval=0.01,
        create_after_attempts=1,
    )

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        await probe.resolve(TargetKind.PAGE, deadline_in(0.1))

    assert endpoint.create_calls == []
    assert isinstance(excinfo.value.last_error, httpx.ConnectError)
    assert excinfo.value.attempts >= 2


async def test_probe_times_out_when_nothing_is_listed_and_creation_fails() -> None:
    endpoint = DiscoveryEndpoint([[]])
    probe = ReadinessProbe(
        DevToolsDiscovery(BASE_URL, transport=endpoint.transport()),
        poll_interval=0.01,
        create_after_attempts=3,
    )

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        await probe.resolve(TargetKind.PAGE, deadline_in(0.15))

    assert excinfo.value.stage == "readiness"
    assert excinfo.value.category == "timeout"
    assert excinfo.value.attempts >= 3
    assert endpoint.create_calls
    assert set(endpoint.create_calls) == {"PUT"}


async def test_probe_with_expired_deadline_fails_without_polling() -> None:
    endpoint = DiscoveryEndpoint([[page_target()]])
    probe = ReadinessProbe(DevToolsDiscovery(BASE_URL, transport=endpoint.transport()))

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        await probe.resolve(TargetKind.PAGE, deadline_in(-1.0))

    assert excinfo.value.attempts == 0
    assert endpoint.list_calls == 0


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"poll_interval": 0}, "poll_interval"),
        ({"create_after_attempts": 0}, "create_after_attempts"),
    ],
)
def test_probe_rejects_invalid_policy(kwargs: dict[str, float], message: str) -> None:
    discovery = DevToolsDiscovery(BASE_URL)

    with pytest.raises(ValueError, match=message):
        ReadinessProbe(discovery, **kwargs)


def test_target_accepts_field_names_and_aliases() -> None:
    by_alias = Target.model_validate(page_target("X"))
    by_name = Target(id="X", type="page", websocket_url="ws://127.0.0.1:9222/devtools/page/X")

    assert by_alias.websocket_url == by_name.websocket_url
    assert by_name.debuggable is True


async def test_create_target_escapes_the_page_url() -> None:
    endpoint = DiscoveryEndpoint([[]], create_response=httpx.Response(200, json=page_target("NEW")))
    discovery = DevToolsDiscovery(BASE_URL, transport=endpoint.transport())
    try:
        await discovery.create_target("https://example.com/?a=1&b=2#top")
        await discovery.create_target()
    finally:
        await discovery.aclose()

    assert endpoint.create_queries == [
        "https://example.com/%3Fa%3D1%26b%3D2%23top",
        "about:blank",
    ]


async def test_client_errors_from_list_count_toward_creation() -> None:
    endpoint = DiscoveryEndpoint([404], create_response=httpx.Response(200, json=page_target("NEW")))
    probe = ReadinessProbe(
        DevToolsDiscovery(BASE_URL, transport=endpoint.transport()),
        poll_interval=0.01,
        create_after_attempts=2,
    )

    target = await probe.resolve(TargetKind.PAGE, deadline_in(2.0))

    assert target.id == "NEW"
    assert endpoint.list_calls == 2
    assert endpoint.create_calls == ["PUT"]


async def test_server_errors_from_list_never_trigger_creation() -> None:
    endpoint = DiscoveryEndpoint([503])
    probe = ReadinessProbe(
        DevToolsDiscovery(BASE_URL, transport=endpoint.transport()),
        poll_interval=0.01,
        create_after_attempts=1,
    )

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        await probe.resolve(TargetKind.PAGE, deadline_in(0.1))

    assert endpoint.create_calls == []
    assert isinstance(excinfo.value.last_error, httpx.HTTPStatusError)
    assert excinfo.value.last_error.response.status_code == 503
