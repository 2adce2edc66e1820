from __future__ import annotations

import json

import pytest

from shotbox import cli
from shotbox.application.capture import CapturePipeline
from shotbox.config.settings import Settings
from shotbox.devtools.discovery import DevToolsDiscovery
from shotbox.errors import CreationError
from shotbox.sandbox.docker import DockerEngineRuntime
from tests.fixtures.fakes import (
    FAKE_JPEG,
    DiscoveryEndpoint,
    FakeContainerRuntime,
    FakeDevToolsTransport,
    RecordingConnector,
    page_target,
)

pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in ("SHOTBOX_URL", "SHOTBOX_IMAGE", "SHOTBOX_OUTPUT_PATH", "SHOTBOX_SETTLE_DELAY_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_parser_defaults_come_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("SHOTBOX_URL", "https://example.com")
    monkeypatch.setenv("SHOTBOX_OUTPUT_PATH", "shots/page.png")

    args = cli._parser(Settings.load()).parse_args([])

    assert args.url == "https://example.com"
    assert args.output == "shots/page.png"
    assert args.image == "justinribeiro/chrome-headless:latest"
    assert args.format == "jpeg"
    assert args.quality == 80
    assert args.timeout == 30.0


def test_parser_rejects_unknown_format() -> None:
    with pytest.raises(SystemExit):
        cli._parser(Settings.load()).parse_args(["--format", "gif"])


async def test_build_pipeline_uses_image_override() -> None:
    runtime = DockerEngineRuntime(docker_host="tcp://127.0.0.1:2375")
    try:
        pipeline = cli.build_pipeline(Settings.load(), runtime, image="custom/chrome:1")
    finally:
        await runtime.aclose()

    assert isinstance(pipeline, CapturePipeline)


async def test_amain_runs_capture_and_writes_screenshot(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("SHOTBOX_SETTLE_DELAY_SECONDS", "0")
    runtime = FakeContainerRuntime()
    transport = FakeDevToolsTransport()
    endpoint = DiscoveryEndpoint([[page_target()]])
    built: dict[str, str] = {}

    def fake_build(settings: Settings, runtime_arg: FakeContainerRuntime, *, image: str) -> CapturePipeline:
        built["image"] = image
        return CapturePipeline(
            runtime=runtime_arg,
            options=settings.container.container_options(image=image),
            discovery_factory=lambda base_url: DevToolsDiscovery(base_url, transport=endpoint.transport()),
            connector=RecordingConnector(transport),
            settle_delay_seconds=settings.capture.settle_delay_seconds,
            poll_interval=0.01,
        )

    monkeypatch.setattr(cli, "DockerEngineRuntime", lambda **kwargs: runtime)
    monkeypatch.setattr(cli, "build_pipeline", fake_build)

    output = tmp_path / "out" / "page.jpg"
    summary = await cli._amain(["--url", "https://example.com", "--output", str(output), "--image", "custom/chrome:1"])

    assert output.read_bytes() == FAKE_JPEG
    assert built["image"] == "custom/chrome:1"
    assert runtime.closed is True
    assert summary["output"] == str(output)
    assert summary["bytes"] == len(FAKE_JPEG)
    assert summary["value"] == "Example Domain"
    assert summary["teardown_errors"] == []


def test_main_prints_summary(monkeypatch, capsys) -> None:
    async def fake_amain(argv):
        return {"output": "screenshot.jpg", "bytes": 3}

    monkeypatch.setattr(cli, "configure_logging", lambda: None)
    monkeypatch.setattr(cli, "configure_tracing", lambda **kwargs: None)
    monkeypatch.setattr(cli, "_amain", fake_amain)

    cli.main([])

    assert json.loads(capsys.readouterr().out) == {"output": "screenshot.jpg", "bytes": 3}


def test_main_exits_with_error_description(monkeypatch) -> None:
    async def fake_amain(argv):
        raise CreationError("container create rejected with status 404: No such image", status_code=404)

    monkeypatch.setattr(cli, "configure_logging", lambda: None)
    monkeypatch.setattr(cli, "configure_tracing", lambda **kwargs: None)
    monkeypatch.setattr(cli, "_amain", fake_amain)

    with pytest.raises(SystemExit) as excinfo:
        cli.main([])

    assert excinfo.value.code == "CreationError [stage=create]: container create rejected with status 404: No such image"
