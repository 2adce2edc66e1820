from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from pathlib import Path

from opentelemetry import context

from shotbox.application.capture import CapturePipeline
from shotbox.artifacts import FileScreenshotSink
from shotbox.config.settings import Settings
from shotbox.devtools.discovery import DevToolsDiscovery
from shotbox.domain.capture import CaptureRequest, ScreenshotOptions
from shotbox.errors import CaptureError
from shotbox.observability.logging import configure_logging
from shotbox.observability.tracing import attach_baggage, configure_tracing
from shotbox.sandbox.docker import DockerEngineRuntime


def _parser(settings: Settings) -> argparse.ArgumentParser:
    capture = settings.capture
    parser = argparse.ArgumentParser(
        prog="shotbox",
        description="Screenshot a URL with a headless browser in a throwaway container.",
    )
    parser.add_argument("--url", default=capture.url, help="Page to load.")
    parser.add_argument("--output", default=capture.output_path, help="Where to write the screenshot.")
    parser.add_argument("--image", default=settings.container.image, help="Browser container image.")
    parser.add_argument(
        "--format",
        default=capture.screenshot_format,
        choices=("jpeg", "png", "webp"),
        help="Screenshot image format.",
    )
    parser.add_argument("--quality", type=int, default=capture.screenshot_quality, help="JPEG/WebP quality.")
    parser.add_argument("--expression", default=capture.expression, help="JavaScript to evaluate after load.")
    parser.add_argument(
        "--timeout",
        type=float,
        default=capture.timeout_seconds,
        help="Deadline in seconds for everything after container creation.",
    )
    return parser


def build_pipeline(settings: Settings, runtime: DockerEngineRuntime, *, image: str) -> CapturePipeline:
    devtools = settings.devtools
    return CapturePipeline(
        runtime=runtime,
        options=settings.container.container_options(image=image),
        devtools_host=devtools.host,
        devtools_port=settings.container.container_port,
        discovery_factory=lambda base_url: DevToolsDiscovery(
            base_url,
            create_method=devtools.create_target_method,
        ),
        settle_delay_seconds=settings.capture.settle_delay_seconds,
        poll_interval=devtools.poll_interval_seconds,
        create_after_attempts=devtools.create_after_attempts,
    )


async def _amain(argv: Sequence[str] | None) -> dict[str, object]:
    settings = Settings.load()
    args = _parser(settings).parse_args(list(argv) if argv is not None else None)

    request = CaptureRequest(
        url=args.url,
        expression=args.expression,
        screenshot=ScreenshotOptions(format=args.format, quality=args.quality),
        timeout_seconds=args.timeout,
    )
    runtime = DockerEngineRuntime(
        docker_host=settings.container.docker_host,
        api_version=settings.container.docker_api_version,
    )
    pipeline = build_pipeline(settings, runtime, image=args.image)

    token = attach_baggage({"shotbox.url": request.url})
    try:
        outcome = await pipeline.run(request)
    finally:
        await runtime.aclose()
        context.detach(token)

    written = FileScreenshotSink(Path(args.output)).write(outcome.result)
    return {
        "output": written,
        "bytes": len(outcome.result.screenshot),
        "format": outcome.result.format,
        "value": outcome.result.value,
        "evaluation_error": outcome.result.evaluation_error,
        "container_id": outcome.container_id,
        "teardown_errors": [repr(err) for err in outcome.teardown_errors],
    }


def main(argv: Sequence[str] | None = None) -> None:
    configure_logging()
    configure_tracing(service_name="shotbox")
    try:
        summary = asyncio.run(_amain(argv))
    except KeyboardInterrupt:
        raise
    except CaptureError as exc:
        raise SystemExit(exc.describe()) from exc
    except Exception as exc:
        raise SystemExit(str(exc)) from exc

    print(json.dumps(summary, default=str))


__all__ = ["build_pipeline", "main"]
