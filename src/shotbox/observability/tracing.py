"""OpenTelemetry bootstrap for the capture CLI."""

from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import Token

from opentelemetry import baggage, context, trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Tracer

from shotbox.errors import CaptureError

_TRACING_CONFIGURED = False


def configure_tracing(*, service_name: str = "shotbox") -> TracerProvider | None:
    """Install an OTLP-exporting tracer provider when an endpoint is configured.

    Without ``OTEL_EXPORTER_OTLP_ENDPOINT`` (or the traces-specific variant) this is a
    no-op and spans stay non-recording.
    """

    global _TRACING_CONFIGURED
    if _TRACING_CONFIGURED:
        return None

    traces_exporter = (os.getenv("OTEL_TRACES_EXPORTER") or "").strip().lower()
    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if traces_exporter == "none" or not otlp_endpoint:
        if traces_exporter not in ("", "none") and not otlp_endpoint:
            raise RuntimeError(
                "Tracing enabled but OTLP endpoint missing: set OTEL_EXPORTER_OTLP_ENDPOINT "
                "(or OTEL_EXPORTER_OTLP_TRACES_ENDPOINT), or set OTEL_TRACES_EXPORTER=none."
            )
        _TRACING_CONFIGURED = True
        return None

    resolved_service_name = (os.getenv("OTEL_SERVICE_NAME") or service_name).strip()
    provider = TracerProvider(resource=Resource.create({"service.name": resolved_service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(provider)
    _TRACING_CONFIGURED = True
    return provider


def attach_baggage(values: dict[str, str]) -> Token[context.Context]:
    """Attach baggage values to the current context; returns a detach token."""

    ctx = context.get_current()
    for key, value in values.items():
        ctx = baggage.set_baggage(key, value, context=ctx)
    return context.attach(ctx)


@contextmanager
def traced(
    name: str,
    *,
    tracer: Tracer | None = None,
    attributes: Mapping[str, str] | None = None,
) -> Iterator[Span]:
    """Run the block inside span ``name``, tagging capture failures on the span.

    A ``CaptureError`` leaving the block adds ``capture.error.kind``,
    ``capture.error.stage`` and ``capture.error.category`` before the span records
    the exception.
    """

    active = tracer or trace.get_tracer("shotbox")
    with active.start_as_current_span(name, attributes=dict(attributes or {})) as span:
        try:
            yield span
        except CaptureError as exc:
            span.set_attribute("capture.error.kind", exc.kind)
            span.set_attribute("capture.error.stage", exc.stage)
            span.set_attribute("capture.error.category", exc.category)
            raise


__all__ = ["attach_baggage", "configure_tracing", "traced"]
