"""Logging setup: extras-aware formatter, OpenTelemetry context, dictConfig builder."""

from __future__ import annotations

import json
import logging
import os
import time
import traceback
import types
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from enum import Enum
from logging.config import dictConfig
from typing import Any

from opentelemetry import baggage, trace
from pydantic import BaseModel

_PACKAGE_LOGGER_ROOT = "shotbox"


def _level(env_var: str, default: str) -> str:
    return os.getenv(env_var, default).upper()


def _should_emit_json_payload() -> bool:
    # Cloud Run and Kubernetes log ingestion parse JSON lines into structured payloads.
    return bool(os.getenv("K_SERVICE") or os.getenv("KUBERNETES_SERVICE_HOST"))


def _compact_json(value: Any, *, limit: int = 512) -> str:
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"))
    if len(encoded) <= limit:
        return encoded
    return encoded[:limit] + "... (truncated)"


def _structured_payload(record: logging.LogRecord) -> dict[str, Any]:
    record_dict = record.__dict__
    record_data = record_dict.get("data")

    message = record.getMessage()
    sanitized_data: Any | None = None
    if record_data:
        sanitized_data = _sanitize_for_json(record_data)
        message = f"{message} | data={_compact_json(sanitized_data)}"

    payload: dict[str, Any] = {
        "message": message,
        "severity": record.levelname,
        "logger": record.name,
        "timestamp": (
            f"{time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(record.created))}"
            f".{int(record.msecs):03d}Z"
        ),
    }
    container = record_dict.get("container")
    if container:
        payload["container"] = str(container)
    if record.exc_info:
        payload["exception"] = "".join(traceback.format_exception(*record.exc_info)).rstrip("\n")
    if sanitized_data is not None:
        payload["data"] = sanitized_data

    otel = record_dict.get("otel")
    if isinstance(otel, Mapping) and otel:
        payload["otel"] = _sanitize_for_json(otel)
    return payload


class ExtrasFormatter(logging.Formatter):
    """Append structured ``data`` payloads when present."""

    def format(self, record: logging.LogRecord) -> str:
        if _should_emit_json_payload():
            return json.dumps(_structured_payload(record), sort_keys=True, separators=(",", ":"))

        formatted = super().format(record)
        record_data = record.__dict__.get("data")
        if record_data:
            try:
                encoded = json.dumps(record_data, sort_keys=True, separators=(",", ":"))
            except TypeError:
                encoded = json.dumps(_sanitize_for_json(record_data), sort_keys=True, separators=(",", ":"))
            return f"{formatted} | data={encoded}"
        return formatted


class OtelContextLogFilter(logging.Filter):
    """Attach the active span's trace/span ids and baggage as ``record.otel``."""

    def filter(self, record: logging.LogRecord) -> bool:
        otel: dict[str, Any] = {}
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            otel["trace_id"] = f"{span_context.trace_id:032x}"
            otel["span_id"] = f"{span_context.span_id:016x}"
        baggage_values = baggage.get_all()
        if baggage_values:
            otel["baggage"] = {key: str(value) for key, value in baggage_values.items()}
        if otel:
            record.__dict__["otel"] = otel
        return True


def build_log_config(
    *,
    root_level_env: str = "LOG_LEVEL",
    root_default: str = "INFO",
    extra_loggers: Mapping[str, dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Return a dictConfig-compatible logging configuration."""

    loggers: dict[str, dict[str, Any]] = {
        "httpx": {"level": _level("HTTPX_LOG_LEVEL", "WARNING"), "handlers": ["console"], "propagate": False},
        "httpcore": {"level": _level("HTTPX_LOG_LEVEL", "WARNING"), "handlers": ["console"], "propagate": False},
        "websockets": {
            "level": _level("WEBSOCKETS_LOG_LEVEL", "WARNING"),
            "handlers": ["console"],
            "propagate": False,
        },
        "shotbox.container": {
            "level": _level("CONTAINER_LOG_LEVEL", "INFO"),
            "handlers": ["console"],
            "propagate": False,
        },
    }
    if extra_loggers:
        loggers.update(extra_loggers)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": ExtrasFormatter,
                "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            }
        },
        "filters": {"otel_context": {"()": OtelContextLogFilter}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "console",
                "stream": "ext://sys.stderr",
                "filters": ["otel_context"],
            }
        },
        "root": {"level": _level(root_level_env, root_default), "handlers": ["console"]},
        "loggers": loggers,
    }


def configure_logging(
    *,
    root_level_env: str = "LOG_LEVEL",
    root_default: str = "INFO",
    extra_loggers: Mapping[str, dict[str, Any]] | None = None,
) -> None:
    """Apply the logging config and let package loggers inherit the root level."""

    config = build_log_config(
        root_level_env=root_level_env,
        root_default=root_default,
        extra_loggers=extra_loggers,
    )
    dictConfig(config)
    explicit = set(config["loggers"])
    for name, entry in logging.Logger.manager.loggerDict.items():
        if not isinstance(entry, logging.Logger) or name in explicit:
            continue
        if name == _PACKAGE_LOGGER_ROOT or name.startswith(f"{_PACKAGE_LOGGER_ROOT}."):
            entry.setLevel(logging.NOTSET)
    logging.getLogger(__name__).debug("configured logging", extra={"data": {"loggers": sorted(explicit)}})


def _sanitize_for_json(value: Any, depth: int = 10, max_items: int = 200) -> Any:
    """Return a JSON-serializable copy; fallback to string for unknowns."""

    if depth <= 0:
        return "<depth_exceeded>"

    if value is None or isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, Enum):
        return _sanitize_for_json(value.value, depth - 1, max_items)

    if isinstance(value, (bytes, bytearray)):
        # Screenshots and raw log chunks: size only.
        return f"<bytes len={len(value)}>"

    if isinstance(value, BaseModel):
        return _sanitize_for_json(value.model_dump(mode="json"), depth - 1, max_items)

    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"

    if isinstance(value, (types.BuiltinFunctionType, types.FunctionType, types.MethodType)):
        return f"<callable {value.__name__}>"

    if is_dataclass(value) and not isinstance(value, type):
        return _sanitize_for_json(asdict(value), depth - 1, max_items)

    if isinstance(value, Mapping):
        result: dict[str, Any] = {}
        for idx, (k, v) in enumerate(value.items()):
            if idx >= max_items:
                result["<truncated>"] = f"...{len(value) - idx} more"
                break
            result[str(k)] = _sanitize_for_json(v, depth - 1, max_items)
        return result

    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        out = [_sanitize_for_json(item, depth - 1, max_items) for item in items[:max_items]]
        if len(items) > max_items:
            out.append(f"... {len(items) - max_items} more")
        return out

    return str(value)


__all__ = ["ExtrasFormatter", "OtelContextLogFilter", "build_log_config", "configure_logging"]
