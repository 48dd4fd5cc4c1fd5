"""Process-wide logging setup for the intake service.

``LOG_LEVEL`` picks the root level (``OFF`` silences everything) and
``LOG_FORMAT`` is either ``json`` or a ``logging`` format string. Records are
tagged with the service name and, when a span is active, its trace ids.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

from opentelemetry import trace

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(service_name)s] %(name)s:%(lineno)d - %(message)s"
LOG_OFF_LEVEL = "OFF"

NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "aiobotocore", "aiosqlite")


class ServiceNameFilter(logging.Filter):
    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        return True


class TraceContextFilter(logging.Filter):
    """Copy the active OpenTelemetry span ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = record.span_id = None
        return True


class IntakeJSONFormatter(logging.Formatter):
    """One JSON object per line, suitable for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service_name", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in ("trace_id", "span_id"):
            value = getattr(record, key, None)
            if value:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return IntakeJSONFormatter()
    return logging.Formatter(log_format)


def setup_logging(
    service_name: str = "credential-intake",
    log_level_env_var: str = "LOG_LEVEL",
    log_format_env_var: str = "LOG_FORMAT",
) -> None:
    """Replace the root handlers with a single stdout handler."""
    level_name = os.environ.get(log_level_env_var, "INFO").upper()
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if level_name == LOG_OFF_LEVEL:
        root.setLevel(logging.CRITICAL + 1)
        print(f"Logging is OFF for {service_name}.", file=sys.stderr)
        return

    root.setLevel(_resolve_level(level_name))
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter(os.environ.get(log_format_env_var, TEXT_FORMAT)))
    handler.addFilter(ServiceNameFilter(service_name))
    handler.addFilter(TraceContextFilter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured for %s at %s", service_name, level_name)
