"""Logging configuration.

Every record gets the current request id and has credential-bearing fields
masked before a handler formats it.
"""
import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from .config import SERVICE_NAME, Settings


REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "x-api-key",
        "x-openai-api-key",
        "x-elevenlabs-api-key",
        "apikey",
        "xi-api-key",
        "password",
        "access_token",
        "refresh_token",
    }
)

request_id_context: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message", "exc_info",
        "exc_text", "stack_info", "taskName", "request_id",
    }
)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive keys masked at any depth."""
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}... [truncated {len(text) - max_chars} chars]"


def extra_fields(record: logging.LogRecord) -> dict:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_context.get()
        return True


class SensitiveDataFilter(logging.Filter):
    """Mask credentials in structured ``extra`` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in extra_fields(record).items():
            if key.lower() in SENSITIVE_KEYS:
                setattr(record, key, REDACTED)
            elif isinstance(value, (dict, list, tuple)):
                setattr(record, key, redact(value))
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
            "request_id": getattr(record, "request_id", None),
        }
        log_obj.update(extra_fields(record))
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str, ensure_ascii=False)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        parts = [timestamp, f"[{record.levelname}]", f"[{record.name}]"]
        request_id = getattr(record, "request_id", None)
        if request_id:
            parts.append(f"[req:{request_id[:8]}]")
        parts.append(record.getMessage())
        fields = extra_fields(record)
        if fields:
            parts.append(json.dumps(fields, default=str, ensure_ascii=False))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(settings: Settings, stream=None) -> logging.Logger:
    """Install a single handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    level_name = settings.log_level.upper()
    if level_name == "SILENT":
        root_logger.setLevel(logging.CRITICAL + 1)
    else:
        root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(PrettyFormatter() if settings.log_pretty else JSONFormatter())
    root_logger.addHandler(handler)

    return root_logger
