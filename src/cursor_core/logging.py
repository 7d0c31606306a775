from __future__ import annotations

import logging
import re
import sys
from typing import Any


LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
STRUCTURED_FIELDS = ("request_id", "component", "operation", "result", "duration_ms", "error_class")
LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s: "
    + " ".join(f"{field}=%({field})s" for field in STRUCTURED_FIELDS)
    + " %(message)s"
)

_SECRET_KEYS = ("authorization", "token", "api_key", "apikey", "password")
_SECRET_ASSIGNMENT_RE = re.compile(r"(?i)(authorization|token|api_key|apikey|password)=([^\s,;]+)")
_BEARER_RE = re.compile(r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]+")


def redact_secrets(message: str) -> str:
    """Mask ``key=value`` secrets and Authorization header credentials."""
    redacted = _SECRET_ASSIGNMENT_RE.sub(r"\1=[redacted]", message)
    return _BEARER_RE.sub(r"\1 [redacted]", redacted)


class StructuredLogDefaultsFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for field in STRUCTURED_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, 0 if field == "duration_ms" else "")
        try:
            message = record.getMessage()
        except Exception:
            return True
        lowered = message.lower()
        if any(key in lowered for key in _SECRET_KEYS) or "bearer " in lowered or "basic " in lowered:
            record.msg = redact_secrets(message)
            record.args = ()
        return True


def normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized == "warn":
        normalized = "warning"
    if normalized not in LOG_LEVEL_CHOICES:
        return "info"
    return normalized


def configure_structured_logger(logger: logging.Logger, *, level: str) -> None:
    handler = logging.StreamHandler(sys.__stderr__)
    handler.addFilter(StructuredLogDefaultsFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, normalize_log_level(level).upper(), logging.INFO))
    logger.propagate = False


def configure_package_loggers(*names: str, level: str) -> None:
    """Route each package logger to stderr; stdout stays free for protocol output."""
    for name in names:
        configure_structured_logger(logging.getLogger(name), level=level)
