import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from wayfare.core.config import settings

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
CARD_RE = re.compile(r"\b(?:\d[ -]?){13,19}\b")
BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+")
SENSITIVE_KEYS = {
    "authorization",
    "token",
    "payment_token",
    "transient_token",
    "card",
    "email",
    "phone",
    "document",
    "signature",
}
LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_LOG_RECORD_ATTRS = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


def redact(value: str) -> str:
    value = EMAIL_RE.sub("[REDACTED_EMAIL]", value)
    value = CARD_RE.sub("[REDACTED_CARD]", value)
    value = BEARER_RE.sub("Bearer [REDACTED_TOKEN]", value)
    return value


def _sanitize(value: Any, key: str | None = None) -> Any:
    if key and key.lower() in SENSITIVE_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    if isinstance(value, dict):
        return {k: _sanitize(v, k) for k, v in value.items()}
    return value


def update_log_context(**kwargs: Any) -> dict[str, Any]:
    merged = {**LOG_CONTEXT.get({}), **{k: v for k, v in kwargs.items() if v is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


def _extract_extra(record: logging.LogRecord) -> dict[str, Any]:
    structured: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _LOG_RECORD_ATTRS or key.startswith("_"):
            continue
        structured[key] = value
    return structured


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }
        context = LOG_CONTEXT.get({})
        if context:
            payload.update(_sanitize(context))
        extra = _extract_extra(record)
        if extra:
            payload.update(_sanitize(extra))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL).upper())
    root.handlers.clear()
    root.addHandler(handler)
