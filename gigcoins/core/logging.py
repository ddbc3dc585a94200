"""
Structured logging for the coin economy.

- One "gigcoins" logger tree; JSON lines in production, one-line text elsewhere.
- request_id lives in a ContextVar. HTTP requests bind it in RequestIdMiddleware,
  sweeps bind a job-scoped id, so every coin movement can be traced back.
- log_event() is the single way economic events (spend, reset, payment) are logged.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

LOGGER_NAME = "gigcoins"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes copied into JSON output when present
_EVENT_FIELDS = ("user_id", "event_type", "error_code", "reason", "amount", "balance", "payment_ref", "plan_key")

# (upper bound in ms, label); the last bucket is open-ended
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

_MAX_FIELD_CHARS = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_request_id(request_id: str) -> Iterator[str]:
    """Make request_id current for everything logged inside the block."""
    token = request_id_ctx_var.set(request_id)
    try:
        yield request_id
    finally:
        request_id_ctx_var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BUCKETS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Stamp records that did not pass request_id explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(
            (field, getattr(record, field))
            for field in _EVENT_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tags = "".join(
            f" [{label}={value}]"
            for label, value in (
                ("rid", getattr(record, "request_id", None)),
                ("user", getattr(record, "user_id", None)),
            )
            if value
        )
        line = f"{_utc_timestamp(record)} {record.levelname} [{LOGGER_NAME}]{tags} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Install the gigcoins handler. Safe to call more than once (handlers are replaced)."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    logger.handlers = [handler]
    logger.propagate = True

    for noisy in ("uvicorn", "uvicorn.error"):
        logging.getLogger(noisy).propagate = False


def _truncate(value) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= _MAX_FIELD_CHARS else text[:_MAX_FIELD_CHARS] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    request_id: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """
    Log an economic event on the gigcoins logger.

    Numbers and booleans in extra pass through untouched (amounts, balances);
    anything else is stringified and truncated.
    """
    fields: Dict[str, object] = {"request_id": request_id or get_request_id(), "user_id": user_id}
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for key, value in (extra or {}).items():
        fields[key] = value if isinstance(value, (int, bool)) else _truncate(value)

    logger = logging.getLogger(LOGGER_NAME)
    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
