"""
JSON logging for the erasure pipeline.

Every entry carries the run it belongs to (a sweep id or a caller
supplied request id), so all lines of one erasure can be pulled out of
the stream together.

Pipeline code only ever logs ``user_ref`` (the salted user hash). The
formatter is the backstop: fields that hold raw personal identifiers or
credentials are replaced before the entry is written, at any nesting
depth, including inside lists.
"""
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, TextIO

from pythonjsonlogger.json import JsonFormatter as jsonlogger

_run_id: ContextVar[Optional[str]] = ContextVar("erasure_run_id", default=None)

# A key containing any of these is a credential
SECRET_KEY_MARKERS = (
    "password", "secret", "token", "api_key", "authorization",
    "credential", "private_key", "signature",
)

# Keys that hold raw personal identifiers, matched exactly
IDENTIFIER_KEYS = frozenset({
    "user_id", "email", "code", "recovery_code", "ip_address", "ip",
})

REDACTED_VALUE = "[REDACTED]"

# Client libraries that put user ids into URLs or SQL parameters at INFO/DEBUG
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "botocore", "boto3", "urllib3")


def set_request_context(request_id: Optional[str] = None) -> None:
    """Attach a run id to every entry logged from this context."""
    if request_id:
        _run_id.set(request_id)


def clear_request_context() -> None:
    _run_id.set(None)


def get_request_id() -> Optional[str]:
    return _run_id.get()


@contextmanager
def request_context(request_id: str) -> Iterator[str]:
    """Scope a run id to a block, restoring the previous one afterwards."""
    token = _run_id.set(request_id)
    try:
        yield request_id
    finally:
        _run_id.reset(token)


def _is_protected(key: str) -> bool:
    key = key.lower()
    return key in IDENTIFIER_KEYS or any(marker in key for marker in SECRET_KEY_MARKERS)


def redact(value: Any) -> Any:
    """Copy of ``value`` with protected keys masked in every nested dict."""
    if isinstance(value, dict):
        return {
            k: REDACTED_VALUE if _is_protected(str(k)) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class CorrelatedJsonFormatter(jsonlogger):
    """
    JSON formatter that adds run correlation and masks protected fields.

    Output fields besides the message and any ``extra`` values:
    - timestamp: when the record was created, ISO 8601 UTC
    - level / logger
    - request_id: current run id, or null
    - exc_info / traceback: only for records with an exception
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault("message", record.getMessage())
        log_record["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["request_id"] = get_request_id()

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
            log_record["traceback"] = "".join(traceback.format_exception(*record.exc_info))

        masked = redact(log_record)
        log_record.clear()
        log_record.update(masked)


def get_json_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def setup_logging(
    level: int | str = logging.INFO,
    format_json: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Route the root logger to a single stream handler.

    Args:
        level: Root log level
        format_json: JSON entries (default) or plain text for local runs
        stream: Output stream (default: stdout)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    if format_json:
        handler.setFormatter(CorrelatedJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
