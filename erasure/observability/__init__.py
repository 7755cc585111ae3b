"""Logging and metrics for the erasure pipeline."""

from .logging import (
    CorrelatedJsonFormatter,
    clear_request_context,
    get_json_logger,
    get_request_id,
    redact,
    request_context,
    set_request_context,
    setup_logging,
)

__all__ = [
    "CorrelatedJsonFormatter",
    "clear_request_context",
    "get_json_logger",
    "get_request_id",
    "redact",
    "request_context",
    "set_request_context",
    "setup_logging",
]
