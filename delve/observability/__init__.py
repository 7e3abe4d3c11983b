"""Logging helpers shared by the downloader, supervisor and engine."""

from delve.observability.logging import (
    StructuredFormatter,
    configure_logging,
    log_event,
    timed_operation,
)

__all__ = [
    "StructuredFormatter",
    "configure_logging",
    "log_event",
    "timed_operation",
]
