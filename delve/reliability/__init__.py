"""Retry, deduplication and HTTP transport helpers."""

from delve.reliability.http import REDIRECT_STATUSES, create_session, to_network_error
from delve.reliability.inflight import InFlightRegistry
from delve.reliability.retry import backoff_delay, retry_with_backoff

__all__ = [
    "REDIRECT_STATUSES",
    "InFlightRegistry",
    "backoff_delay",
    "create_session",
    "retry_with_backoff",
    "to_network_error",
]
