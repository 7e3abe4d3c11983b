"""HTTP session factory and transport error classification.

Every outbound request in delve goes through a ``requests.Session`` built
here, and every ``requests`` transport failure is turned into a
``NetworkError`` at the point where it is caught.
"""

from __future__ import annotations

import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from delve.errors import ErrorCode, NetworkError

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


def create_session(user_agent: str = "delve/1.0") -> requests.Session:
    """Create a configured requests session.

    Adapter-level retries are disabled: callers own their retry policy
    (resume for artifacts, ``retry_with_backoff`` for binaries).
    """
    session = requests.Session()

    retry_strategy = Retry(total=0, redirect=0, raise_on_redirect=False)
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    session.headers.update({"User-Agent": user_agent})

    return session


def to_network_error(exc: requests.RequestException, url: str) -> NetworkError:
    """Classify a requests exception into a NetworkError."""
    if isinstance(exc, requests.exceptions.Timeout):
        return NetworkError(
            f"Request timed out: {exc}", url=url, code=ErrorCode.NET_TIMEOUT, cause=exc
        )
    return NetworkError(
        f"Cannot reach server: {exc}", url=url, code=ErrorCode.NET_UNREACHABLE, cause=exc
    )
