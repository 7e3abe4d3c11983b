"""Deduplication of concurrent attempts through a shared Future."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InFlightRegistry:
    """One shared pending result per key.

    The first caller for a key runs the work; callers arriving while it is
    pending block on the same Future. The entry is removed as soon as the
    work settles so the next call starts a fresh attempt.

    Example:
        registry = InFlightRegistry()
        path = registry.run("qwen:1.5b", lambda: download(descriptor))
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, Future[Any]] = {}

    def run(self, key: str, fn: Callable[[], T]) -> T:
        with self._lock:
            future = self._pending.get(key)
            owner = future is None
            if future is None:
                future = Future()
                self._pending[key] = future

        if not owner:
            logger.debug("Joining in-flight attempt for %s", key)
            return future.result()

        try:
            result = fn()
        except BaseException as exc:
            self._settle(key)
            future.set_exception(exc)
            raise
        self._settle(key)
        future.set_result(result)
        return result

    def is_pending(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _settle(self, key: str) -> None:
        with self._lock:
            self._pending.pop(key, None)
