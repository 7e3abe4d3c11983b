"""Unit tests for retry and in-flight deduplication utilities."""

import logging
import threading
import time
from unittest.mock import MagicMock

import pytest

from delve.reliability import InFlightRegistry, backoff_delay, retry_with_backoff


class TestBackoffDelay:
    """Tests for the delay schedule."""

    def test_doubles(self):
        """Delay doubles per attempt."""
        assert [backoff_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        """Delay never exceeds max_delay."""
        assert backoff_delay(10, base_delay=1.0, max_delay=10.0) == 10.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff decorator."""

    def test_succeeds_first_try(self):
        """Returns immediately on success."""
        sleeps = []

        @retry_with_backoff(max_retries=3, sleep=sleeps.append)
        def success_func():
            return "success"

        assert success_func() == "success"
        assert sleeps == []

    def test_retries_on_exception(self):
        """Retries on specified exceptions."""
        call_count = 0
        sleeps = []

        @retry_with_backoff(max_retries=3, exceptions=(ValueError,), sleep=sleeps.append)
        def failing_then_success():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ValueError("Temporary failure")
            return "success"

        assert failing_then_success() == "success"
        assert call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_raises_after_max_retries(self):
        """Raises the last exception after max retries exhausted."""
        call_count = 0

        @retry_with_backoff(max_retries=3, exceptions=(ValueError,), sleep=lambda _: None)
        def always_fails():
            nonlocal call_count
            call_count += 1
            raise ValueError(f"fail {call_count}")

        with pytest.raises(ValueError, match="fail 3"):
            always_fails()

        assert call_count == 3

    def test_does_not_catch_unspecified_exceptions(self):
        """Exceptions outside the tuple propagate at once."""
        call_count = 0

        @retry_with_backoff(max_retries=3, exceptions=(ValueError,), sleep=lambda _: None)
        def raises_type_error():
            nonlocal call_count
            call_count += 1
            raise TypeError("Not retried")

        with pytest.raises(TypeError):
            raises_type_error()

        assert call_count == 1

    def test_max_delay_respected(self):
        """Delays are capped by max_delay."""
        sleeps = []

        @retry_with_backoff(
            max_retries=4, base_delay=5.0, max_delay=8.0, sleep=sleeps.append
        )
        def always_fails():
            raise ValueError("x")

        with pytest.raises(ValueError):
            always_fails()

        assert sleeps == [5.0, 8.0, 8.0]

    def test_on_retry_callback(self):
        """on_retry is called before each retry with the attempt number."""
        callback = MagicMock()

        @retry_with_backoff(max_retries=3, on_retry=callback, sleep=lambda _: None)
        def always_fails():
            raise ValueError("x")

        with pytest.raises(ValueError):
            always_fails()

        assert [c.args[0] for c in callback.call_args_list] == [1, 2]

    def test_retry_if_rejects(self):
        """An exception the predicate rejects is raised without another attempt."""
        sleeps = []
        mock_func = MagicMock(side_effect=[ValueError("transient"), ValueError("fatal")])

        @retry_with_backoff(
            max_retries=5,
            exceptions=(ValueError,),
            retry_if=lambda e: str(e) == "transient",
            sleep=sleeps.append,
        )
        def wrapped():
            return mock_func()

        with pytest.raises(ValueError, match="fatal"):
            wrapped()

        assert mock_func.call_count == 2
        assert sleeps == [1.0]

    def test_preserves_function_metadata(self):
        """functools.wraps keeps the name and docstring."""

        @retry_with_backoff()
        def documented():
            """Docstring."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring."

    def test_zero_retries(self):
        """No attempts at all is a RuntimeError."""

        @retry_with_backoff(max_retries=0)
        def never_called():
            raise AssertionError("called")

        with pytest.raises(RuntimeError):
            never_called()


class TestInFlightRegistry:
    """Tests for shared pending results."""

    def test_returns_result(self):
        """A lone call runs the work and returns its result."""
        registry = InFlightRegistry()
        assert registry.run("k", lambda: 42) == 42
        assert len(registry) == 0

    def test_concurrent_callers_share_one_run(self, caplog):
        """Callers arriving while pending get the same result."""
        caplog.set_level(logging.DEBUG, logger="delve.reliability.inflight")
        registry = InFlightRegistry()
        started = threading.Event()
        release = threading.Event()
        calls = []

        def work():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return object()

        results = []
        owner = threading.Thread(target=lambda: results.append(registry.run("k", work)))
        owner.start()
        assert started.wait(timeout=5)
        assert registry.is_pending("k")

        joiner = threading.Thread(target=lambda: results.append(registry.run("k", work)))
        joiner.start()
        deadline = time.monotonic() + 5
        while not any("Joining" in r.getMessage() for r in caplog.records):
            assert time.monotonic() < deadline
            time.sleep(0.005)
        release.set()
        owner.join(timeout=5)
        joiner.join(timeout=5)

        assert len(calls) == 1
        assert results[0] is results[1]

    def test_failure_shared_and_cleared(self):
        """Joiners see the same exception and the next call retries."""
        registry = InFlightRegistry()
        release = threading.Event()
        started = threading.Event()
        errors = []

        def failing():
            started.set()
            release.wait(timeout=5)
            raise ValueError("boom")

        def call():
            try:
                registry.run("k", failing)
            except ValueError as e:
                errors.append(e)

        owner = threading.Thread(target=call)
        owner.start()
        assert started.wait(timeout=5)
        joiner = threading.Thread(target=call)
        joiner.start()
        release.set()
        owner.join(timeout=5)
        joiner.join(timeout=5)

        assert len(errors) == 2
        assert not registry.is_pending("k")
        assert registry.run("k", lambda: "ok") == "ok"

    def test_keys_independent(self):
        """Different keys do not share work."""
        registry = InFlightRegistry()
        assert registry.run("a", lambda: 1) == 1
        assert registry.run("b", lambda: 2) == 2
