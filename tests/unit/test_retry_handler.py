"""Tests for retry handler — backoff schedule and retryable error handling."""

from unittest.mock import MagicMock

import pytest

from teammate_agents.core.config import SyncConfig
from teammate_agents.errors import AlreadyClaimed, ExternalSyncFailure, InvalidTransition
from teammate_agents.safeguards.retry_handler import RetryHandler


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def handler(sleeps):
    return RetryHandler(initial_backoff=1.0, max_backoff=5.0, multiplier=2.0, max_retries=4, sleep=sleeps.append)


class TestBackoff:
    def test_exponential_schedule(self, handler):
        assert [handler.calculate_backoff(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_capped_at_max(self, handler):
        assert handler.calculate_backoff(10) == 5.0

    def test_from_config(self):
        handler = RetryHandler.from_config(SyncConfig(max_retries=5, backoff_initial=0.5))

        assert handler.max_retries == 5
        assert handler.calculate_backoff(1) == 0.5


class TestCall:
    def test_success_first_try(self, handler, sleeps):
        assert handler.call(lambda: "ok", "noop") == "ok"
        assert sleeps == []

    def test_transient_failure_then_success(self, handler, sleeps):
        fn = MagicMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "done"])

        assert handler.call(fn, "add label") == "done"
        assert fn.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted_retries_wrap_last_error(self, handler, sleeps):
        fn = MagicMock(side_effect=TimeoutError("github timed out"))

        with pytest.raises(ExternalSyncFailure) as exc_info:
            handler.call(fn, "set status")

        assert fn.call_count == 4
        assert sleeps == [1.0, 2.0, 4.0]
        assert exc_info.value.operation == "set status"
        assert isinstance(exc_info.value.cause, TimeoutError)

    def test_structural_errors_not_retried(self, handler):
        fn = MagicMock(side_effect=InvalidTransition("epic-1", "archived", "active"))

        with pytest.raises(InvalidTransition):
            handler.call(fn, "transition")

        assert fn.call_count == 1

    def test_contention_errors_are_retried(self, handler):
        fn = MagicMock(side_effect=[AlreadyClaimed("issue-1"), "claimed"])

        assert handler.call(fn, "claim") == "claimed"

    def test_retry_on_limits_caught_types(self, sleeps):
        handler = RetryHandler(retry_on=(ConnectionError,), sleep=sleeps.append)
        fn = MagicMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            handler.call(fn, "lookup")

        assert sleeps == []
