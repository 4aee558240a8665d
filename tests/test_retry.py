"""Tests for retry and backoff."""

import itertools
import random

import pytest

from session_upload.client.retry import (
    RetryOpts,
    RetryState,
    backoff_schedule,
    call_with_retry,
    jitter,
    next_backoff,
)
from session_upload.exceptions import (
    ContentHashMismatchError,
    RateLimitedError,
    RetriesExhaustedError,
    TransientApiError,
)


class FlakyOperation:
    """Raises the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryOpts:
    """Tests for RetryOpts."""

    def test_defaults(self):
        """Test default retry configuration."""
        opts = RetryOpts()
        assert opts.max == 3
        assert opts.initial_backoff == 0.5
        assert opts.max_backoff == 2.0

    def test_invalid(self):
        """Test that invalid values are rejected."""
        with pytest.raises(ValueError):
            RetryOpts(max=0)
        with pytest.raises(ValueError):
            RetryOpts(initial_backoff=-1)


class TestBackoff:
    """Tests for backoff computation."""

    def test_jitter_bounds(self):
        """Test that jitter stays within a quarter of the duration."""
        rng = random.Random(42)
        for _ in range(1000):
            value = jitter(2.0, rng)
            assert 1.5 <= value <= 2.5

    def test_jitter_zero(self):
        """Test that a zero duration stays zero."""
        assert jitter(0.0, random.Random(1)) == 0.0

    def test_next_backoff_capped(self):
        """Test that doubling never exceeds the maximum."""
        assert next_backoff(0.5, 2.0) == 1.0
        assert next_backoff(1.5, 2.0) == 2.0
        assert next_backoff(2.0, 2.0) == 2.0

    def test_schedule(self):
        """Test the unjittered backoff sequence."""
        opts = RetryOpts(max=10, initial_backoff=0.5, max_backoff=2.0)
        assert list(itertools.islice(backoff_schedule(opts), 5)) == [0.5, 1.0, 2.0, 2.0, 2.0]

    def test_schedule_initial_above_max(self):
        """Test that the initial backoff is capped too."""
        opts = RetryOpts(initial_backoff=5.0, max_backoff=2.0)
        assert next(backoff_schedule(opts)) == 2.0


class TestRetryState:
    """Tests for RetryState."""

    def test_do_retry(self, no_sleep):
        """Test that the budget allows max - 1 waits."""
        state = RetryState(RetryOpts(max=3, initial_backoff=0.5, max_backoff=2.0))

        assert state.do_retry(no_sleep, random.Random(0)) is True
        assert state.do_retry(no_sleep, random.Random(0)) is True
        assert state.do_retry(no_sleep, random.Random(0)) is False

        assert state.retry_count == 3
        assert len(no_sleep.delays) == 2
        assert 0.375 <= no_sleep.delays[0] <= 0.625
        assert 0.75 <= no_sleep.delays[1] <= 1.25
        assert state.current_backoff == 2.0

    def test_single_attempt(self, no_sleep):
        """Test that max=1 never waits."""
        state = RetryState(RetryOpts(max=1))
        assert state.do_retry(no_sleep) is False
        assert no_sleep.delays == []


class TestCallWithRetry:
    """Tests for call_with_retry."""

    def test_success(self, no_sleep):
        """Test that a successful call is not retried."""
        operation = FlakyOperation()
        assert call_with_retry(operation, RetryOpts(), sleep=no_sleep) == "ok"
        assert operation.calls == 1
        assert no_sleep.delays == []

    def test_transient_then_success(self, no_sleep):
        """Test recovery from transient errors."""
        operation = FlakyOperation(TransientApiError("boom"), OSError("reset"))
        state = RetryState(RetryOpts(max=3))

        assert call_with_retry(operation, RetryOpts(max=3), sleep=no_sleep, state=state) == "ok"
        assert operation.calls == 3
        assert state.retry_count == 2
        assert len(no_sleep.delays) == 2

    def test_exhausted(self, no_sleep):
        """Test that the last error is wrapped once the budget is used up."""
        last = TransientApiError("third")
        operation = FlakyOperation(TransientApiError("1"), TransientApiError("2"), last)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            call_with_retry(operation, RetryOpts(max=3), sleep=no_sleep)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert exc_info.value.__cause__ is last
        assert operation.calls == 3
        assert len(no_sleep.delays) == 2

    def test_permanent_not_retried(self, no_sleep):
        """Test that permanent errors are raised right away."""
        operation = FlakyOperation(ContentHashMismatchError("bad hash"))

        with pytest.raises(ContentHashMismatchError):
            call_with_retry(operation, RetryOpts(max=3), sleep=no_sleep)

        assert operation.calls == 1
        assert no_sleep.delays == []

    def test_rate_limit_not_counted(self, no_sleep):
        """Test that rate limits are waited out without using the retry budget."""
        operation = FlakyOperation(
            *[RateLimitedError(retry_after_seconds=3) for _ in range(5)]
        )

        assert call_with_retry(operation, RetryOpts(max=1), sleep=no_sleep) == "ok"
        assert operation.calls == 6
        assert no_sleep.delays == [3] * 5

    def test_rate_limit_without_delay(self, no_sleep):
        """Test that a zero retry-after does not sleep."""
        operation = FlakyOperation(RateLimitedError(retry_after_seconds=0))
        assert call_with_retry(operation, RetryOpts(max=1), sleep=no_sleep) == "ok"
        assert no_sleep.delays == []
