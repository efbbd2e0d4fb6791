"""Unit tests for backoff, circuit breaker and attempt limits."""

import pytest

from taskdag.core.config import Settings
from taskdag.core.exceptions import CircuitOpenError
from taskdag.decomposition.retry import BackoffPolicy, CircuitBreaker, RetryPolicy


class TestBackoffPolicy:
    def test_schedule_is_capped(self) -> None:
        policy = BackoffPolicy(base_seconds=1.0, cap_seconds=30.0)

        assert [policy.delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    def test_no_delay_before_first_attempt(self) -> None:
        assert BackoffPolicy().delay(0) == 0.0

    @pytest.mark.parametrize(
        "kwargs",
        [{"base_seconds": -1.0}, {"multiplier": 0.5}],
    )
    def test_invalid_policy(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestCircuitBreaker:
    def test_opens_at_threshold(self) -> None:
        breaker = CircuitBreaker(threshold=5)
        for _ in range(4):
            breaker.record_failure("goals")

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.record_failure("goals")

        assert breaker.is_open
        assert exc_info.value.phase == "goals"
        assert exc_info.value.details == {"consecutiveFailures": 5}

    def test_success_resets(self) -> None:
        breaker = CircuitBreaker(threshold=2)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.failures == 1
        assert not breaker.is_open


class TestRetryPolicy:
    def test_allows_within_limits(self) -> None:
        policy = RetryPolicy(max_attempts_per_phase=3, max_total_attempts=10)

        assert policy.allows(phase_attempts=2, total_attempts=5)
        assert not policy.allows(phase_attempts=3, total_attempts=5)
        assert not policy.allows(phase_attempts=1, total_attempts=10)

    def test_from_settings(self, settings: Settings) -> None:
        policy = RetryPolicy.from_settings(settings)

        assert policy.max_attempts_per_phase == settings.max_attempts_per_phase
        assert policy.max_total_attempts == settings.max_total_attempts
        assert policy.backoff.delay(3) == 0.0
