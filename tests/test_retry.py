"""
Unit tests for the retry executor.

Sleeps, clocks and jitter are injected so nothing actually waits.
"""

import threading

import pytest

from ai_spend_guard.core.errors import (
    InvalidCredentialsError,
    InvalidRequestError,
    ProviderError,
    RateLimitError,
    RetryCancelledError,
    ServerError,
)
from ai_spend_guard.core.retry import RetryExecutor, RetryPolicy, compute_delay_ms, is_retryable


class FakeTime:
    """Clock whose sleep advances time instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FlakyCall:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.attempts = 0

    def __call__(self):
        self.attempts += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def executor(policy=None, fake=None, rng=lambda: 0.0) -> RetryExecutor:
    fake = fake or FakeTime()
    return RetryExecutor(policy or RetryPolicy(), sleep=fake.sleep, clock=fake.clock, rng=rng)


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay_ms == 1000
        assert policy.multiplier == 2
        assert policy.max_delay_ms == 30000

    def test_validation(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError, match="max_delay_ms"):
            RetryPolicy(base_delay_ms=5000, max_delay_ms=1000)
        with pytest.raises(ValueError, match="jitter_ratio"):
            RetryPolicy(jitter_ratio=2)

    def test_multiplier_must_outgrow_jitter(self):
        with pytest.raises(ValueError, match=r"1 \+ jitter_ratio"):
            RetryPolicy(multiplier=1, jitter_ratio=0.1)
        RetryPolicy(multiplier=1, jitter_ratio=0)
        RetryPolicy(multiplier=1.5, jitter_ratio=0.5)


class TestRetryClassification:
    def test_retryable_errors(self):
        assert is_retryable(ServerError("503", status_code=503))
        assert is_retryable(RateLimitError("slow down"))
        assert is_retryable(TimeoutError())
        assert is_retryable(ConnectionError())

    def test_fatal_errors(self):
        assert not is_retryable(InvalidCredentialsError("bad key"))
        assert not is_retryable(InvalidRequestError("bad request"))
        assert not is_retryable(ProviderError("unknown"))
        assert not is_retryable(ValueError("bug"))


class TestBackoff:
    def test_exponential_growth_without_jitter(self):
        policy = RetryPolicy(jitter_ratio=0)
        assert [compute_delay_ms(policy, n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_delays_non_decreasing_and_capped(self):
        policy = RetryPolicy(max_attempts=10, max_delay_ms=10000)
        for rng_value in (0.0, 0.5, 0.999):
            delays = [compute_delay_ms(policy, n, rng=lambda: rng_value) for n in range(1, 10)]
            assert delays == sorted(delays)
            assert max(delays) == 10000

    def test_jitter_bounded_by_ratio(self):
        policy = RetryPolicy(jitter_ratio=0.1)
        assert compute_delay_ms(policy, 1, rng=lambda: 1.0) == pytest.approx(1100)

    def test_rate_limit_hint_wins(self):
        policy = RetryPolicy()
        error = RateLimitError("slow down", retry_after_ms=2500)
        assert compute_delay_ms(policy, 1, error, rng=lambda: 0.9) == 2500

    def test_rate_limit_hint_capped(self):
        policy = RetryPolicy(max_delay_ms=30000)
        error = RateLimitError("slow down", retry_after_ms=120000)
        assert compute_delay_ms(policy, 1, error) == 30000


class TestRetryExecutor:
    def test_success_first_try(self):
        call = FlakyCall("ok")
        assert executor().execute(call) == "ok"
        assert call.attempts == 1

    def test_two_503s_then_success(self):
        fake = FakeTime()
        call = FlakyCall(ServerError("503", status_code=503), ServerError("503", status_code=503), "ok")
        assert executor(fake=fake).execute(call) == "ok"
        assert call.attempts == 3
        assert fake.sleeps == [1.0, 2.0]

    def test_retry_bound(self):
        error = ServerError("always down", status_code=503)
        call = FlakyCall(error, error, error, error)
        with pytest.raises(ServerError) as exc_info:
            executor().execute(call)
        assert exc_info.value is error
        assert call.attempts == 3

    def test_fatal_error_not_retried(self):
        fake = FakeTime()
        call = FlakyCall(InvalidCredentialsError("bad key"), "ok")
        with pytest.raises(InvalidCredentialsError):
            executor(fake=fake).execute(call)
        assert call.attempts == 1
        assert fake.sleeps == []

    def test_rate_limit_waits_for_hint(self):
        fake = FakeTime()
        call = FlakyCall(RateLimitError("slow down", retry_after_ms=1500), "ok")
        assert executor(fake=fake).execute(call) == "ok"
        assert fake.sleeps == [1.5]

    def test_deadline_stops_retrying(self):
        fake = FakeTime()
        error = ServerError("down")
        call = FlakyCall(error, error, "ok")
        with pytest.raises(ServerError):
            executor(fake=fake).execute(call, timeout=1.5)
        # 1s wait fits the deadline, the 2s one would not
        assert call.attempts == 2
        assert fake.sleeps == [1.0]

    def test_cancel_before_start(self):
        cancel = threading.Event()
        cancel.set()
        call = FlakyCall("ok")
        with pytest.raises(RetryCancelledError):
            executor().execute(call, cancel=cancel)
        assert call.attempts == 0

    def test_cancel_during_wait(self):
        cancel = threading.Event()

        def call():
            cancel.set()
            raise ServerError("down")

        with pytest.raises(RetryCancelledError) as exc_info:
            executor().execute(call, cancel=cancel)
        assert exc_info.value.attempts == 1
