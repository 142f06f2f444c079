"""
Retry handling for provider calls.

Exponential backoff with jitter for transient failures; fatal errors
surface immediately. Waits are interruptible so callers can abort.
"""

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import structlog

from .errors import ProviderError, RateLimitError, RetryCancelledError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. Delays are in milliseconds."""
    max_attempts: int = 3
    base_delay_ms: float = 1000
    multiplier: float = 2
    max_delay_ms: float = 30000
    jitter_ratio: float = 0.1

    def __post_init__(self):
        """Validate retry values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms cannot be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")
        if self.multiplier < 1 + self.jitter_ratio:
            # Keeps consecutive delays non-decreasing
            raise ValueError("multiplier must be >= 1 + jitter_ratio")


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed attempt is worth repeating.

    Rate limits, transient provider faults, timeouts and dropped
    connections are retryable; credential and request errors are not.
    """
    if isinstance(error, ProviderError):
        return error.retryable
    return isinstance(error, (TimeoutError, ConnectionError))


def compute_delay_ms(
    policy: RetryPolicy,
    attempt: int,
    error: Optional[BaseException] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before the attempt following ``attempt`` (1-based).

    An explicit provider wait hint on a rate-limit error wins over the
    computed backoff. Both are capped at ``max_delay_ms``.
    """
    if isinstance(error, RateLimitError) and error.retry_after_ms is not None:
        return float(min(error.retry_after_ms, policy.max_delay_ms))

    delay = policy.base_delay_ms * (policy.multiplier ** (attempt - 1))
    jitter = delay * policy.jitter_ratio * rng()
    return float(min(delay + jitter, policy.max_delay_ms))


class RetryExecutor:
    """Runs a call with retries according to a ``RetryPolicy``."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def execute(
        self,
        call: Callable[[], T],
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """Invoke ``call`` until it succeeds or retrying is pointless.

        Args:
            call: Zero-argument callable performing one attempt
            cancel: Event that aborts the loop when set
            timeout: Overall budget in seconds for attempts plus waits

        Returns:
            The call's result

        Raises:
            RetryCancelledError: If ``cancel`` is set before success
            Exception: The last error, unchanged, once attempts are exhausted,
                the error is fatal, or the deadline would be passed
        """
        deadline = self._clock() + timeout if timeout is not None else None
        attempt = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise RetryCancelledError(attempt)

            attempt += 1
            try:
                return call()
            except Exception as e:
                if attempt >= self.policy.max_attempts or not is_retryable(e):
                    raise

                delay_ms = compute_delay_ms(self.policy, attempt, e, self._rng)
                if deadline is not None and self._clock() + delay_ms / 1000 > deadline:
                    logger.warning("retry_deadline_exceeded", attempt=attempt, error=str(e))
                    raise

                logger.warning(
                    "provider_call_retry",
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    delay_ms=round(delay_ms, 1),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                self._wait(delay_ms / 1000, cancel, attempt)

    def _wait(self, seconds: float, cancel: Optional[threading.Event], attempt: int) -> None:
        if cancel is None:
            self._sleep(seconds)
        elif cancel.wait(seconds):
            raise RetryCancelledError(attempt)
