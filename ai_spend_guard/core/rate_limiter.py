"""
Per-provider request and token rate limiting.

Fixed one-minute buckets; counters are checked and incremented under a
single lock.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

import structlog

from .errors import RateLimitError

logger = structlog.get_logger(__name__)

_BUCKET_SECONDS = 60


@dataclass(frozen=True)
class RateLimit:
    """Limits per minute. None means unlimited."""
    requests_per_minute: Optional[int] = None
    tokens_per_minute: Optional[int] = None

    def __post_init__(self):
        if self.requests_per_minute is not None and self.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be > 0")
        if self.tokens_per_minute is not None and self.tokens_per_minute <= 0:
            raise ValueError("tokens_per_minute must be > 0")


class RateLimiter:
    def __init__(
        self,
        limits: Mapping[str, RateLimit],
        clock: Callable[[], float] = time.time,
    ):
        self.limits = dict(limits)
        self._clock = clock
        self._lock = threading.Lock()
        # (provider, bucket) -> [requests, tokens]
        self._counters: Dict[Tuple[str, int], list] = {}

    def acquire(self, provider: str, tokens: int = 0) -> None:
        """Count one request of ``tokens`` against the provider's limits.

        Raises:
            RateLimitError: If either limit would be exceeded this minute
        """
        limit = self.limits.get(provider)
        if limit is None:
            return

        now = self._clock()
        bucket = int(now // _BUCKET_SECONDS)
        with self._lock:
            self._prune(bucket)
            counters = self._counters.setdefault((provider, bucket), [0, 0])
            requests, used_tokens = counters

            reason = None
            if limit.requests_per_minute is not None and requests + 1 > limit.requests_per_minute:
                reason = "requests_per_minute"
            elif limit.tokens_per_minute is not None and used_tokens + tokens > limit.tokens_per_minute:
                reason = "tokens_per_minute"

            if reason is not None:
                retry_after_ms = int(((bucket + 1) * _BUCKET_SECONDS - now) * 1000)
                logger.warning(
                    "rate_limit_exceeded",
                    provider=provider,
                    limit=reason,
                    retry_after_ms=retry_after_ms,
                )
                raise RateLimitError(
                    f"Local rate limit for {provider} exceeded ({reason})",
                    provider=provider,
                    retry_after_ms=retry_after_ms,
                )

            counters[0] = requests + 1
            counters[1] = used_tokens + tokens

    def usage(self, provider: str) -> Tuple[int, int]:
        """(requests, tokens) counted in the current minute."""
        bucket = int(self._clock() // _BUCKET_SECONDS)
        with self._lock:
            requests, tokens = self._counters.get((provider, bucket), (0, 0))
        return requests, tokens

    def _prune(self, bucket: int) -> None:
        for key in [k for k in self._counters if k[1] < bucket]:
            del self._counters[key]
