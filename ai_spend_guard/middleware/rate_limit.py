"""
Client-side provider rate limiting.
"""

from ai_spend_guard.core.estimator import CostEstimator
from ai_spend_guard.core.pipeline import MiddlewareContext, Next
from ai_spend_guard.core.rate_limiter import RateLimiter


class RateLimitMiddleware:
    """Counts each request against the provider's per-minute limits.

    Token usage is the pre-flight estimate; an estimate already computed by
    budget enforcement is reused.
    """

    name = "rate_limit"

    def __init__(self, limiter: RateLimiter, estimator: CostEstimator):
        self.limiter = limiter
        self.estimator = estimator

    def handle(self, context: MiddlewareContext, next_: Next):
        tokens = context.metadata.get("estimated_tokens")
        if tokens is None:
            tokens = self.estimator.estimate(context.messages, context.model).tokens
        self.limiter.acquire(context.provider, tokens)
        return next_(context)
