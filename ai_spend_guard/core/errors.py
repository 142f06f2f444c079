"""
Error taxonomy.

Every failure a caller can observe is one of these types, so callers
always learn exactly why a request was not fulfilled.
"""

from decimal import Decimal
from typing import Optional


class SpendGuardError(Exception):
    """Base class for all AI Spend Guard errors."""


class BudgetExceededError(SpendGuardError):
    """Raised pre-flight when a request would push spend past a budget limit.

    User-facing and never retryable.
    """

    def __init__(
        self,
        budget_type: str,
        limit: Decimal,
        projected_spending: Decimal,
        scope: Optional[str] = None,
    ):
        self.budget_type = budget_type
        self.limit = limit
        self.projected_spending = projected_spending
        self.scope = scope
        target = f" for {scope}" if scope else ""
        super().__init__(
            f"{budget_type.replace('_', '-').capitalize()} budget of ${limit} would be exceeded{target}. "
            f"Projected spending: ${projected_spending}"
        )


class BudgetCheckError(SpendGuardError):
    """Raised when budget enforcement itself fails and the policy is fail-closed."""


class ProviderError(SpendGuardError):
    """Failure reported by (or while talking to) an AI provider."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class RateLimitError(ProviderError):
    """Rate limit hit. Retryable, optionally with a provider-supplied wait hint."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
        status_code: Optional[int] = 429,
    ):
        super().__init__(message, provider=provider, status_code=status_code, retryable=True)
        self.retry_after_ms = retry_after_ms


class ServerError(ProviderError):
    """Transient provider fault: 5xx responses, timeouts, dropped connections."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider=provider, status_code=status_code, retryable=True)


class InvalidCredentialsError(ProviderError):
    """Authentication or permission failure. Fatal."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = 401):
        super().__init__(message, provider=provider, status_code=status_code, retryable=False)


class InvalidRequestError(ProviderError):
    """Malformed or otherwise permanently rejected request. Fatal."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = 400):
        super().__init__(message, provider=provider, status_code=status_code, retryable=False)


class CostCalculationError(SpendGuardError):
    """Cost could not be computed. Logged, never blocks the primary request."""


class PipelineError(SpendGuardError):
    """Middleware pipeline failure: unknown stage or an unexpected stage fault."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class RetryCancelledError(SpendGuardError):
    """The caller cancelled an in-flight retry loop."""

    def __init__(self, attempts: int):
        super().__init__(f"Retry loop cancelled after {attempts} attempt(s)")
        self.attempts = attempts
