"""
Pre-flight budget enforcement.

Estimates what a request will cost and blocks it before dispatch when
any applicable budget would be exceeded. Never writes to the ledger;
actual spend is recorded after the response by the recording sink.
"""

import threading
import time
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from ai_spend_guard.core.budget import Budget, Scope
from ai_spend_guard.core.errors import BudgetCheckError, BudgetExceededError
from ai_spend_guard.core.estimator import CostEstimate, CostEstimator
from ai_spend_guard.core.ledger import BudgetLedger
from ai_spend_guard.core.periods import PeriodType
from ai_spend_guard.core.pipeline import MiddlewareContext, Next

logger = structlog.get_logger(__name__)

BudgetKey = Tuple[Scope, PeriodType]


class BudgetEnforcementMiddleware:
    """Blocks requests whose projected spend would exceed a budget.

    Budgets are checked per scope (user, then project, then organization),
    and within a scope per-request first, then daily through yearly.

    Args:
        ledger: Budget ledger to read limits and usage from
        estimator: Cost estimator for the pre-flight projection
        strict_mode: Treat enforcement faults as fatal
        fail_open: Allow requests when enforcement itself fails; defaults
            to ``not strict_mode``
        cache_ttl: Seconds to cache which budgets apply to a scope
        default_limits: Limits for user budgets created on first use
    """

    name = "budget_enforcement"

    def __init__(
        self,
        ledger: BudgetLedger,
        estimator: CostEstimator,
        *,
        enabled: bool = True,
        strict_mode: bool = False,
        fail_open: Optional[bool] = None,
        cache_ttl: float = 0,
        default_limits: Optional[Mapping[PeriodType, Decimal]] = None,
        budget_defaults: Optional[Mapping[str, object]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.estimator = estimator
        self.enabled = enabled
        self.strict_mode = strict_mode
        self.fail_open = (not strict_mode) if fail_open is None else fail_open
        self.cache_ttl = cache_ttl
        self.default_limits = dict(default_limits or {})
        self.budget_defaults = dict(budget_defaults or {})
        self._clock = clock
        self._cache: Dict[Scope, Tuple[float, List[PeriodType]]] = {}
        self._cache_lock = threading.Lock()

    def handle(self, context: MiddlewareContext, next_: Next):
        if not self.enabled:
            return next_(context)

        try:
            estimate = self.estimator.estimate(context.messages, context.model)
            checks = self._applicable_budgets(context)
        except Exception as e:
            if self.fail_open:
                logger.warning(
                    "budget_check_failed_open",
                    request_id=context.request_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                context.metadata["budget_check"] = "failed_open"
                return next_(context)
            logger.error(
                "budget_check_failed",
                request_id=context.request_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise BudgetCheckError(f"Budget check failed: {e}") from e

        for budget, usage in checks:
            self._enforce(context, budget, usage, estimate)

        context.metadata["estimated_cost"] = estimate.cost
        context.metadata["estimated_tokens"] = estimate.tokens
        context.metadata["budget_check"] = "passed"
        return next_(context)

    def invalidate(self, scope: Optional[Scope] = None) -> None:
        """Drop cached budget lookups for one scope or all of them."""
        with self._cache_lock:
            if scope is None:
                self._cache.clear()
            else:
                self._cache.pop(scope, None)

    def _applicable_budgets(self, context: MiddlewareContext) -> List[Tuple[Budget, Decimal]]:
        user_scope = context.scope.user_scope
        if user_scope is not None and self.default_limits:
            self._ensure_defaults(user_scope)

        checks = []
        for scope in context.scope.scopes():
            for period_type in self._period_types(scope):
                # Usage is read fresh on every request, only the lookup is cached
                budget = self.ledger.get_budget(scope, period_type)
                if budget is None or not budget.is_active:
                    continue
                checks.append((budget, self.ledger.current_usage(budget)))
        return checks

    def _period_types(self, scope: Scope) -> List[PeriodType]:
        if self.cache_ttl > 0:
            now = self._clock()
            with self._cache_lock:
                cached = self._cache.get(scope)
                if cached is not None and now - cached[0] < self.cache_ttl:
                    return cached[1]

        period_types = [budget.period_type for budget in self.ledger.budgets_for(scope)]
        if self.cache_ttl > 0:
            with self._cache_lock:
                self._cache[scope] = (self._clock(), period_types)
        return period_types

    def _ensure_defaults(self, scope: Scope) -> None:
        for period_type, limit in self.default_limits.items():
            if self.ledger.get_budget(scope, period_type) is None:
                self.ledger.ensure_budget(scope, period_type, limit, **self.budget_defaults)
                self.invalidate(scope)

    def _enforce(self, context: MiddlewareContext, budget: Budget, usage: Decimal, estimate: CostEstimate) -> None:
        if budget.period_type.is_windowed:
            projected = usage + estimate.cost
        else:
            projected = estimate.cost

        if projected > budget.limit:
            logger.warning(
                "budget_exceeded",
                request_id=context.request_id,
                scope=str(budget.scope),
                period_type=budget.period_type.value,
                limit=str(budget.limit),
                current_usage=str(usage),
                estimated_cost=str(estimate.cost),
                projected=str(projected),
            )
            raise BudgetExceededError(
                budget_type=budget.period_type.value,
                limit=budget.limit,
                projected_spending=projected,
                scope=str(budget.scope),
            )
