"""
Budget ledger.

Owns the authoritative spend per scope and period. Usage increments,
lazy rollover and threshold marking happen atomically in the store;
the ledger turns newly crossed thresholds into notifications.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Union

import structlog

from .budget import (
    DEFAULT_CRITICAL_THRESHOLD,
    DEFAULT_WARNING_THRESHOLD,
    Budget,
    Scope,
    UsageUpdate,
)
from .events import BudgetThresholdReached
from .notifications import Notifier
from .periods import PERIOD_PRECEDENCE, PeriodType, utc_now
from .pricing import DEFAULT_CURRENCY, to_decimal

logger = structlog.get_logger(__name__)

Amount = Union[Decimal, float, int, str]


class BudgetLedger:
    """Budget bookkeeping on top of a ``BudgetStore``."""

    def __init__(
        self,
        store,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.notifier = notifier
        self._clock = clock

    def create_budget(
        self,
        scope: Scope,
        period_type: PeriodType,
        limit: Amount,
        currency: str = DEFAULT_CURRENCY,
        warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
        critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD,
    ) -> Budget:
        """Create a budget, replacing any active one for the same scope and period."""
        budget = Budget.create(
            scope,
            period_type,
            to_decimal(limit),
            self._clock(),
            currency=currency,
            warning_threshold=warning_threshold,
            critical_threshold=critical_threshold,
        )
        self.store.save(budget)
        logger.info(
            "budget_created",
            scope=str(scope),
            period_type=period_type.value,
            limit=str(budget.limit),
        )
        return budget

    def ensure_budget(self, scope: Scope, period_type: PeriodType, limit: Amount, **kwargs) -> Budget:
        """Return the active budget, creating one with ``limit`` if absent."""
        existing = self.store.get(scope, period_type)
        if existing is not None:
            return existing
        return self.create_budget(scope, period_type, limit, **kwargs)

    def get_budget(self, scope: Scope, period_type: PeriodType) -> Optional[Budget]:
        return self.store.get(scope, period_type)

    def budgets_for(self, scope: Scope) -> List[Budget]:
        """Active budgets of a scope in precedence order, per-request first."""
        by_period = {b.period_type: b for b in self.store.list(scope) if b.is_active}
        return [by_period[p] for p in PERIOD_PRECEDENCE if p in by_period]

    def record_usage(self, scope: Scope, period_type: PeriodType, cost: Amount) -> Optional[UsageUpdate]:
        """Add actual cost to a period budget.

        Returns:
            The usage update, or None when no such budget exists

        Raises:
            ValueError: If cost is negative
        """
        amount = to_decimal(cost)
        if amount < 0:
            raise ValueError("cost cannot be negative")
        if not period_type.is_windowed:
            # Per-request limits are checked pre-flight only
            return None

        update = self.store.apply_usage(scope, period_type, amount, self._clock())
        if update is None:
            return None

        if update.rolled_over:
            logger.info("budget_rolled_over", scope=str(scope), period_type=period_type.value)
        for level in update.crossed:
            self._notify(update.budget, level)
        return update

    def check_would_exceed(self, scope: Scope, period_type: PeriodType, additional_cost: Amount) -> bool:
        """True if adding ``additional_cost`` would push usage past the limit."""
        budget = self.store.get(scope, period_type)
        if budget is None or not budget.is_active:
            return False
        additional = to_decimal(additional_cost)
        if not period_type.is_windowed:
            return additional > budget.limit
        return self._effective_usage(budget) + additional > budget.limit

    def get_remaining(self, scope: Scope, period_type: PeriodType) -> Optional[Decimal]:
        """Remaining allowance, or None when no budget exists.

        An expired window counts as already rolled over.
        """
        budget = self.store.get(scope, period_type)
        if budget is None:
            return None
        return max(Decimal("0"), budget.limit - self._effective_usage(budget))

    def current_usage(self, budget: Budget) -> Decimal:
        """Usage of a budget as of now, treating an expired window as empty."""
        return self._effective_usage(budget)

    def rollover_expired(self, now: Optional[datetime] = None) -> List[Budget]:
        """Roll every expired budget into the window containing ``now``."""
        rolled = self.store.roll_over_expired(now or self._clock())
        for budget in rolled:
            logger.info(
                "budget_rolled_over",
                scope=str(budget.scope),
                period_type=budget.period_type.value,
                period_start=budget.period_start.isoformat() if budget.period_start else None,
            )
        return rolled

    def record_for_scopes(self, scopes: Iterable[Scope], cost: Amount) -> List[UsageUpdate]:
        """Record ``cost`` against every period budget of each scope."""
        updates = []
        for scope in scopes:
            for budget in self.budgets_for(scope):
                if not budget.period_type.is_windowed:
                    continue
                update = self.record_usage(scope, budget.period_type, cost)
                if update is not None:
                    updates.append(update)
        return updates

    def _effective_usage(self, budget: Budget) -> Decimal:
        if budget.is_expired(self._clock()):
            return Decimal("0")
        return budget.current_usage

    def _notify(self, budget: Budget, level) -> None:
        event = BudgetThresholdReached(
            scope=budget.scope,
            period_type=budget.period_type,
            level=level,
            threshold_pct=budget.threshold_for(level),
            current_spend=budget.current_usage,
            limit=budget.limit,
            usage_pct=budget.usage_percentage,
        )
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.error(
                "budget_notification_failed",
                scope=str(budget.scope),
                period_type=budget.period_type.value,
                level=level.value,
                error=str(e),
            )
