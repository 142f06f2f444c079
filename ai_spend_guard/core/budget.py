"""
Budget model.

A budget caps spend for one scope over one recurring period. The
helpers here are pure; stores call them inside their atomic sections.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from .periods import PeriodType, period_bounds
from .pricing import DEFAULT_CURRENCY

DEFAULT_WARNING_THRESHOLD = 80.0
DEFAULT_CRITICAL_THRESHOLD = 90.0


class ScopeType(str, Enum):
    """Accounting boundaries a budget or cost record applies to."""
    USER = "user"
    PROJECT = "project"
    ORGANIZATION = "organization"


@dataclass(frozen=True)
class Scope:
    """A single accounting boundary, e.g. ``user:42``."""
    kind: ScopeType
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def parse(cls, value: str) -> "Scope":
        """Parse ``kind:id`` notation."""
        kind, sep, scope_id = value.partition(":")
        if not sep or not scope_id:
            raise ValueError(f"Scope must look like 'user:42', got {value!r}")
        try:
            return cls(ScopeType(kind.lower()), scope_id)
        except ValueError:
            valid = [t.value for t in ScopeType]
            raise ValueError(f"Scope kind must be one of: {valid}")


class ThresholdLevel(str, Enum):
    """Alert levels, in increasing severity."""
    WARNING = "warning"
    CRITICAL = "critical"


class BudgetStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"
    DISABLED = "disabled"


@dataclass(frozen=True)
class Budget:
    """Spending limit for a scope over a period.

    Instances are immutable snapshots; usage changes produce new snapshots
    via ``apply_usage``/``rolled_over``.
    """
    scope: Scope
    period_type: PeriodType
    limit: Decimal
    currency: str = DEFAULT_CURRENCY
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    current_usage: Decimal = Decimal("0")
    notified: FrozenSet[ThresholdLevel] = frozenset()
    is_active: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        """Validate budget invariants."""
        if self.limit <= 0:
            raise ValueError("limit must be > 0")
        if self.current_usage < 0:
            raise ValueError("current_usage cannot be negative")
        if not 0 < self.warning_threshold <= 100:
            raise ValueError("warning_threshold must be in (0, 100]")
        if not 0 < self.critical_threshold <= 100:
            raise ValueError("critical_threshold must be in (0, 100]")
        if self.warning_threshold > self.critical_threshold:
            raise ValueError("warning_threshold cannot exceed critical_threshold")
        if self.period_type.is_windowed:
            if self.period_start is None or self.period_end is None:
                raise ValueError(f"{self.period_type.value} budget needs a period window")
            if self.period_start >= self.period_end:
                raise ValueError("period_start must be before period_end")

    @classmethod
    def create(
        cls,
        scope: Scope,
        period_type: PeriodType,
        limit: Decimal,
        now: datetime,
        **kwargs,
    ) -> "Budget":
        """Create a budget whose window contains ``now``."""
        start, end = period_bounds(period_type, now)
        return cls(
            scope=scope,
            period_type=period_type,
            limit=limit,
            period_start=start,
            period_end=end,
            **kwargs,
        )

    @property
    def key(self) -> Tuple[Scope, PeriodType]:
        return self.scope, self.period_type

    @property
    def usage_percentage(self) -> float:
        return float(self.current_usage / self.limit * 100)

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0"), self.limit - self.current_usage)

    @property
    def status(self) -> BudgetStatus:
        if not self.is_active:
            return BudgetStatus.DISABLED
        if self.current_usage >= self.limit:
            return BudgetStatus.EXCEEDED
        if self.usage_percentage >= self.critical_threshold:
            return BudgetStatus.CRITICAL
        if self.usage_percentage >= self.warning_threshold:
            return BudgetStatus.WARNING
        return BudgetStatus.OK

    def threshold_for(self, level: ThresholdLevel) -> float:
        if level is ThresholdLevel.CRITICAL:
            return self.critical_threshold
        return self.warning_threshold

    def is_expired(self, now: datetime) -> bool:
        """True once ``now`` has left the current window."""
        return self.period_end is not None and now >= self.period_end

    def rolled_over(self, now: datetime) -> "Budget":
        """Advance to the window containing ``now`` with usage reset.

        The new window is computed from ``now`` directly, so gaps with no
        traffic are skipped rather than replayed.
        """
        start, end = period_bounds(self.period_type, now)
        return replace(
            self,
            period_start=start,
            period_end=end,
            current_usage=Decimal("0"),
            notified=frozenset(),
        )

    def apply_usage(
        self,
        amount: Decimal,
        now: datetime,
    ) -> Tuple["Budget", Tuple[ThresholdLevel, ...]]:
        """Add usage, rolling the window first if it has expired.

        Returns:
            (updated budget, thresholds newly crossed in this period)
        """
        if amount < 0:
            raise ValueError("usage amount cannot be negative")

        budget = self.rolled_over(now) if self.is_expired(now) else self
        updated = replace(budget, current_usage=budget.current_usage + amount)

        crossed = tuple(
            level for level in ThresholdLevel
            if level not in updated.notified
            and updated.usage_percentage >= updated.threshold_for(level)
        )
        if crossed:
            updated = replace(updated, notified=updated.notified | frozenset(crossed))
        return updated, crossed


@dataclass(frozen=True)
class UsageUpdate:
    """Outcome of an atomic usage increment."""
    budget: Budget
    previous_usage: Decimal
    crossed: Tuple[ThresholdLevel, ...] = ()
    rolled_over: bool = False
