"""
Budget threshold notifications.
"""

from typing import Protocol

import structlog

from .events import BudgetThresholdReached

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    def notify(self, event: BudgetThresholdReached) -> None:
        ...


class LoggingNotifier:
    """Writes threshold crossings to the log. Delivery channels live elsewhere."""

    def notify(self, event: BudgetThresholdReached) -> None:
        logger.warning(
            "budget_threshold_reached",
            scope=str(event.scope),
            period_type=event.period_type.value,
            level=event.level.value,
            threshold_pct=event.threshold_pct,
            usage_pct=round(event.usage_pct, 2),
            current_spend=str(event.current_spend),
            limit=str(event.limit),
        )
