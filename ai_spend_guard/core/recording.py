"""
Post-response cost recording.

Runs after the caller already has its response: computes the actual
cost, appends a cost record, charges the budget ledger and announces
the result. Failures here are logged and never reach the caller.
"""

from typing import Optional

import structlog

from ai_spend_guard.providers.base import Response
from ai_spend_guard.storage.models import CostRecord
from .errors import CostCalculationError
from .estimator import CostEstimator
from .events import CostCalculated, EventDispatcher
from .ledger import BudgetLedger
from .periods import utc_now
from .pipeline import MiddlewareContext

logger = structlog.get_logger(__name__)


class RecordingSink:
    """Turns completed requests into cost records and ledger updates."""

    def __init__(
        self,
        estimator: CostEstimator,
        ledger: BudgetLedger,
        dispatcher: EventDispatcher,
        repository=None,
    ):
        self.estimator = estimator
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.repository = repository

    def submit(self, context: MiddlewareContext, response: Response) -> None:
        """Queue recording on the dispatcher behind the request's events."""
        self.dispatcher.submit(self.on_request_completed, context, response)

    def on_request_completed(self, context: MiddlewareContext, response: Response) -> Optional[CostRecord]:
        """Record the actual cost of a completed request.

        Returns:
            The cost record, or None if recording failed
        """
        try:
            record = self._build_record(context, response)
        except CostCalculationError as e:
            logger.warning(
                "cost_calculation_failed",
                request_id=context.request_id,
                model=response.model or context.model,
                error=str(e),
            )
            return None

        try:
            if self.repository is not None:
                self.repository.append(record)
            self.ledger.record_for_scopes(context.scope.scopes(), record.total_cost)
        except Exception as e:
            logger.error(
                "cost_recording_failed",
                request_id=context.request_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        logger.info(
            "cost_recorded",
            request_id=record.request_id,
            provider=record.provider,
            model=record.model,
            total_tokens=record.total_tokens,
            total_cost=str(record.total_cost),
            estimated=record.estimated,
        )
        self.dispatcher.dispatch(CostCalculated(request_id=context.request_id, record=record))
        return record

    def _build_record(self, context: MiddlewareContext, response: Response) -> CostRecord:
        usage = response.usage
        estimated = usage is None
        if usage is None:
            usage = self.estimator.estimate_usage(context.messages, response.content)

        model = response.model or context.model
        breakdown = self.estimator.calculate_cost(usage, model)
        scope = context.scope
        return CostRecord(
            timestamp=utc_now(),
            provider=response.provider or context.provider,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            input_cost=breakdown.input_cost,
            output_cost=breakdown.output_cost,
            total_cost=breakdown.total_cost,
            currency=breakdown.currency,
            processing_time_ms=response.response_time_ms,
            request_id=context.request_id,
            user_id=scope.user_id,
            project_id=scope.project_id,
            organization_id=scope.organization_id,
            estimated=estimated,
        )
