"""
Data models for storage layer.

Defines persisted entities.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class CostRecord:
    """Immutable record of one completed request's cost.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    currency: str
    processing_time_ms: float
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    organization_id: Optional[str] = None
    estimated: bool = False
