"""
Persistence for budgets and cost records.
"""

from .budget_store import BudgetStore, InMemoryBudgetStore, SqliteBudgetStore
from .models import CostRecord
from .repository import CostRecordRepository

__all__ = [
    "BudgetStore",
    "InMemoryBudgetStore",
    "SqliteBudgetStore",
    "CostRecord",
    "CostRecordRepository",
]
