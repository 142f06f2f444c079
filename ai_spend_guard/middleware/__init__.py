"""
Built-in middleware.
"""

from .budget_enforcement import BudgetEnforcementMiddleware
from .cost_tracking import CostTrackingMiddleware
from .rate_limit import RateLimitMiddleware
from .request_logging import RequestLoggingMiddleware

__all__ = [
    "BudgetEnforcementMiddleware",
    "CostTrackingMiddleware",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
]
