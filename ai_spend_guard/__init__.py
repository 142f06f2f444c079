"""
AI Spend Guard.

Budget enforcement, cost tracking and resilient dispatch for AI provider calls.
"""

__version__ = "0.1.0"
