"""
SDK for AI Spend Guard.

Provides the guarded client applications talk to.
"""

from .client import GuardedClient, create_provider

__all__ = ["GuardedClient", "create_provider"]
