"""
AI provider clients.

The OpenAI adapter lives in ``providers.openai_provider`` and is imported
on demand.
"""

from .base import ProviderClient, Response, StreamChunk
from .mock import MockProvider

__all__ = ["MockProvider", "ProviderClient", "Response", "StreamChunk"]
