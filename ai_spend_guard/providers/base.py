"""
Provider client contract.

Capabilities are explicit methods; adapters translate provider wire
formats into these types and provider failures into the error taxonomy.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

from ai_spend_guard.core.messages import Message
from ai_spend_guard.core.token_counter import TokenUsage


@dataclass(frozen=True)
class Response:
    """Completed provider response."""
    content: str
    usage: Optional[TokenUsage]
    finish_reason: Optional[str]
    model: str
    provider: str
    response_time_ms: float = 0.0
    request_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamChunk:
    """Incremental piece of a streamed response.

    The terminal chunk carries ``finish_reason`` and usually ``usage``.
    """
    content: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None


class ProviderClient(Protocol):
    """What the pipeline needs from an AI provider."""

    name: str

    def send(self, messages: Sequence[Message], options: Dict[str, Any]) -> Response:
        """Send messages and return the complete response."""
        ...

    def stream(self, messages: Sequence[Message], options: Dict[str, Any]) -> Iterator[StreamChunk]:
        """Send messages and yield response chunks as they arrive."""
        ...

    def list_models(self) -> List[str]:
        """Model identifiers available to this client."""
        ...
