"""
Token counting and usage tracking.

Holds provider-reported token counts and the best-effort estimate used
before a provider has answered.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

# ~4 characters per token for English text
CHARS_PER_TOKEN = 4

# Share of an estimated total attributed to input when no exact split exists
DEFAULT_INPUT_RATIO = 0.4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the provider.
    """
    input_tokens: int
    output_tokens: int
    total: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens used, preferring the provider-reported total."""
        if self.total is not None:
            return self.total
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of text as ceil(chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_tokens(total: int, input_ratio: float = DEFAULT_INPUT_RATIO) -> Tuple[int, int]:
    """Split a total token count into (input, output) using a fixed ratio.

    Only used when the provider did not report an exact split.
    """
    if total < 0:
        raise ValueError("total tokens cannot be negative")
    if not 0 <= input_ratio <= 1:
        raise ValueError("input_ratio must be between 0 and 1")
    input_tokens = int(round(total * input_ratio))
    return input_tokens, total - input_tokens
