"""
Token counting and usage tracking.

Holds token counts for a request and estimates them from text when the
backend does not report usage.
"""

import math
from dataclasses import dataclass
from typing import Optional

DEFAULT_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens cannot be negative")
        if self.completion_tokens < 0:
            raise ValueError("completion_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_counts(cls, tokens_in: Optional[int], tokens_out: Optional[int]) -> "TokenUsage":
        """Build usage from optional counts, treating missing counts as zero."""
        return cls(prompt_tokens=tokens_in or 0, completion_tokens=tokens_out or 0)


def estimate_tokens(text: Optional[str], chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate the token count of text with a fixed characters-per-token ratio.

    Partial tokens round up so short fragments are never free.
    """
    if chars_per_token <= 0:
        raise ValueError("chars_per_token must be > 0")
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)
