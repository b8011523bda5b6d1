"""
Token counting for a single provider call.

A turn may span several provider calls; each one reports a TokenUsage
that the session tracker adds to the turn's running totals.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TokenUsage:
    """Usage reported by one provider call.

    Contains exact counts as returned by the provider. Cost is optional
    because some providers report it and others do not.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_writes: Optional[int] = None
    cache_reads: Optional[int] = None
    total_cost: Optional[float] = None

    def __post_init__(self):
        """Validate counts are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
        if self.cache_writes is not None and self.cache_writes < 0:
            raise ValueError("cache_writes cannot be negative")
        if self.cache_reads is not None and self.cache_reads < 0:
            raise ValueError("cache_reads cannot be negative")
        if self.total_cost is not None and self.total_cost < 0:
            raise ValueError("total_cost cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output). Cache counts are not included."""
        return self.input_tokens + self.output_tokens
