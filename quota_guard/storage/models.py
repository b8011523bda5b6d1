"""
Data models for storage layer.

Defines persisted records of completed turns.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from quota_guard.core.ledger import parse_timestamp


@dataclass(frozen=True)
class TurnUsageRecord:
    """Immutable usage record of one completed turn.

    Append-only: once written, these records are never modified.
    """
    completion_id: str
    turn_id: str
    user_id: str
    input_tokens: int
    output_tokens: int
    start_time: datetime
    end_time: datetime
    tool_calls: int = 0
    provider_calls: int = 0
    cache_writes: Optional[int] = None
    cache_reads: Optional[int] = None
    total_cost: Optional[float] = None
    model_id: Optional[str] = None
    provider: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def response_time(self) -> float:
        """Seconds between turn start and completion."""
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completion_id": self.completion_id,
            "turn_id": self.turn_id,
            "user_id": self.user_id,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cache_writes": self.cache_writes,
            "cache_reads": self.cache_reads,
            "total_cost": self.total_cost,
            "tool_calls": self.tool_calls,
            "provider_calls": self.provider_calls,
            "model_id": self.model_id,
            "provider": self.provider,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "response_time": self.response_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TurnUsageRecord":
        start_time = parse_timestamp(data.get("start_time"))
        end_time = parse_timestamp(data.get("end_time"))
        if start_time is None or end_time is None:
            raise ValueError("Turn usage record has malformed timestamps")
        return cls(
            completion_id=str(data["completion_id"]),
            turn_id=str(data["turn_id"]),
            user_id=str(data["user_id"]),
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            start_time=start_time,
            end_time=end_time,
            tool_calls=int(data.get("tool_calls") or 0),
            provider_calls=int(data.get("provider_calls") or 0),
            cache_writes=data.get("cache_writes"),
            cache_reads=data.get("cache_reads"),
            total_cost=data.get("total_cost"),
            model_id=data.get("model_id"),
            provider=data.get("provider"),
        )
