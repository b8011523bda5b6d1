"""
Admission control for new provider requests.

Enforcement Order (first failing check wins, so users see the most
important limit first):
1. Monthly token limit
2. Monthly cost limit
3. Hourly request limit
4. Daily request limit

Model access is a separate check against the tier's allowed models.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .catalog import QuotaSet, Tier, UNRESTRICTED_TIER
from .ledger import (
    UsageLedger,
    next_daily_reset,
    next_hourly_reset,
    next_monthly_reset,
)


class BlockingLimit(Enum):
    """Limit that caused a request to be refused."""
    MONTHLY_TOKENS = "monthly_tokens"
    MONTHLY_COST = "monthly_cost"
    HOURLY_REQUESTS = "hourly_requests"
    DAILY_REQUESTS = "daily_requests"
    MODEL_NOT_ALLOWED = "model_not_allowed"


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission check.

    Blocked decisions carry the limit and, for period limits, when it
    resets so a UI can render an actionable message.
    """
    allowed: bool
    blocking_limit: Optional[BlockingLimit] = None
    reset_at: Optional[datetime] = None
    remaining_tokens: Optional[int] = None
    remaining_cost: Optional[float] = None
    reason: Optional[str] = None


class AdmissionDenied(Exception):
    """Raised when a request is refused by admission control."""
    def __init__(self, decision: AdmissionDecision):
        super().__init__(decision.reason or "Request not admitted")
        self.decision = decision


def can_admit(ledger: UsageLedger, quota: QuotaSet, now: datetime) -> AdmissionDecision:
    """Decide whether a new request may proceed.

    The ledger must already have been rolled over for now; stale
    counters from a finished period would otherwise block falsely.

    Args:
        ledger: Usage ledger, rolled over for now
        quota: Quota set of the user's tier
        now: Current time, used to compute reset times

    Returns:
        AdmissionDecision
    """
    period = ledger.current_period

    # 1. Monthly tokens
    if period.month_tokens >= quota.monthly_token_limit:
        return AdmissionDecision(
            allowed=False,
            blocking_limit=BlockingLimit.MONTHLY_TOKENS,
            reset_at=next_monthly_reset(now),
            remaining_tokens=0,
            reason="Monthly token limit exceeded",
        )

    # 2. Monthly cost
    if period.month_cost >= quota.monthly_cost_limit:
        return AdmissionDecision(
            allowed=False,
            blocking_limit=BlockingLimit.MONTHLY_COST,
            reset_at=next_monthly_reset(now),
            remaining_cost=0.0,
            reason="Monthly cost limit exceeded",
        )

    # 3. Hourly requests
    if period.hour_requests >= quota.hourly_request_limit:
        return AdmissionDecision(
            allowed=False,
            blocking_limit=BlockingLimit.HOURLY_REQUESTS,
            reset_at=next_hourly_reset(now),
            reason="Hourly request limit exceeded",
        )

    # 4. Daily requests
    if period.day_requests >= quota.daily_request_limit:
        return AdmissionDecision(
            allowed=False,
            blocking_limit=BlockingLimit.DAILY_REQUESTS,
            reset_at=next_daily_reset(now),
            reason="Daily request limit exceeded",
        )

    return AdmissionDecision(
        allowed=True,
        remaining_tokens=quota.monthly_token_limit - period.month_tokens,
        remaining_cost=quota.monthly_cost_limit - period.month_cost,
    )


def can_use_model(tier: Tier, quota: QuotaSet, model_id: str) -> bool:
    """Check whether a tier may use a model.

    The unrestricted tier always may. Otherwise an empty allowed list
    means all models.
    """
    if tier == UNRESTRICTED_TIER:
        return True
    if not quota.allowed_models:
        return True
    return model_id in quota.allowed_models


def check_model(tier: Tier, quota: QuotaSet, model_id: str) -> AdmissionDecision:
    """Model admission as an AdmissionDecision."""
    if can_use_model(tier, quota, model_id):
        return AdmissionDecision(allowed=True)
    return AdmissionDecision(
        allowed=False,
        blocking_limit=BlockingLimit.MODEL_NOT_ALLOWED,
        reason=f"Model {model_id!r} is not available on the {tier.value} tier",
    )
