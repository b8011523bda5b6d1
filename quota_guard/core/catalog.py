"""
Subscription tiers and their quota limits.

The catalog is a fixed lookup table. Tier changes swap which QuotaSet a
user references; a QuotaSet is never edited in place.
"""

import logging
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class Tier(Enum):
    """Subscription levels, from most to least restrictive."""
    FREE_TRIAL = "free_trial"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: Union[str, "Tier", None]) -> Optional["Tier"]:
        """Parse a tier name, returning None if it is not a known tier."""
        if isinstance(value, Tier):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# Tier whose quota is used when a lookup fails, so usage is never unmetered
MOST_RESTRICTIVE_TIER = Tier.FREE_TRIAL

# Tier that may use every model regardless of its allowed_models list
UNRESTRICTED_TIER = Tier.ENTERPRISE


@dataclass(frozen=True)
class QuotaSet:
    """Usage limits and feature access for one tier."""
    monthly_token_limit: int
    monthly_cost_limit: float
    hourly_request_limit: int
    daily_request_limit: int
    max_context_window: int
    allowed_models: Tuple[str, ...] = ()  # empty = all models
    can_use_reasoning_models: bool = False
    can_use_codebase_index: bool = False
    can_use_custom_modes: bool = False
    can_export_history: bool = False

    def __post_init__(self):
        """Validate limits are non-negative."""
        for name in (
            "monthly_token_limit",
            "monthly_cost_limit",
            "hourly_request_limit",
            "daily_request_limit",
            "max_context_window",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if not isinstance(self.allowed_models, tuple):
            object.__setattr__(self, "allowed_models", tuple(self.allowed_models))


QUOTA_FIELDS = tuple(f.name for f in fields(QuotaSet))


@dataclass(frozen=True)
class QuotaCatalog:
    """Immutable mapping from tier to QuotaSet."""
    quotas: Mapping[Tier, QuotaSet]

    def get_quota(self, tier: Union[Tier, str, None]) -> QuotaSet:
        """Get the quota set for a tier.

        Unknown tiers fall back to the most restrictive tier instead of
        failing open.

        Args:
            tier: Tier or tier name

        Returns:
            QuotaSet for the tier
        """
        parsed = Tier.parse(tier)
        if parsed is None or parsed not in self.quotas:
            logger.warning(
                "Unknown tier %r, falling back to %s quotas",
                tier, MOST_RESTRICTIVE_TIER.value,
            )
            return self.quotas[MOST_RESTRICTIVE_TIER]
        return self.quotas[parsed]

    def with_overrides(self, overrides: Mapping[Tier, Mapping[str, object]]) -> "QuotaCatalog":
        """Build a new catalog with some limits replaced per tier."""
        quotas: Dict[Tier, QuotaSet] = dict(self.quotas)
        for tier, values in overrides.items():
            quotas[tier] = replace(quotas[tier], **values)
        return QuotaCatalog(quotas)


QUOTA_CATALOG = QuotaCatalog({
    Tier.FREE_TRIAL: QuotaSet(
        monthly_token_limit=100_000,
        monthly_cost_limit=10.0,
        hourly_request_limit=50,
        daily_request_limit=500,
        max_context_window=32_000,
        allowed_models=(
            "claude-3-5-sonnet",
            "gpt-4o-mini",
            "gemini-1.5-flash",
        ),
    ),
    Tier.BASIC: QuotaSet(
        monthly_token_limit=1_000_000,
        monthly_cost_limit=50.0,
        hourly_request_limit=200,
        daily_request_limit=2_000,
        max_context_window=128_000,
        allowed_models=(
            "claude-3-5-sonnet",
            "claude-sonnet-4",
            "gpt-4o",
            "gpt-4o-mini",
            "gemini-1.5-pro",
            "gemini-1.5-flash",
        ),
        can_use_codebase_index=True,
        can_use_custom_modes=True,
        can_export_history=True,
    ),
    Tier.PRO: QuotaSet(
        monthly_token_limit=5_000_000,
        monthly_cost_limit=200.0,
        hourly_request_limit=500,
        daily_request_limit=5_000,
        max_context_window=200_000,
        allowed_models=(
            "claude-3-5-sonnet",
            "claude-sonnet-4",
            "claude-3-7-sonnet-thinking",
            "gpt-4o",
            "gpt-4o-mini",
            "o1-preview",
            "o1-mini",
            "gemini-1.5-pro",
            "gemini-2.0-pro",
            "deepseek-v3",
        ),
        can_use_reasoning_models=True,
        can_use_codebase_index=True,
        can_use_custom_modes=True,
        can_export_history=True,
    ),
    Tier.ENTERPRISE: QuotaSet(
        monthly_token_limit=20_000_000,
        monthly_cost_limit=1000.0,
        hourly_request_limit=2_000,
        daily_request_limit=20_000,
        max_context_window=1_000_000,
        allowed_models=(),
        can_use_reasoning_models=True,
        can_use_codebase_index=True,
        can_use_custom_modes=True,
        can_export_history=True,
    ),
})
