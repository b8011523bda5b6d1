"""
Per-user usage ledger.

Holds current-period counters, lifetime counters, reset markers and the
per-model breakdown for the current month. Period boundaries are
evaluated in UTC.

Rollover rules:
- Monthly: (year, month) of now differs from the marker's
- Daily: calendar date of now differs from the marker's
- Hourly: at least one hour elapsed since the marker

A missing or malformed marker, or one later than now, counts as
rollover due so a new period is never counted as a continuation of an
old one.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .catalog import QuotaSet
from .clock import ensure_utc

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)


@dataclass(frozen=True)
class UsageDelta:
    """Usage to fold into a ledger in one commit."""
    tokens: int
    cost: float
    requests: int
    model_id: Optional[str] = None

    def __post_init__(self):
        """Validate delta values are non-negative."""
        if self.tokens < 0:
            raise ValueError("tokens cannot be negative")
        if self.cost < 0:
            raise ValueError("cost cannot be negative")
        if self.requests < 0:
            raise ValueError("requests cannot be negative")


@dataclass
class PeriodUsage:
    """Counters for the current month, day and hour."""
    month_tokens: int = 0
    month_cost: float = 0.0
    hour_requests: int = 0
    day_requests: int = 0


@dataclass
class LifetimeUsage:
    """Counters that are never reset."""
    total_tokens: int = 0
    total_cost: float = 0.0
    total_requests: int = 0


@dataclass
class ResetMarkers:
    """When each period was last reset. None means unknown."""
    last_monthly_reset: Optional[datetime] = None
    last_hourly_reset: Optional[datetime] = None
    last_daily_reset: Optional[datetime] = None


@dataclass
class ModelUsage:
    """Current-month usage of one model."""
    tokens: int = 0
    cost: float = 0.0
    requests: int = 0


@dataclass(frozen=True)
class RolloverResult:
    """Which periods were reset by a rollover check."""
    monthly: bool = False
    daily: bool = False
    hourly: bool = False

    @property
    def any(self) -> bool:
        return self.monthly or self.daily or self.hourly


@dataclass
class UsageLedger:
    """Mutable usage counters for one user."""
    current_period: PeriodUsage = field(default_factory=PeriodUsage)
    lifetime: LifetimeUsage = field(default_factory=LifetimeUsage)
    reset_markers: ResetMarkers = field(default_factory=ResetMarkers)
    model_usage: Dict[str, ModelUsage] = field(default_factory=dict)

    @classmethod
    def create(cls, now: datetime) -> "UsageLedger":
        """Create a zeroed ledger whose periods all start at now."""
        now = ensure_utc(now)
        return cls(reset_markers=ResetMarkers(
            last_monthly_reset=now,
            last_hourly_reset=now,
            last_daily_reset=now,
        ))

    def copy(self) -> "UsageLedger":
        return copy.deepcopy(self)

    def apply_delta(self, delta: UsageDelta) -> None:
        """Add a delta to current-period, lifetime and per-model counters.

        Rollover for now must already have been checked, otherwise usage
        from a new period would be added to the old period's counters.

        Args:
            delta: Usage to add
        """
        period = self.current_period
        period.month_tokens += delta.tokens
        period.month_cost += delta.cost
        period.hour_requests += delta.requests
        period.day_requests += delta.requests

        self.lifetime.total_tokens += delta.tokens
        self.lifetime.total_cost += delta.cost
        self.lifetime.total_requests += delta.requests

        model_id = delta.model_id or "unknown"
        model = self.model_usage.setdefault(model_id, ModelUsage())
        model.tokens += delta.tokens
        model.cost += delta.cost
        model.requests += delta.requests

    def check_and_rollover(self, now: datetime) -> RolloverResult:
        """Reset every period whose boundary has passed.

        Periods are independent: a monthly rollover does not imply a daily
        or hourly one, and vice versa.

        Args:
            now: Current time

        Returns:
            RolloverResult saying which periods were reset
        """
        now = ensure_utc(now)
        markers = self.reset_markers

        monthly = should_reset_monthly(markers.last_monthly_reset, now)
        daily = should_reset_daily(markers.last_daily_reset, now)
        hourly = should_reset_hourly(markers.last_hourly_reset, now)

        if monthly:
            self.current_period.month_tokens = 0
            self.current_period.month_cost = 0.0
            self.model_usage = {}
            markers.last_monthly_reset = now
        if daily:
            self.current_period.day_requests = 0
            markers.last_daily_reset = now
        if hourly:
            self.current_period.hour_requests = 0
            markers.last_hourly_reset = now

        result = RolloverResult(monthly=monthly, daily=daily, hourly=hourly)
        if result.any:
            logger.debug("Ledger rollover at %s: %s", now.isoformat(), result)
        return result

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a JSON-compatible dict with ISO-8601 timestamps."""
        markers = self.reset_markers
        return {
            "current_period": {
                "month_tokens": self.current_period.month_tokens,
                "month_cost": self.current_period.month_cost,
                "hour_requests": self.current_period.hour_requests,
                "day_requests": self.current_period.day_requests,
            },
            "lifetime": {
                "total_tokens": self.lifetime.total_tokens,
                "total_cost": self.lifetime.total_cost,
                "total_requests": self.lifetime.total_requests,
            },
            "reset_markers": {
                "last_monthly_reset": _format_timestamp(markers.last_monthly_reset),
                "last_hourly_reset": _format_timestamp(markers.last_hourly_reset),
                "last_daily_reset": _format_timestamp(markers.last_daily_reset),
            },
            "model_usage": {
                model_id: {
                    "tokens": usage.tokens,
                    "cost": usage.cost,
                    "requests": usage.requests,
                }
                for model_id, usage in self.model_usage.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UsageLedger":
        """Rebuild a ledger from to_dict() output.

        Numeric fields default to 0. Timestamps are parsed into aware
        datetimes; anything unparseable becomes None, which makes the
        next rollover check reset that period.
        """
        data = data or {}
        period = data.get("current_period") or {}
        lifetime = data.get("lifetime") or {}
        markers = data.get("reset_markers") or {}
        models = data.get("model_usage") or {}

        return cls(
            current_period=PeriodUsage(
                month_tokens=_non_negative_int(period.get("month_tokens")),
                month_cost=_non_negative_float(period.get("month_cost")),
                hour_requests=_non_negative_int(period.get("hour_requests")),
                day_requests=_non_negative_int(period.get("day_requests")),
            ),
            lifetime=LifetimeUsage(
                total_tokens=_non_negative_int(lifetime.get("total_tokens")),
                total_cost=_non_negative_float(lifetime.get("total_cost")),
                total_requests=_non_negative_int(lifetime.get("total_requests")),
            ),
            reset_markers=ResetMarkers(
                last_monthly_reset=parse_timestamp(markers.get("last_monthly_reset")),
                last_hourly_reset=parse_timestamp(markers.get("last_hourly_reset")),
                last_daily_reset=parse_timestamp(markers.get("last_daily_reset")),
            ),
            model_usage={
                str(model_id): ModelUsage(
                    tokens=_non_negative_int(values.get("tokens")),
                    cost=_non_negative_float(values.get("cost")),
                    requests=_non_negative_int(values.get("requests")),
                )
                for model_id, values in models.items()
                if isinstance(values, dict)
            },
        )


def should_reset_monthly(last_reset: Optional[datetime], now: datetime) -> bool:
    if last_reset is None or last_reset > now:
        return True
    return (now.year, now.month) != (last_reset.year, last_reset.month)


def should_reset_daily(last_reset: Optional[datetime], now: datetime) -> bool:
    if last_reset is None or last_reset > now:
        return True
    return now.date() != last_reset.date()


def should_reset_hourly(last_reset: Optional[datetime], now: datetime) -> bool:
    if last_reset is None or last_reset > now:
        return True
    return now - last_reset >= HOUR


def next_monthly_reset(now: datetime) -> datetime:
    """First instant of the calendar month after now."""
    now = ensure_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def next_daily_reset(now: datetime) -> datetime:
    """Midnight starting the day after now."""
    now = ensure_utc(now)
    midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return midnight + timedelta(days=1)


def next_hourly_reset(now: datetime) -> datetime:
    """Top of the hour after now."""
    now = ensure_utc(now)
    return now.replace(minute=0, second=0, microsecond=0) + HOUR


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime.

    Returns None for missing or malformed values.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    # fromisoformat() on older interpreters rejects a trailing Z
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.warning("Malformed ledger timestamp %r, treating period as expired", value)
        return None


def usage_stats(ledger: UsageLedger, quota: QuotaSet) -> Dict[str, Any]:
    """Summarise a ledger against a quota for dashboards.

    Percentages are capped at 100. The model breakdown is sorted by
    tokens, largest first.
    """
    period = ledger.current_period
    total_tokens = period.month_tokens

    breakdown: List[Dict[str, Any]] = sorted(
        (
            {
                "model": model_id,
                "tokens": usage.tokens,
                "cost": usage.cost,
                "requests": usage.requests,
                "percentage": (usage.tokens / total_tokens * 100) if total_tokens > 0 else 0.0,
            }
            for model_id, usage in ledger.model_usage.items()
        ),
        key=lambda row: row["tokens"],
        reverse=True,
    )

    return {
        "current_month": {
            "tokens": period.month_tokens,
            "cost": period.month_cost,
            "requests": sum(usage.requests for usage in ledger.model_usage.values()),
            "token_percentage": min(usage_fraction(period.month_tokens, quota.monthly_token_limit) * 100, 100.0),
            "cost_percentage": min(usage_fraction(period.month_cost, quota.monthly_cost_limit) * 100, 100.0),
        },
        "limits": {
            "monthly_tokens": quota.monthly_token_limit,
            "monthly_cost": quota.monthly_cost_limit,
            "hourly_requests": quota.hourly_request_limit,
            "daily_requests": quota.daily_request_limit,
        },
        "model_breakdown": breakdown,
    }


def usage_fraction(used: float, limit: float) -> float:
    """Fraction of a limit consumed. A non-positive limit counts as fully used."""
    if limit <= 0:
        return 1.0
    return used / limit


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _non_negative_float(value: Any) -> float:
    try:
        return max(0.0, float(value or 0))
    except (TypeError, ValueError):
        return 0.0
