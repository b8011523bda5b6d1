"""
Usage alerts derived from ledger-vs-quota percentages.

Alerts are advisory and UI-facing. Admission control is the actual
enforcement mechanism; the "limit exceeded" signal raised here is for
callers that want to stop work early.

Rules:
- warning_threshold <= usage < 100%: WARNING alert for that dimension
- usage >= 100%: CRITICAL alert plus a LimitExceeded signal

Every evaluation creates new alert records. Duplicates are not
suppressed; deduplication and acknowledgement UI belong to the caller.
"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .catalog import QuotaSet
from .clock import ensure_utc
from .events import AlertRaised, EventChannel, LimitExceeded
from .ledger import UsageLedger, usage_fraction

logger = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 0.8

# Days before trial expiry at which an alert is raised, with severity
TRIAL_WARNING_DAYS = (7, 3, 1)


class AlertType(Enum):
    TOKEN_LIMIT = "token_limit"
    COST_LIMIT = "cost_limit"
    REQUEST_LIMIT = "request_limit"
    TRIAL_EXPIRY = "trial_expiry"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    """A usage alert. Only the acknowledged flag ever changes."""
    alert_id: str
    user_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    threshold: float
    current_value: float
    created_at: datetime
    acknowledged: bool = False


@dataclass
class AlertEvaluation:
    """Alerts and limit signals produced by one evaluation."""
    alerts: List[Alert] = field(default_factory=list)
    exceeded: List[LimitExceeded] = field(default_factory=list)

    @property
    def limit_exceeded(self) -> bool:
        return bool(self.exceeded)


class AlertEngine:
    """Creates, stores and acknowledges usage alerts for one user."""

    def __init__(
        self,
        user_id: str,
        warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
        events: Optional[EventChannel] = None,
        enabled: bool = True,
    ):
        if not 0 < warning_threshold < 1:
            raise ValueError("warning_threshold must be between 0 and 1")
        self.user_id = user_id
        self.warning_threshold = warning_threshold
        self.enabled = enabled
        self._events = events
        self._alerts: Dict[str, Alert] = {}
        self._sequence = itertools.count(1)

    def evaluate(self, ledger: UsageLedger, quota: QuotaSet, now: datetime) -> AlertEvaluation:
        """Evaluate a ledger after a commit.

        Args:
            ledger: Ledger state after the commit
            quota: Quota set of the user's tier
            now: Time of evaluation

        Returns:
            AlertEvaluation with the alerts created and limits exceeded
        """
        evaluation = AlertEvaluation()
        if not self.enabled:
            return evaluation

        period = ledger.current_period
        dimensions = (
            (AlertType.TOKEN_LIMIT, "token", "tokens",
             period.month_tokens, quota.monthly_token_limit),
            (AlertType.COST_LIMIT, "cost", "cost",
             period.month_cost, quota.monthly_cost_limit),
        )

        for alert_type, label, limit_type, used, limit in dimensions:
            fraction = usage_fraction(used, limit)

            if self.warning_threshold <= fraction < 1.0:
                evaluation.alerts.append(self._create(
                    alert_type,
                    AlertSeverity.WARNING,
                    f"You've used {round(fraction * 100)}% of your monthly {label} limit",
                    self.warning_threshold,
                    fraction,
                    now,
                ))
            elif fraction >= 1.0:
                evaluation.alerts.append(self._create(
                    alert_type,
                    AlertSeverity.CRITICAL,
                    f"Monthly {label} limit exceeded",
                    1.0,
                    fraction,
                    now,
                ))
                signal = LimitExceeded(
                    user_id=self.user_id,
                    limit_type=limit_type,
                    current=used,
                    limit=limit,
                )
                evaluation.exceeded.append(signal)
                logger.warning(
                    "User %s exceeded monthly %s limit (%s / %s)",
                    self.user_id, label, used, limit,
                )
                self._publish(signal)

        return evaluation

    def check_trial_expiry(self, trial_end: datetime, now: datetime) -> Optional[Alert]:
        """Raise a trial-expiry alert when the trial is close to ending.

        Seven days out is INFO, three days is WARNING, one day or an
        expired trial is CRITICAL. Earlier than that, nothing is raised.
        """
        if not self.enabled:
            return None
        remaining = ensure_utc(trial_end) - ensure_utc(now)
        days_remaining = max(0, remaining.days + (1 if remaining.seconds or remaining.microseconds else 0))

        if days_remaining > TRIAL_WARNING_DAYS[0]:
            return None
        if days_remaining <= TRIAL_WARNING_DAYS[2]:
            severity = AlertSeverity.CRITICAL
        elif days_remaining <= TRIAL_WARNING_DAYS[1]:
            severity = AlertSeverity.WARNING
        else:
            severity = AlertSeverity.INFO

        if days_remaining == 0:
            message = "Your trial has expired"
        elif days_remaining == 1:
            message = "Your trial expires tomorrow"
        else:
            message = f"Your trial expires in {days_remaining} days"

        return self._create(
            AlertType.TRIAL_EXPIRY, severity, message,
            float(TRIAL_WARNING_DAYS[0]), float(days_remaining), now,
        )

    def acknowledge(self, alert_id: str) -> bool:
        """Mark an alert acknowledged. Returns False if it does not exist."""
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        return True

    def active_alerts(self) -> List[Alert]:
        """Unacknowledged alerts, oldest first."""
        return [a for a in self._alerts.values() if not a.acknowledged]

    def all_alerts(self) -> List[Alert]:
        return list(self._alerts.values())

    def prune(self, before: datetime) -> int:
        """Drop alerts created before a time. Returns how many were removed."""
        before = ensure_utc(before)
        stale = [key for key, alert in self._alerts.items() if alert.created_at < before]
        for key in stale:
            del self._alerts[key]
        return len(stale)

    def _create(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        threshold: float,
        current_value: float,
        now: datetime,
    ) -> Alert:
        now = ensure_utc(now)
        alert_id = f"{alert_type.value}_{int(now.timestamp() * 1000)}_{next(self._sequence)}"
        alert = Alert(
            alert_id=alert_id,
            user_id=self.user_id,
            type=alert_type,
            severity=severity,
            message=message,
            threshold=threshold,
            current_value=current_value,
            created_at=now,
        )
        self._alerts[alert_id] = alert
        self._publish(AlertRaised(user_id=self.user_id, alert=alert))
        return alert

    def _publish(self, event) -> None:
        if self._events is not None:
            self._events.publish(event)
