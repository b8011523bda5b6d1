"""
Typed event channel between the accounting core and UI/notification layers.

Publishing is fire-and-forget: a failing subscriber is logged and never
interrupts the publisher. Async handlers are scheduled on the running
event loop.
"""

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Type, TypeVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageEvent:
    """Base class for events published by the accounting core."""
    user_id: str


@dataclass(frozen=True)
class SessionStarted(UsageEvent):
    turn_id: str
    model_id: Optional[str] = None
    provider: Optional[str] = None


@dataclass(frozen=True)
class SessionUpdated(UsageEvent):
    turn_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: Optional[float] = None


@dataclass(frozen=True)
class ToolInvoked(UsageEvent):
    turn_id: str
    tool_calls: int = 0


@dataclass(frozen=True)
class TurnCommitted(UsageEvent):
    turn_id: str
    completion_id: str
    record: Any = None  # TurnUsageRecord


@dataclass(frozen=True)
class SessionReclaimed(UsageEvent):
    turn_id: str
    started_at: Optional[datetime] = None
    lost_tokens: int = 0


@dataclass(frozen=True)
class UsageUpdated(UsageEvent):
    ledger: Any = None  # UsageLedger snapshot


@dataclass(frozen=True)
class AlertRaised(UsageEvent):
    alert: Any = None  # Alert


@dataclass(frozen=True)
class LimitExceeded(UsageEvent):
    limit_type: str = ""  # "tokens" or "cost"
    current: float = 0.0
    limit: float = 0.0


E = TypeVar("E", bound=UsageEvent)


@dataclass
class Subscription:
    """Handle returned by subscribe()."""
    event_type: Type[UsageEvent]
    handler: Callable[[Any], Any]
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class EventChannel:
    """In-process publish/subscribe channel.

    Handlers subscribe to an event class and receive that class and its
    subclasses. Subscribing to UsageEvent receives everything.
    """

    def __init__(self):
        self._subscriptions: Dict[Type[UsageEvent], List[Subscription]] = defaultdict(list)
        self._pending: Set["asyncio.Task[Any]"] = set()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Any]) -> Subscription:
        """Register a handler for an event type."""
        subscription = Subscription(event_type=event_type, handler=handler)
        self._subscriptions[event_type].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        handlers = self._subscriptions.get(subscription.event_type, [])
        self._subscriptions[subscription.event_type] = [
            s for s in handlers if s.subscription_id != subscription.subscription_id
        ]

    def publish(self, event: UsageEvent) -> None:
        """Deliver an event to every matching subscriber."""
        for event_type, subscriptions in list(self._subscriptions.items()):
            if not isinstance(event, event_type):
                continue
            for subscription in list(subscriptions):
                self._deliver(subscription, event)

    def _deliver(self, subscription: Subscription, event: UsageEvent) -> None:
        try:
            result = subscription.handler(event)
        except Exception:
            logger.exception(
                "Event handler %r failed for %s",
                subscription.handler, type(event).__name__,
            )
            return

        if inspect.isawaitable(result):
            self._schedule(subscription, event, result)

    def _schedule(self, subscription: Subscription, event: UsageEvent, result: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Dropping async handler %r for %s: no running event loop",
                subscription.handler, type(event).__name__,
            )
            if inspect.iscoroutine(result):
                result.close()
            return

        try:
            task = asyncio.ensure_future(result, loop=loop)
        except Exception:
            logger.exception(
                "Could not schedule event handler %r for %s",
                subscription.handler, type(event).__name__,
            )
            return
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Async event handler failed", exc_info=error)
