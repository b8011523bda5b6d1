"""
Turn-level usage correlation.

A turn is one user request, which may take several provider round trips
(tool-call loops) before the final answer. Each round trip reports its
usage; the tracker adds these up and, when the turn completes, folds the
total into the user's ledger exactly once.

Lifecycle of a session:
- start_turn creates it
- report_partial_usage / record_tool_invocation add to it
- complete_turn commits it and removes it from the active set
- the staleness sweep reclaims sessions that never complete

Aborted turns are never committed. Their partial usage is lost when the
sweep reclaims them.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from quota_guard.storage.models import TurnUsageRecord
from quota_guard.storage.repository import PersistenceError

from .alerts import AlertEngine
from .clock import ensure_utc
from .events import (
    EventChannel,
    SessionReclaimed,
    SessionStarted,
    SessionUpdated,
    ToolInvoked,
    TurnCommitted,
)
from .ledger import UsageDelta
from .meter import UsageMeter
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=30)
DEFAULT_SWEEP_INTERVAL = timedelta(minutes=5)
DEFAULT_COMPLETED_RETENTION = timedelta(hours=24)


class DuplicateTurnError(Exception):
    """Raised when a turn is started while it already has an active session."""
    def __init__(self, turn_id: str):
        super().__init__(f"Turn {turn_id!r} already has an active session")
        self.turn_id = turn_id


@dataclass
class Session:
    """Running totals for one in-flight turn."""
    turn_id: str
    start_time: datetime
    model_id: Optional[str] = None
    provider: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_writes: Optional[int] = None
    cache_reads: Optional[int] = None
    total_cost: Optional[float] = None
    tool_calls: int = 0
    provider_calls: int = 0
    completion_time: Optional[datetime] = None
    committed: bool = False

    def add(self, usage: TokenUsage) -> None:
        """Accumulate one provider call's usage."""
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        if usage.cache_writes is not None:
            self.cache_writes = (self.cache_writes or 0) + usage.cache_writes
        if usage.cache_reads is not None:
            self.cache_reads = (self.cache_reads or 0) + usage.cache_reads
        if usage.total_cost is not None:
            self.total_cost = (self.total_cost or 0.0) + usage.total_cost
        self.provider_calls += 1


class SessionTracker:
    """Correlates provider-call usage with user turns for one user."""

    def __init__(
        self,
        meter: UsageMeter,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL,
        completed_retention: timedelta = DEFAULT_COMPLETED_RETENTION,
    ):
        if stale_after <= timedelta(0):
            raise ValueError("stale_after must be positive")
        if sweep_interval <= timedelta(0):
            raise ValueError("sweep_interval must be positive")
        self.meter = meter
        self.stale_after = stale_after
        self.sweep_interval = sweep_interval
        self.completed_retention = completed_retention

        self._active: Dict[str, Session] = {}
        self._completed: Dict[str, TurnUsageRecord] = {}
        self._sweeper: Optional["asyncio.Task[None]"] = None

    @property
    def user_id(self) -> str:
        return self.meter.user_id

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.meter.clock.now()

    def start_turn(
        self,
        turn_id: str,
        model_id: Optional[str] = None,
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        """Begin tracking a turn.

        Raises:
            DuplicateTurnError: If the turn already has an active session
        """
        if turn_id in self._active:
            raise DuplicateTurnError(turn_id)

        session = Session(
            turn_id=turn_id,
            start_time=self._now(now),
            model_id=model_id,
            provider=provider,
        )
        self._active[turn_id] = session
        self.meter.events.publish(SessionStarted(
            user_id=self.user_id, turn_id=turn_id, model_id=model_id, provider=provider,
        ))
        return session

    def report_partial_usage(
        self,
        turn_id: str,
        usage: TokenUsage,
        model_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> bool:
        """Add one provider call's usage to a turn.

        Usage can arrive after a session was committed or reclaimed, so a
        missing session is logged and ignored.

        Returns:
            True if the usage was recorded
        """
        session = self._active.get(turn_id)
        if session is None:
            logger.warning("No active session for turn %s, dropping usage report", turn_id)
            return False

        session.add(usage)
        if model_id is not None:
            session.model_id = model_id
        if provider is not None:
            session.provider = provider

        logger.debug(
            "Turn %s now at %d input / %d output tokens over %d calls",
            turn_id, session.input_tokens, session.output_tokens, session.provider_calls,
        )
        self.meter.events.publish(SessionUpdated(
            user_id=self.user_id,
            turn_id=turn_id,
            input_tokens=session.input_tokens,
            output_tokens=session.output_tokens,
            total_cost=session.total_cost,
        ))
        return True

    def record_tool_invocation(self, turn_id: str) -> bool:
        """Count a tool call against a turn. Missing sessions are ignored."""
        session = self._active.get(turn_id)
        if session is None:
            return False
        session.tool_calls += 1
        self.meter.events.publish(ToolInvoked(
            user_id=self.user_id, turn_id=turn_id, tool_calls=session.tool_calls,
        ))
        return True

    async def complete_turn(
        self,
        turn_id: str,
        completion_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[TurnUsageRecord]:
        """Commit a turn's accumulated usage to the ledger.

        This is the only place in-memory accumulation becomes durable
        accounting. The session leaves the active set before anything is
        awaited, so a second call for the same turn (or a racing one)
        finds nothing and does nothing.

        Args:
            turn_id: Turn being completed
            completion_id: Identifier of the completion message
            now: Completion time, defaults to the clock

        Returns:
            The committed record, or None if there was no active session

        Raises:
            PersistenceError: If the ledger write failed. The usage is
                counted in memory and the turn stays committed.
        """
        session = self._active.pop(turn_id, None)
        if session is None:
            logger.warning("No active session for turn %s, ignoring completion", turn_id)
            return None

        now = self._now(now)
        session.completion_time = now
        session.committed = True

        record = TurnUsageRecord(
            completion_id=completion_id,
            turn_id=turn_id,
            user_id=self.user_id,
            input_tokens=session.input_tokens,
            output_tokens=session.output_tokens,
            cache_writes=session.cache_writes,
            cache_reads=session.cache_reads,
            total_cost=session.total_cost,
            tool_calls=session.tool_calls,
            provider_calls=session.provider_calls,
            model_id=session.model_id,
            provider=session.provider,
            start_time=session.start_time,
            end_time=now,
        )
        self._completed[completion_id] = record

        delta = UsageDelta(
            tokens=record.total_tokens,
            cost=record.total_cost or 0.0,
            requests=max(1, record.provider_calls),
            model_id=record.model_id,
        )
        try:
            await self.meter.commit(delta, now)
        except PersistenceError:
            # The usage is still counted in memory
            await self._record_committed(record)
            raise
        await self._record_committed(record)
        return record

    async def _record_committed(self, record: TurnUsageRecord) -> None:
        try:
            await self.meter.store.append_turn_record(record)
        except Exception as e:
            # The ledger already holds this usage; the record is history only
            logger.warning("Could not store usage record for turn %s: %s", record.turn_id, e)

        self.meter.events.publish(TurnCommitted(
            user_id=self.user_id,
            turn_id=record.turn_id,
            completion_id=record.completion_id,
            record=record,
        ))

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Reclaim sessions that never completed and expire old records.

        Returns:
            Turn ids of the reclaimed sessions
        """
        now = self._now(now)
        cutoff = now - self.stale_after
        reclaimed = []

        for turn_id, session in list(self._active.items()):
            if session.start_time < cutoff:
                del self._active[turn_id]
                reclaimed.append(turn_id)
                lost = session.input_tokens + session.output_tokens
                logger.warning(
                    "Reclaimed stale session for turn %s started %s; %d tokens not billed",
                    turn_id, session.start_time.isoformat(), lost,
                )
                self.meter.events.publish(SessionReclaimed(
                    user_id=self.user_id,
                    turn_id=turn_id,
                    started_at=session.start_time,
                    lost_tokens=lost,
                ))

        record_cutoff = now - self.completed_retention
        for completion_id, record in list(self._completed.items()):
            if record.start_time < record_cutoff:
                del self._completed[completion_id]

        return reclaimed

    def start(self) -> None:
        """Run sweep() periodically on the current event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.ensure_future(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweeper."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def __aenter__(self) -> "SessionTracker":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        interval = self.sweep_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    def get_active_session(self, turn_id: str) -> Optional[Session]:
        return self._active.get(turn_id)

    def active_sessions(self) -> List[Session]:
        return list(self._active.values())

    def get_turn_usage(self, completion_id: str) -> Optional[TurnUsageRecord]:
        """Usage of a completed turn by its completion id."""
        return self._completed.get(completion_id)

    def get_usage_by_turn(self, turn_id: str) -> Optional[TurnUsageRecord]:
        """Usage of a completed turn by the turn id."""
        for record in self._completed.values():
            if record.turn_id == turn_id:
                return record
        return None

    def stats(self) -> Dict[str, float]:
        """Summary of completed turns still in memory."""
        records = list(self._completed.values())
        response_times = [r.response_time for r in records if r.response_time > 0]
        return {
            "total_messages": len(records),
            "active_sessions": len(self._active),
            "average_response_time": (
                sum(response_times) / len(response_times) if response_times else 0.0
            ),
            "total_tokens": sum(r.total_tokens for r in records),
            "total_cost": sum(r.total_cost or 0.0 for r in records),
        }


async def open_tracker(
    user_id: str,
    store,
    config=None,
    clock=None,
    events=None,
) -> SessionTracker:
    """Build a meter and session tracker for a user from configuration.

    Args:
        user_id: User whose usage is tracked
        store: ProfileStore holding the user's tier and ledger
        config: QuotaGuardConfig, defaults apply when omitted
        clock: Clock, defaults to the system clock
        events: EventChannel shared with UI layers

    Returns:
        SessionTracker bound to a freshly opened UsageMeter
    """
    from quota_guard.config.loader import QuotaGuardConfig

    config = config or QuotaGuardConfig()
    events = events or EventChannel()
    alerts = AlertEngine(
        user_id,
        warning_threshold=config.alerts.warning_threshold,
        events=events,
        enabled=config.alerts.enabled,
    )
    meter = await UsageMeter.open(
        user_id,
        store,
        catalog=config.catalog,
        clock=clock,
        alerts=alerts,
        events=events,
        max_retries=config.persistence.max_retries,
        retry_delay=config.persistence.retry_delay_seconds,
    )
    return SessionTracker(
        meter,
        stale_after=config.sessions.stale_after,
        sweep_interval=config.sessions.sweep_interval,
        completed_retention=config.sessions.completed_retention,
    )
