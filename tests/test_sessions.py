"""
Unit tests for turn session tracking.

Tests accumulation across provider calls, exactly-once commit, orphan
reports and stale session reclamation.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from quota_guard.config.loader import QuotaGuardConfig, SessionConfig
from quota_guard.core.clock import ManualClock
from quota_guard.core.events import (
    EventChannel,
    SessionReclaimed,
    ToolInvoked,
    TurnCommitted,
)
from quota_guard.core.meter import UsageMeter
from quota_guard.core.sessions import DuplicateTurnError, SessionTracker, open_tracker
from quota_guard.core.token_counter import TokenUsage
from quota_guard.storage.repository import InMemoryProfileStore, PersistenceError

UTC = timezone.utc
START = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


async def _tracker(clock=None, events=None, **kwargs):
    store = InMemoryProfileStore()
    clock = clock or ManualClock(START)
    meter = await UsageMeter.open("user-1", store, clock=clock, events=events)
    return SessionTracker(meter, **kwargs), store, clock


class TestSessionLifecycle:
    """Test a turn from start to commit."""

    @pytest.mark.asyncio
    async def test_simple_turn_commits_once(self):
        """Test that one call of 100 in / 50 out adds 150 tokens."""
        tracker, store, clock = await _tracker()

        tracker.start_turn("turn-1", model_id="gpt-4o", provider="openai")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=100, output_tokens=50))
        clock.advance(seconds=3)
        record = await tracker.complete_turn("turn-1", "msg-1")

        ledger = tracker.meter.ledger
        assert ledger.current_period.month_tokens == 150
        assert ledger.current_period.hour_requests == 1
        assert ledger.model_usage["gpt-4o"].tokens == 150
        assert record.total_tokens == 150
        assert record.response_time == 3.0
        assert tracker.get_active_session("turn-1") is None

        stored = await store.list_turn_records("user-1")
        assert [r.completion_id for r in stored] == ["msg-1"]

    @pytest.mark.asyncio
    async def test_tool_loop_accumulates(self):
        """Test that several provider calls in a turn are summed."""
        tracker, _, _ = await _tracker()

        tracker.start_turn("turn-1", model_id="gpt-4o")
        tracker.report_partial_usage(
            "turn-1", TokenUsage(input_tokens=100, output_tokens=20, total_cost=0.01),
        )
        tracker.record_tool_invocation("turn-1")
        tracker.report_partial_usage(
            "turn-1", TokenUsage(input_tokens=300, output_tokens=80, cache_reads=50, total_cost=0.02),
        )
        tracker.record_tool_invocation("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=500, output_tokens=100))
        record = await tracker.complete_turn("turn-1", "msg-1")

        assert record.input_tokens == 900
        assert record.output_tokens == 200
        assert record.cache_reads == 50
        assert record.cache_writes is None
        assert record.total_cost == pytest.approx(0.03)
        assert record.tool_calls == 2
        assert record.provider_calls == 3
        ledger = tracker.meter.ledger
        assert ledger.current_period.month_tokens == 1100
        assert ledger.current_period.month_cost == pytest.approx(0.03)
        assert ledger.current_period.hour_requests == 3

    @pytest.mark.asyncio
    async def test_turn_without_usage_counts_one_request(self):
        tracker, _, _ = await _tracker()

        tracker.start_turn("turn-1")
        await tracker.complete_turn("turn-1", "msg-1")

        ledger = tracker.meter.ledger
        assert ledger.current_period.month_tokens == 0
        assert ledger.current_period.hour_requests == 1
        assert "unknown" in ledger.model_usage

    @pytest.mark.asyncio
    async def test_later_report_overrides_model(self):
        tracker, _, _ = await _tracker()

        tracker.start_turn("turn-1", model_id="gpt-4o")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=10), model_id="gpt-4o-mini")
        record = await tracker.complete_turn("turn-1", "msg-1")

        assert record.model_id == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_duplicate_start_rejected(self):
        tracker, _, _ = await _tracker()
        tracker.start_turn("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=10))

        with pytest.raises(DuplicateTurnError):
            tracker.start_turn("turn-1")

        assert tracker.get_active_session("turn-1").input_tokens == 10


class TestExactlyOnce:
    """Test that a turn reaches the ledger at most once."""

    @pytest.mark.asyncio
    async def test_second_completion_is_noop(self):
        tracker, store, _ = await _tracker()
        tracker.start_turn("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=100, output_tokens=50))

        first = await tracker.complete_turn("turn-1", "msg-1")
        second = await tracker.complete_turn("turn-1", "msg-1")

        assert first is not None
        assert second is None
        assert tracker.meter.ledger.current_period.month_tokens == 150
        assert len(await store.list_turn_records("user-1")) == 1

    @pytest.mark.asyncio
    async def test_racing_completions_commit_once(self):
        tracker, _, _ = await _tracker()
        tracker.start_turn("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=100, output_tokens=50))

        results = await asyncio.gather(
            tracker.complete_turn("turn-1", "msg-1"),
            tracker.complete_turn("turn-1", "msg-1"),
        )

        assert sum(1 for r in results if r is not None) == 1
        assert tracker.meter.ledger.current_period.month_tokens == 150

    @pytest.mark.asyncio
    async def test_concurrent_turns_for_same_user(self):
        tracker, _, _ = await _tracker()
        for i in range(20):
            tracker.start_turn(f"turn-{i}")
            tracker.report_partial_usage(f"turn-{i}", TokenUsage(input_tokens=10, output_tokens=5))

        await asyncio.gather(*[
            tracker.complete_turn(f"turn-{i}", f"msg-{i}") for i in range(20)
        ])

        assert tracker.meter.ledger.current_period.month_tokens == 300
        assert tracker.meter.ledger.lifetime.total_requests == 20
        assert tracker.active_sessions() == []

    @pytest.mark.asyncio
    async def test_report_after_commit_is_dropped(self, caplog):
        """Test that usage arriving after completion does not change the ledger."""
        tracker, _, _ = await _tracker()
        tracker.start_turn("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=100, output_tokens=50))
        await tracker.complete_turn("turn-1", "msg-1")

        accepted = tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=999))

        assert not accepted
        assert tracker.meter.ledger.current_period.month_tokens == 150
        assert "No active session" in caplog.text

    @pytest.mark.asyncio
    async def test_turns_completed_out_of_order_across_month_boundary(self):
        clock = ManualClock(datetime(2025, 3, 31, 23, 0, tzinfo=UTC))
        tracker, _, _ = await _tracker(clock=clock)
        tracker.start_turn("turn-a")
        tracker.start_turn("turn-b")
        tracker.report_partial_usage("turn-a", TokenUsage(input_tokens=100))
        tracker.report_partial_usage("turn-b", TokenUsage(input_tokens=200))

        await tracker.complete_turn("turn-b", "msg-b", now=datetime(2025, 4, 1, 0, 0, 5, tzinfo=UTC))
        await tracker.complete_turn("turn-a", "msg-a", now=datetime(2025, 4, 1, 0, 0, 1, tzinfo=UTC))

        period = tracker.meter.ledger.current_period
        assert period.month_tokens == 300
        assert period.day_requests == 2
        assert tracker.meter.ledger.model_usage["unknown"].tokens == 300

    @pytest.mark.asyncio
    async def test_failed_ledger_write_still_records_turn(self):
        """Test that a turn whose ledger write fails is still stored and announced."""
        events = EventChannel()
        committed = []
        events.subscribe(TurnCommitted, committed.append)
        store = InMemoryProfileStore()
        meter = await UsageMeter.open(
            "user-1", store, clock=ManualClock(START), events=events,
            max_retries=1, retry_delay=0,
        )
        store.save_ledger = AsyncMock(side_effect=OSError("disk full"))
        tracker = SessionTracker(meter)
        tracker.start_turn("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=100, output_tokens=50))

        with pytest.raises(PersistenceError):
            await tracker.complete_turn("turn-1", "msg-1")

        stored = await store.list_turn_records("user-1")
        assert [r.completion_id for r in stored] == ["msg-1"]
        assert [e.completion_id for e in committed] == ["msg-1"]
        assert tracker.get_turn_usage("msg-1") is not None
        assert meter.ledger.current_period.month_tokens == 150
        assert await tracker.complete_turn("turn-1", "msg-1") is None


class TestOrphans:
    """Test reports for turns that were never started."""

    @pytest.mark.asyncio
    async def test_orphan_report_is_noop(self):
        tracker, store, _ = await _tracker()

        assert not tracker.report_partial_usage("ghost", TokenUsage(input_tokens=500))
        assert not tracker.record_tool_invocation("ghost")
        assert await tracker.complete_turn("ghost", "msg-x") is None

        assert tracker.meter.ledger.current_period.month_tokens == 0
        assert await store.load_ledger("user-1") is None


class TestStaleSessions:
    """Test reclamation of abandoned sessions."""

    @pytest.mark.asyncio
    async def test_stale_session_reclaimed_and_never_billed(self):
        events = EventChannel()
        reclaimed = []
        events.subscribe(SessionReclaimed, reclaimed.append)
        tracker, _, clock = await _tracker(events=events)
        tracker.start_turn("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=100, output_tokens=50))

        clock.advance(minutes=31)
        assert tracker.sweep() == ["turn-1"]

        assert await tracker.complete_turn("turn-1", "msg-1") is None
        assert tracker.meter.ledger.current_period.month_tokens == 0
        assert reclaimed[0].lost_tokens == 150

    @pytest.mark.asyncio
    async def test_recent_session_survives_sweep(self):
        tracker, _, clock = await _tracker()
        tracker.start_turn("turn-1")

        clock.advance(minutes=29)

        assert tracker.sweep() == []
        assert tracker.get_active_session("turn-1") is not None

    @pytest.mark.asyncio
    async def test_custom_stale_after(self):
        tracker, _, clock = await _tracker(stale_after=timedelta(minutes=5))
        tracker.start_turn("turn-1")

        clock.advance(minutes=6)

        assert tracker.sweep() == ["turn-1"]

    @pytest.mark.asyncio
    async def test_completed_records_expire(self):
        tracker, _, clock = await _tracker()
        tracker.start_turn("turn-1")
        await tracker.complete_turn("turn-1", "msg-1")
        assert tracker.get_turn_usage("msg-1") is not None

        clock.advance(hours=25)
        tracker.sweep()

        assert tracker.get_turn_usage("msg-1") is None

    @pytest.mark.asyncio
    async def test_background_sweeper_runs(self):
        clock = ManualClock(START)
        tracker, _, _ = await _tracker(clock=clock, sweep_interval=timedelta(milliseconds=10))
        tracker.start_turn("turn-1")
        clock.advance(hours=1)

        async with tracker:
            await asyncio.sleep(0.05)

        assert tracker.active_sessions() == []

    def test_invalid_durations(self):
        meter = Mock()
        with pytest.raises(ValueError, match="stale_after"):
            SessionTracker(meter, stale_after=timedelta(0))
        with pytest.raises(ValueError, match="sweep_interval"):
            SessionTracker(meter, sweep_interval=timedelta(seconds=-1))


class TestQueries:
    """Test completed-turn lookups and events."""

    @pytest.mark.asyncio
    async def test_lookup_by_turn_and_completion(self):
        tracker, _, _ = await _tracker()
        tracker.start_turn("turn-1")
        tracker.report_partial_usage("turn-1", TokenUsage(input_tokens=10, output_tokens=5))
        record = await tracker.complete_turn("turn-1", "msg-1")

        assert tracker.get_turn_usage("msg-1") == record
        assert tracker.get_usage_by_turn("turn-1") == record
        assert tracker.get_usage_by_turn("turn-2") is None

    @pytest.mark.asyncio
    async def test_stats(self):
        tracker, _, clock = await _tracker()
        for i, seconds in enumerate((2, 4)):
            tracker.start_turn(f"turn-{i}")
            tracker.report_partial_usage(
                f"turn-{i}", TokenUsage(input_tokens=10, output_tokens=10, total_cost=0.5),
            )
            clock.advance(seconds=seconds)
            await tracker.complete_turn(f"turn-{i}", f"msg-{i}")
        tracker.start_turn("turn-open")

        stats = tracker.stats()

        assert stats["total_messages"] == 2
        assert stats["active_sessions"] == 1
        assert stats["average_response_time"] == pytest.approx(3.0)
        assert stats["total_tokens"] == 40
        assert stats["total_cost"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_events_published(self):
        events = EventChannel()
        committed, tools = [], []
        events.subscribe(TurnCommitted, committed.append)
        events.subscribe(ToolInvoked, tools.append)
        tracker, _, _ = await _tracker(events=events)

        tracker.start_turn("turn-1")
        tracker.record_tool_invocation("turn-1")
        await tracker.complete_turn("turn-1", "msg-1")

        assert tools[0].tool_calls == 1
        assert committed[0].completion_id == "msg-1"
        assert committed[0].record.turn_id == "turn-1"


class TestOpenTracker:
    """Test building a tracker from configuration."""

    @pytest.mark.asyncio
    async def test_open_tracker_applies_config(self):
        config = QuotaGuardConfig(sessions=SessionConfig(stale_after_seconds=60))

        tracker = await open_tracker(
            "user-1", InMemoryProfileStore(), config=config, clock=ManualClock(START),
        )

        assert tracker.stale_after == timedelta(seconds=60)
        assert tracker.user_id == "user-1"
        assert tracker.meter.alerts.warning_threshold == 0.8
