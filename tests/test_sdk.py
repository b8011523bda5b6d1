"""
Unit tests for SDK layer.

Tests OpenAI client wrapper behavior and per-turn usage reporting.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from quota_guard.core.admission import AdmissionDenied, BlockingLimit
from quota_guard.core.catalog import Tier
from quota_guard.core.clock import ManualClock
from quota_guard.core.ledger import UsageDelta
from quota_guard.core.sessions import open_tracker
from quota_guard.sdk.openai_client import MeteredOpenAI, extract_usage
from quota_guard.storage.repository import InMemoryProfileStore

START = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
MESSAGES = [{"role": "user", "content": "Hello"}]


def _response(prompt=100, completion=50, cached=None, tool_calls=None):
    details = SimpleNamespace(cached_tokens=cached) if cached is not None else None
    return SimpleNamespace(
        id="chatcmpl-123",
        usage=SimpleNamespace(
            prompt_tokens=prompt,
            completion_tokens=completion,
            prompt_tokens_details=details,
        ),
        choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=tool_calls))],
    )


async def _tracker(tier: Tier = Tier.ENTERPRISE):
    store = InMemoryProfileStore()
    await store.set_tier("user-1", tier)
    return await open_tracker("user-1", store, clock=ManualClock(START))


def _client(*responses):
    client = Mock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return client


class TestMeteredOpenAIInit:
    """Test MeteredOpenAI construction."""

    def test_init_missing_model(self):
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(Mock(), model="")

        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(Mock(), model="   ")

    @patch('quota_guard.sdk.openai_client.AsyncOpenAI')
    def test_creates_client_when_omitted(self, mock_openai_class):
        mock_openai_class.return_value = Mock()

        client = MeteredOpenAI(Mock(), model="gpt-4o")

        assert client.client is mock_openai_class.return_value
        assert client.provider == "openai"


class TestMeteredChat:
    """Test metered chat calls."""

    @pytest.mark.asyncio
    async def test_chat_reports_usage_to_turn(self):
        tracker = await _tracker()
        client = _client(_response(prompt=100, completion=50))
        metered = MeteredOpenAI(tracker, model="gpt-4o", client=client)

        tracker.start_turn("turn-1", model_id="gpt-4o")
        response = await metered.chat("turn-1", MESSAGES, temperature=0)
        record = await tracker.complete_turn("turn-1", "msg-1")

        assert response.id == "chatcmpl-123"
        client.chat.completions.create.assert_awaited_once_with(
            model="gpt-4o", messages=MESSAGES, temperature=0,
        )
        assert record.input_tokens == 100
        assert record.output_tokens == 50
        assert record.provider == "openai"
        assert record.total_cost == pytest.approx(0.00075)
        assert tracker.meter.ledger.current_period.month_tokens == 150

    @pytest.mark.asyncio
    async def test_tool_loop_counts_calls_and_tools(self):
        tracker = await _tracker()
        client = _client(
            _response(prompt=100, completion=20, tool_calls=[Mock(), Mock()]),
            _response(prompt=300, completion=40),
        )
        metered = MeteredOpenAI(tracker, model="gpt-4o", client=client)

        tracker.start_turn("turn-1")
        await metered.chat("turn-1", MESSAGES)
        await metered.chat("turn-1", MESSAGES)
        record = await tracker.complete_turn("turn-1", "msg-1")

        assert record.provider_calls == 2
        assert record.tool_calls == 2
        assert record.total_tokens == 460
        assert tracker.meter.ledger.current_period.hour_requests == 2

    @pytest.mark.asyncio
    async def test_blocked_request_never_reaches_provider(self):
        tracker = await _tracker(Tier.FREE_TRIAL)
        await tracker.meter.commit(UsageDelta(tokens=100_000, cost=0.0, requests=1))
        client = _client(_response())
        metered = MeteredOpenAI(tracker, model="gpt-4o-mini", client=client)

        tracker.start_turn("turn-1")
        with pytest.raises(AdmissionDenied) as exc_info:
            await metered.chat("turn-1", MESSAGES)

        assert exc_info.value.decision.blocking_limit == BlockingLimit.MONTHLY_TOKENS
        client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tier", [Tier.FREE_TRIAL, Tier.BASIC, Tier.PRO])
    async def test_api_model_id_admitted_on_restricted_tiers(self, tier):
        """Test that tier model lists match the ids sent to the provider."""
        tracker = await _tracker(tier)
        client = _client(_response())
        metered = MeteredOpenAI(tracker, model="gpt-4o-mini", client=client)

        tracker.start_turn("turn-1", model_id="gpt-4o-mini")
        await metered.chat("turn-1", MESSAGES)

        client.chat.completions.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disallowed_model_rejected(self):
        tracker = await _tracker(Tier.FREE_TRIAL)
        client = _client(_response())
        metered = MeteredOpenAI(tracker, model="o1-mini", client=client)

        with pytest.raises(AdmissionDenied) as exc_info:
            await metered.chat("turn-1", MESSAGES)

        assert exc_info.value.decision.blocking_limit == BlockingLimit.MODEL_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        tracker = await _tracker()
        client = _client(RuntimeError("API down"))
        metered = MeteredOpenAI(tracker, model="gpt-4o", client=client)

        tracker.start_turn("turn-1")
        with pytest.raises(RuntimeError, match="API down"):
            await metered.chat("turn-1", MESSAGES)

        assert tracker.get_active_session("turn-1").provider_calls == 0

    @pytest.mark.asyncio
    async def test_empty_messages(self):
        tracker = await _tracker()
        metered = MeteredOpenAI(tracker, model="gpt-4o", client=_client())

        with pytest.raises(ValueError, match="messages is required"):
            await metered.chat("turn-1", [])


class TestExtractUsage:
    """Test usage extraction from responses."""

    def test_known_model_gets_cost(self):
        usage = extract_usage("gpt-4o", _response(prompt=1_000_000, completion=0, cached=400_000))

        assert usage.input_tokens == 1_000_000
        assert usage.cache_reads == 400_000
        assert usage.total_cost == 2.0

    def test_unknown_model_has_no_cost(self):
        usage = extract_usage("my-finetune", _response())

        assert usage.total_tokens == 150
        assert usage.total_cost is None

    def test_missing_usage(self):
        assert extract_usage("gpt-4o", SimpleNamespace(usage=None)) is None
