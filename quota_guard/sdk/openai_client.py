"""
Metered OpenAI client wrapper.

Checks admission before each call and reports the call's usage to the
turn it belongs to. Responses are returned unchanged.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from ..core.pricing import PRICING_TABLE, calculate_cost
from ..core.sessions import SessionTracker
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)


class MeteredOpenAI:
    """OpenAI chat client that meters usage per turn.

    A turn may call chat() several times (tool-call loops); every call
    is admitted separately and its usage is added to the turn's session.
    """

    def __init__(
        self,
        tracker: SessionTracker,
        model: str,
        provider: str = "openai",
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            tracker: Session tracker of the user making the calls
            model: OpenAI model name (required)
            provider: Provider label recorded with the usage
            client: Existing AsyncOpenAI client, created if omitted

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.tracker = tracker
        self.model = model
        self.provider = provider
        self.client = client or AsyncOpenAI()

    async def chat(
        self,
        turn_id: str,
        messages: List[Dict[str, Any]],
        **kwargs: Any
    ) -> Any:
        """Create a chat completion within a turn.

        Args:
            turn_id: Turn the call belongs to
            messages: List of message dictionaries (required)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty
            AdmissionDenied: If the user may not make this request
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        await self.tracker.meter.require_admission(model_id=self.model)

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

        usage = extract_usage(self.model, response)
        if usage is None:
            logger.warning("OpenAI response %s carried no usage", getattr(response, "id", None))
        else:
            self.tracker.report_partial_usage(
                turn_id, usage, model_id=self.model, provider=self.provider,
            )

        for _ in _tool_calls(response):
            self.tracker.record_tool_invocation(turn_id)

        return response


def extract_usage(model: str, response: Any) -> Optional[TokenUsage]:
    """Build a TokenUsage from an OpenAI chat completion response.

    Cost is estimated from the pricing table when the model is known.
    """
    usage = getattr(response, "usage", None)
    if not usage:
        return None

    details = getattr(usage, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", None) if details is not None else None

    token_usage = TokenUsage(
        input_tokens=usage.prompt_tokens or 0,
        output_tokens=usage.completion_tokens or 0,
        cache_reads=cached if isinstance(cached, int) else None,
    )

    if not PRICING_TABLE.supports(model):
        return token_usage

    return TokenUsage(
        input_tokens=token_usage.input_tokens,
        output_tokens=token_usage.output_tokens,
        cache_reads=token_usage.cache_reads,
        total_cost=calculate_cost(model, token_usage),
    )


def _tool_calls(response: Any) -> List[Any]:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return []
    message = getattr(choices[0], "message", None)
    calls = getattr(message, "tool_calls", None)
    return list(calls) if isinstance(calls, (list, tuple)) else []
