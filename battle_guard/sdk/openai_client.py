"""
OpenAI-backed completion gateway.

Maps model tiers to OpenAI models and reports usage for every call.
Failures are loud and typed so the orchestrator can abort the battle.
"""

from typing import Any, List, Optional

import openai
from openai import AsyncOpenAI

from ..core.gateway import (
    Completion,
    CompletionGateway,
    GatewayAuthError,
    GatewayError,
    GatewayRateLimit,
    GatewayResponseError,
    GatewayTimeout,
    Message,
    Role,
)
from ..core.pricing import ModelTier, model_for_tier
from ..core.token_counter import TokenUsage

REFEREE_TEMPERATURE = 0.3


class OpenAIGateway(CompletionGateway):
    """Chat-completions gateway for turns and grading."""

    def __init__(
        self,
        temperature: float = 0.7,
        timeout_s: float = 60.0,
        client: Optional[Any] = None,
    ):
        """Initialize the OpenAI gateway.

        Args:
            temperature: Sampling temperature for battle turns
            timeout_s: Per-call timeout in seconds
            client: Optional preconfigured AsyncOpenAI client; by default one is
                created from the OPENAI_API_KEY environment variable
        """
        super().__init__(timeout_s=timeout_s)
        self.temperature = temperature
        self.client = client or AsyncOpenAI()

    async def _call_turn(
        self, *, role: Role, messages: List[Message], tier: ModelTier
    ) -> Completion:
        return await self._complete(
            model=model_for_tier(tier),
            messages=messages,
            temperature=self.temperature,
        )

    async def _call_grade(self, *, messages: List[Message], tier: ModelTier) -> Completion:
        return await self._complete(
            model=model_for_tier(tier),
            messages=messages,
            temperature=REFEREE_TEMPERATURE,
            response_format={"type": "json_object"},
        )

    async def _complete(self, *, model: str, messages: List[Message], **kwargs: Any) -> Completion:
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                **kwargs
            )
        except openai.RateLimitError as e:
            raise GatewayRateLimit(str(e)) from e
        except openai.AuthenticationError as e:
            raise GatewayAuthError(str(e)) from e
        except openai.APITimeoutError as e:
            raise GatewayTimeout(str(e)) from e
        except openai.OpenAIError as e:
            raise GatewayError(str(e)) from e

        # Unmetered responses cannot be priced
        usage = response.usage
        if not usage:
            raise GatewayResponseError("OpenAI response missing usage information")

        token_usage = TokenUsage(
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise GatewayResponseError(
                "OpenAI response has empty content", usage=token_usage, model=model
            )

        return Completion(text=content, usage=token_usage, model=model)
