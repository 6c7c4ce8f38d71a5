"""
Completion gateway contract.

The external reasoning service is reached through one of these gateways.
Every call reports token usage alongside content so it can be priced.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .pricing import ModelTier
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class GatewayError(RuntimeError):
    """A completion call failed.

    ``usage`` is set when the service metered the call before it failed,
    so the spend can still be logged.
    """

    def __init__(self, message: str, usage: Optional[TokenUsage] = None,
                 model: Optional[str] = None):
        super().__init__(message)
        self.usage = usage
        self.model = model

class GatewayAuthError(GatewayError):
    pass

class GatewayTimeout(GatewayError):
    pass

class GatewayRateLimit(GatewayError):
    pass

class GatewayResponseError(GatewayError):
    """The service answered, but the answer is unusable."""


class Role(Enum):
    """The two sides of a battle."""
    CLOSER = "closer"
    PERSONA = "persona"

    @property
    def opponent(self) -> "Role":
        return Role.PERSONA if self is Role.CLOSER else Role.CLOSER

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class Utterance:
    """One role-tagged line of a transcript."""
    role: Role
    text: str

    def render(self) -> str:
        return f"{self.role.label}: {self.text}"


@dataclass(frozen=True)
class Completion:
    """Content returned by the service plus its metered usage."""
    text: str
    usage: TokenUsage
    model: str


def render_transcript(transcript: Sequence[Utterance]) -> str:
    return "\n\n".join(u.render() for u in transcript)


class CompletionGateway:
    """Base gateway: subclasses implement the two ``_call_*`` hooks."""

    def __init__(self, *, timeout_s: float = 60.0):
        self.timeout_s = timeout_s

    async def _call_turn(
        self, *, role: Role, messages: List[Message], tier: ModelTier
    ) -> Completion:
        raise NotImplementedError

    async def _call_grade(self, *, messages: List[Message], tier: ModelTier) -> Completion:
        raise NotImplementedError

    async def generate_turn(
        self, role: Role, messages: List[Message], tier: ModelTier
    ) -> Completion:
        """Generate the next utterance for ``role`` from the prompt context."""
        return await self._with_timeout(
            self._call_turn(role=role, messages=messages, tier=tier),
            f"{role.value} turn",
        )

    async def grade_transcript(self, messages: List[Message], tier: ModelTier) -> Completion:
        """Ask the service to grade a transcript; the text is the raw JSON verdict."""
        return await self._with_timeout(
            self._call_grade(messages=messages, tier=tier), "referee grade"
        )

    async def _with_timeout(self, call, description: str) -> Completion:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(f"{description} timed out after {self.timeout_s}s") from e
