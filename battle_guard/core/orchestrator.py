"""
Battle orchestration.

Drives one battle from initialization through strictly alternating turns
(closer first) to completion or abort.

Per-turn order:
1. Use the latest budget state
2. Select the model tier for the role
3. Build the prompt from the full transcript
4. Call the completion gateway
5. Append the utterance
6. Price and log the turn through the ledger
7. Check the per-battle ceiling, then the daily cap
8. Hand the turn to the other role
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .errors import InvalidTransition
from .gateway import CompletionGateway, GatewayError, Message, Role, Utterance, render_transcript
from .guardrails import BudgetGovernor, BudgetState
from .ledger import CostLedger, utc_now
from .pricing import ModelTier
from .token_counter import TokenUsage
from battle_guard.storage.models import EntryType, Persona

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 15

DEFAULT_CLOSER_PROMPT = """You are the Apex Acquisitions Closer. Your goal is to convert distressed property leads into signed contracts at $82,700.00.

CORE MISSION:
- Maximum allowable offer (MAO): $82,700.00
- Defend this price with "Bad Cop" underwriting logic
- Use the 5-step framework: Intro, Discovery, Underwriting, Offer, Close
- Get a verbal "Yes" to the offer price before moving to documents

HUMANITY:
- Use natural disfluencies: "uh", "um", "you know"
- Include sighs and natural pauses
- Sound like a real person, not a robot

MATH DEFENSE:
- Never go above $82,700
- Blame repair estimates and market caps when the seller pushes for more
- Stay firm on the price point"""

KICKOFF_INSTRUCTION = "Start the conversation. Introduce yourself and begin the 5-step process."


class BattlePhase(Enum):
    INITIALIZED = "initialized"
    CLOSER_TURN = "closer_turn"
    PERSONA_TURN = "persona_turn"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AbortReason(Enum):
    BATTLE_CEILING = "battle_ceiling"
    DAILY_CAP = "daily_cap"
    GATEWAY_FAILURE = "gateway_failure"


_TRANSITIONS = {
    BattlePhase.INITIALIZED: {BattlePhase.CLOSER_TURN, BattlePhase.ABORTED},
    BattlePhase.CLOSER_TURN: {
        BattlePhase.PERSONA_TURN, BattlePhase.COMPLETED, BattlePhase.ABORTED
    },
    BattlePhase.PERSONA_TURN: {
        BattlePhase.CLOSER_TURN, BattlePhase.COMPLETED, BattlePhase.ABORTED
    },
    BattlePhase.COMPLETED: set(),
    BattlePhase.ABORTED: set(),
}


@dataclass
class Battle:
    """One in-progress or finished battle. Mutated turn by turn."""
    id: str
    persona: Persona
    started_at: datetime
    phase: BattlePhase = BattlePhase.INITIALIZED
    transcript: List[Utterance] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: Decimal = Decimal("0")
    abort_reason: Optional[AbortReason] = None
    error: Optional[str] = None
    ended_at: Optional[datetime] = None

    @property
    def turn_count(self) -> int:
        return len(self.transcript)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (BattlePhase.COMPLETED, BattlePhase.ABORTED)

    @property
    def transcript_text(self) -> str:
        return render_transcript(self.transcript)

    def transition(self, phase: BattlePhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(
                f"Battle {self.id}: cannot go from {self.phase.value} to {phase.value}"
            )
        self.phase = phase


def load_closer_prompt(path: Optional[str]) -> str:
    """Read the closer's system prompt from ``path``, falling back to the default."""
    if path:
        prompt_path = Path(path)
        if prompt_path.exists():
            return prompt_path.read_text(encoding="utf-8")
        logger.warning("Closer prompt %s not found, using default prompt", path)
    return DEFAULT_CLOSER_PROMPT


def build_turn_context(
    role: Role,
    system_prompt: str,
    transcript: List[Utterance],
) -> List[Message]:
    """Build chat messages for ``role`` from the whole transcript.

    The speaker's own lines become ``assistant`` messages and the
    opponent's become ``user`` messages. The closer's opening turn gets a
    kickoff instruction.
    """
    messages: List[Message] = [{"role": "system", "content": system_prompt}]
    if role is Role.CLOSER and not transcript:
        messages.append({"role": "user", "content": KICKOFF_INSTRUCTION})
    for utterance in transcript:
        messages.append({
            "role": "assistant" if utterance.role is role else "user",
            "content": utterance.text,
        })
    return messages


class BattleOrchestrator:
    """Runs a single battle against a persona."""

    def __init__(
        self,
        gateway: CompletionGateway,
        ledger: CostLedger,
        governor: BudgetGovernor,
        closer_prompt: str = DEFAULT_CLOSER_PROMPT,
        max_turns: int = DEFAULT_MAX_TURNS,
        alerts=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.gateway = gateway
        self.ledger = ledger
        self.governor = governor
        self.closer_prompt = closer_prompt
        self.max_turns = max_turns
        self.alerts = alerts
        self.clock = clock

    async def run(self, persona: Persona, battle_id: Optional[str] = None) -> Battle:
        """Run turns until the turn cap or an abort.

        Returns:
            The battle in COMPLETED or ABORTED phase

        Raises:
            LedgerWriteError: If a turn's cost could not be recorded
        """
        battle = Battle(
            id=battle_id or uuid.uuid4().hex,
            persona=persona,
            started_at=self.clock(),
        )
        logger.info("Starting battle %s against persona %s", battle.id, persona.name)

        state = await self.governor.current_state()
        if state.is_exceeded:
            return self._abort(battle, AbortReason.DAILY_CAP, "Daily budget cap reached before first turn")

        role = Role.CLOSER
        while battle.turn_count < self.max_turns:
            phase, tier, system_prompt = self._seat(role, state, persona)
            battle.transition(phase)
            turn_index = battle.turn_count + 1
            messages = build_turn_context(role, system_prompt, battle.transcript)

            try:
                completion = await self.gateway.generate_turn(role, messages, tier)
            except GatewayError as e:
                # A metered failure was still paid for
                if e.usage is not None:
                    await self._log_turn(battle, role, tier, turn_index, e.usage, e.model)
                logger.error("Gateway failure on turn %d of battle %s: %s", turn_index, battle.id, e)
                return self._abort(battle, AbortReason.GATEWAY_FAILURE, str(e))

            battle.transcript.append(Utterance(role=role, text=completion.text))
            turn_cost = await self._log_turn(
                battle, role, tier, turn_index, completion.usage, completion.model
            )
            logger.info(
                "Turn %d complete: %s, %d tokens, $%s (battle total $%s)",
                turn_index, role.label, completion.usage.total_tokens, turn_cost, battle.cost
            )

            if self.governor.exceeds_battle_ceiling(battle.cost):
                message = (
                    f"Kill-switch activated: battle {battle.id} cost ${battle.cost:.2f} "
                    f"exceeds per-battle ceiling ${self.governor.config.per_battle_ceiling:.2f}"
                )
                if self.alerts is not None:
                    self.alerts.dispatch(message)
                return self._abort(battle, AbortReason.BATTLE_CEILING, message)

            state = await self.governor.current_state()
            if state.is_exceeded:
                return self._abort(
                    battle, AbortReason.DAILY_CAP,
                    f"Daily budget cap reached after turn {turn_index}"
                )

            role = role.opponent

        battle.transition(BattlePhase.COMPLETED)
        battle.ended_at = self.clock()
        logger.info(
            "Battle %s completed after %d turns, $%s", battle.id, battle.turn_count, battle.cost
        )
        return battle

    def _seat(
        self, role: Role, state: BudgetState, persona: Persona
    ) -> Tuple[BattlePhase, ModelTier, str]:
        """Phase, tier and system prompt for whoever speaks next."""
        if role is Role.CLOSER:
            return BattlePhase.CLOSER_TURN, self.governor.closer_tier(state), self.closer_prompt
        return BattlePhase.PERSONA_TURN, self.governor.persona_tier(state), persona.instruction

    async def _log_turn(
        self,
        battle: Battle,
        role: Role,
        tier: ModelTier,
        turn_index: int,
        usage: TokenUsage,
        model: Optional[str],
    ) -> Decimal:
        entry = await self.ledger.record(
            tier,
            usage,
            EntryType.TURN,
            tags={
                "battle_id": battle.id,
                "persona_id": battle.persona.id,
                "turn": turn_index,
                "role": role.value,
            },
            model=model,
        )
        battle.usage = battle.usage + usage
        battle.cost += entry.cost
        return entry.cost

    def _abort(self, battle: Battle, reason: AbortReason, message: str) -> Battle:
        battle.transition(BattlePhase.ABORTED)
        battle.abort_reason = reason
        battle.error = message
        battle.ended_at = self.clock()
        if reason is AbortReason.GATEWAY_FAILURE:
            logger.warning("Battle %s aborted (%s): %s", battle.id, reason.value, message)
        else:
            logger.error("Battle %s aborted (%s): %s", battle.id, reason.value, message)
        return battle
