"""
Single-battle lifecycle: orchestrate, grade, persist once, audit.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from .errors import GradingError, PersistenceError, PersonaNotFoundError
from .gateway import GatewayError, Utterance, render_transcript
from .guardrails import BudgetGovernor
from .ledger import CostLedger
from .orchestrator import AbortReason, Battle, BattleOrchestrator, BattlePhase
from .referee import Referee, RefereeScore
from .token_counter import TokenUsage
from battle_guard.storage.models import BattleRecord, Persona

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    COMPLETED = "completed"  # graded
    ABORTED = "aborted"
    FAILED = "failed"  # turns finished, grading failed


@dataclass(frozen=True)
class BattleRunResult:
    """Outcome of one battle, handed back to the caller."""
    battle_id: str
    persona_id: str
    status: RunStatus
    transcript: Tuple[Utterance, ...]
    usage: TokenUsage
    cost: Decimal
    score: Optional[RefereeScore] = None
    abort_reason: Optional[AbortReason] = None
    error: Optional[str] = None

    @property
    def transcript_text(self) -> str:
        return render_transcript(self.transcript)

    @property
    def turn_count(self) -> int:
        return len(self.transcript)


# Optional auxiliary quality audit, run on high-scoring battles when not throttled
QualityAuditor = Callable[[BattleRunResult], Awaitable[None]]


class BattleRunner:
    """Runs one battle end to end and persists it exactly once."""

    def __init__(
        self,
        store,
        orchestrator: BattleOrchestrator,
        referee: Referee,
        governor: BudgetGovernor,
        ledger: CostLedger,
        auditor: Optional[QualityAuditor] = None,
        audit_min_score: int = 70,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.referee = referee
        self.governor = governor
        self.ledger = ledger
        self.auditor = auditor
        self.audit_min_score = audit_min_score

    async def run_battle(self, persona_id: str) -> BattleRunResult:
        """Run a battle against an active persona by id.

        Raises:
            PersonaNotFoundError: If the persona is missing or inactive
            GradingError: If the referee verdict was unusable
            LedgerWriteError: If spend could not be recorded
        """
        persona = await self.store.get_persona(persona_id)
        if persona is None or not persona.is_active:
            raise PersonaNotFoundError(f"Persona not found: {persona_id}")
        return await self.run_persona(persona)

    async def run_persona(self, persona: Persona) -> BattleRunResult:
        battle = await self.orchestrator.run(persona)

        if battle.phase is BattlePhase.ABORTED:
            result = self._result(battle, RunStatus.ABORTED)
            if self._never_started(battle):
                logger.info("Battle %s refused by the daily cap, nothing persisted", battle.id)
                return result
            await self._finalize(battle, result)
            return result

        tags = {"battle_id": battle.id, "persona_id": persona.id}
        try:
            score = await self.referee.grade(battle.transcript, tags=tags)
        except GradingError as e:
            battle.cost += e.cost
            battle.error = str(e)
            logger.error("Grading failed for battle %s: %s", battle.id, e)
            e.result = self._result(battle, RunStatus.FAILED)
            await self._finalize(battle, e.result)
            raise

        battle.cost += score.cost
        result = self._result(battle, RunStatus.COMPLETED, score)
        await self._finalize(battle, result)
        logger.info(
            "Battle %s graded %d/100 (%s tier), total cost $%s",
            battle.id, score.aggregate_score, score.tier.value, battle.cost
        )
        await self._maybe_audit(result)
        return result

    def _result(
        self, battle: Battle, status: RunStatus, score: Optional[RefereeScore] = None
    ) -> BattleRunResult:
        return BattleRunResult(
            battle_id=battle.id,
            persona_id=battle.persona.id,
            status=status,
            transcript=tuple(battle.transcript),
            usage=battle.usage,
            cost=battle.cost,
            score=score,
            abort_reason=battle.abort_reason,
            error=battle.error,
        )

    @staticmethod
    def _never_started(battle: Battle) -> bool:
        """Refused at the cap before its first turn, with no spend."""
        return (
            battle.abort_reason is AbortReason.DAILY_CAP
            and battle.turn_count == 0
            and battle.cost == 0
        )

    async def _finalize(self, battle: Battle, result: BattleRunResult) -> None:
        """Persist the battle record, then the zero-cost ledger summary."""
        score = result.score
        record = BattleRecord(
            id=battle.id,
            persona_id=battle.persona.id,
            persona_name=battle.persona.name,
            status=result.status.value,
            transcript=battle.transcript_text,
            turn_count=battle.turn_count,
            input_tokens=battle.usage.input_tokens,
            output_tokens=battle.usage.output_tokens,
            cost=battle.cost,
            started_at=battle.started_at,
            ended_at=battle.ended_at or self.orchestrator.clock(),
            abort_reason=battle.abort_reason.value if battle.abort_reason else None,
            scores=score.as_dict() if score else None,
            aggregate_score=score.aggregate_score if score else None,
            rationale=score.rationale if score else None,
            document_status=score.document_status if score else None,
            verbal_yes_to_price=score.verbal_yes_to_price if score else None,
            winning_rebuttal=score.winning_rebuttal if score else None,
            error=battle.error,
        )
        try:
            await self.store.save_battle(record)
        except Exception as e:
            error = PersistenceError(f"Failed to save battle {battle.id}: {e}")
            error.result = result
            raise error from e

        await self.ledger.record_summary(
            battle.usage,
            battle.cost,
            tags={
                "battle_id": battle.id,
                "persona_id": battle.persona.id,
                "turns": battle.turn_count,
                "status": result.status.value,
                "score": score.aggregate_score if score else None,
            },
        )

    async def _maybe_audit(self, result: BattleRunResult) -> None:
        if self.auditor is None or result.score is None:
            return
        if result.score.aggregate_score <= self.audit_min_score:
            return
        state = await self.governor.current_state()
        if not self.governor.audit_enabled(state):
            logger.info("Quality audit disabled due to budget throttling (battle %s)", result.battle_id)
            return
        try:
            await self.auditor(result)
        except GatewayError as e:
            logger.warning("Error in quality audit for battle %s: %s", result.battle_id, e)
