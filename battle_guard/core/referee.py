"""
Referee grading of finished battles.

Scores a transcript against a fixed, weighted rubric with one completion
call. The call is priced and logged before its answer is parsed, and a
malformed answer is a hard failure: no fabricated score is ever returned.
"""

import json
import logging
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import GradingError
from .gateway import CompletionGateway, GatewayError, Message, Utterance, render_transcript
from .guardrails import BudgetGovernor
from .ledger import CostLedger
from .pricing import ModelTier
from battle_guard.config.loader import DEFAULT_CRITERIA, CriterionConfig
from battle_guard.storage.models import EntryType

logger = logging.getLogger(__name__)

MIN_CRITERION_SCORE = 0
MAX_CRITERION_SCORE = 10
DOCUMENT_STATUSES = ("completed", "delivered")


@dataclass(frozen=True)
class CriterionScore:
    name: str
    score: float
    weight: Decimal


@dataclass(frozen=True)
class RefereeScore:
    """Graded outcome of one battle."""
    criterion_scores: Tuple[CriterionScore, ...]
    aggregate_score: int  # 0-100
    rationale: str
    tier: ModelTier
    verbal_yes_to_price: bool = False
    document_status: Optional[str] = None
    winning_rebuttal: Optional[str] = None
    cost: Decimal = Decimal("0")

    def as_dict(self) -> Dict[str, float]:
        return {c.name: c.score for c in self.criterion_scores}


class Rubric:
    """Weighted criteria; weights come from configuration."""

    def __init__(self, criteria: Sequence[CriterionConfig] = DEFAULT_CRITERIA):
        if not criteria:
            raise ValueError("rubric needs at least one criterion")
        total = sum((c.weight for c in criteria), Decimal("0"))
        if total != Decimal("1"):
            raise ValueError(f"criterion weights must sum to 1 (got {total})")
        self.criteria = tuple(criteria)

    def aggregate(self, scores: Dict[str, float]) -> int:
        """Weighted 0-100 aggregate, rounded half-up so equal inputs give equal buckets."""
        weighted = sum(
            (Decimal(str(scores[c.name])) * c.weight for c in self.criteria),
            Decimal("0"),
        )
        return int((weighted * 10).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def build_prompt(self, transcript_text: str) -> List[Message]:
        lines = []
        for i, criterion in enumerate(self.criteria, start=1):
            lines.append(
                f"{i}. {criterion.name.upper()} ({MIN_CRITERION_SCORE}-{MAX_CRITERION_SCORE} points):\n"
                f"   {criterion.description}"
            )
        fields = ",\n".join(
            f'  "{c.name}": <{MIN_CRITERION_SCORE}-{MAX_CRITERION_SCORE}>' for c in self.criteria
        )
        prompt = (
            "You are an Elite Sales Referee grading an autonomous battle between a "
            "Closer and a Seller Persona.\n\n"
            f"TRANSCRIPT:\n{transcript_text}\n\n"
            "GRADING CRITERIA:\n\n"
            + "\n\n".join(lines)
            + "\n\nReturn a JSON object with:\n{\n"
            + fields
            + ',\n  "feedback": "<detailed feedback>",\n'
            '  "verbalYesToPrice": <true/false>,\n'
            '  "documentStatus": <"completed" | "delivered" | null>,\n'
            '  "winningRebuttal": "<the rebuttal that won the battle, if any>"\n}'
        )
        return [
            {"role": "system", "content": "You are an Elite Sales Referee. Return valid JSON only."},
            {"role": "user", "content": prompt},
        ]


class Referee:
    """Grades transcripts at a tier chosen by the budget governor."""

    def __init__(
        self,
        gateway: CompletionGateway,
        ledger: CostLedger,
        governor: BudgetGovernor,
        rubric: Optional[Rubric] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.governor = governor
        self.rubric = rubric or Rubric()

    async def grade(
        self,
        transcript: Sequence[Utterance],
        tier_hint: Optional[ModelTier] = None,
        tags: Optional[Dict[str, Any]] = None,
    ) -> RefereeScore:
        """Grade a transcript.

        Args:
            transcript: Finished battle transcript
            tier_hint: Tier to use; when omitted the governor decides
            tags: Extra ledger context (battle id, persona id)

        Returns:
            The parsed and validated score

        Raises:
            GradingError: If the gateway fails or the verdict is malformed
            LedgerWriteError: If the grading cost could not be recorded
        """
        tier = tier_hint
        if tier is None:
            tier = self.governor.referee_tier(await self.governor.current_state())
        logger.info("Grading transcript with %s tier", tier.value)

        ledger_tags = dict(tags or {})
        ledger_tags["transcript_length"] = sum(len(u.text) for u in transcript)
        messages = self.rubric.build_prompt(render_transcript(transcript))

        try:
            completion = await self.gateway.grade_transcript(messages, tier)
        except GatewayError as e:
            cost = Decimal("0")
            if e.usage is not None:
                entry = await self.ledger.record(
                    tier, e.usage, EntryType.REFEREE, ledger_tags, e.model
                )
                cost = entry.cost
            raise GradingError(f"Referee call failed: {e}", cost=cost) from e

        # Spend is logged before the verdict is trusted
        entry = await self.ledger.record(
            tier, completion.usage, EntryType.REFEREE, ledger_tags, completion.model
        )
        try:
            score = self.parse(completion.text, tier)
        except GradingError as e:
            e.cost = entry.cost
            raise
        return replace(score, cost=entry.cost)

    def parse(self, text: str, tier: ModelTier) -> RefereeScore:
        """Validate a raw JSON verdict into a RefereeScore."""
        try:
            payload = json.loads(text)
        except (TypeError, json.JSONDecodeError) as e:
            raise GradingError(f"Referee returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise GradingError("Referee verdict must be a JSON object")

        scores: Dict[str, float] = {}
        criterion_scores = []
        for criterion in self.rubric.criteria:
            if criterion.name not in payload:
                raise GradingError(f"Referee verdict missing criterion '{criterion.name}'")
            value = payload[criterion.name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise GradingError(f"Criterion '{criterion.name}' score is not a number: {value!r}")
            if not MIN_CRITERION_SCORE <= value <= MAX_CRITERION_SCORE:
                raise GradingError(
                    f"Criterion '{criterion.name}' score {value} outside "
                    f"{MIN_CRITERION_SCORE}-{MAX_CRITERION_SCORE}"
                )
            scores[criterion.name] = value
            criterion_scores.append(CriterionScore(criterion.name, value, criterion.weight))

        rationale = payload.get("feedback", "")
        if not isinstance(rationale, str):
            raise GradingError("Referee feedback must be a string")

        document_status = payload.get("documentStatus")
        if document_status not in DOCUMENT_STATUSES:
            document_status = None

        winning_rebuttal = payload.get("winningRebuttal")
        if not isinstance(winning_rebuttal, str) or not winning_rebuttal:
            winning_rebuttal = None

        return RefereeScore(
            criterion_scores=tuple(criterion_scores),
            aggregate_score=self.rubric.aggregate(scores),
            rationale=rationale,
            tier=tier,
            verbal_yes_to_price=payload.get("verbalYesToPrice") is True,
            document_status=document_status,
            winning_rebuttal=winning_rebuttal,
        )
