"""
Data models for storage layer.

Defines the persisted entities: personas, ledger entries and finalized battles.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class EntryType(Enum):
    """Kind of priced call a ledger entry records."""
    TURN = "turn"
    REFEREE = "referee"
    SUMMARY = "summary"  # informational, always zero cost


@dataclass(frozen=True)
class Persona:
    """Adversarial counterparty profile used to seed a battle."""
    id: str
    name: str
    instruction: str
    is_active: bool = True


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable cost record for one completion-service call.

    Append-only entries that form the auditable ledger of spend.
    Once written, these records must never be modified or deleted.
    """
    entry_id: str
    timestamp: datetime
    provider: str
    model: str
    tier: str
    input_tokens: int
    output_tokens: int
    cost: Decimal
    entry_type: EntryType
    tags: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate token counts and cost are non-negative."""
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")
        if self.cost < 0:
            raise ValueError("cost cannot be negative")
        if self.entry_type == EntryType.SUMMARY and self.cost != 0:
            raise ValueError("summary entries must carry zero cost")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class BattleRecord:
    """Finalized battle as written to the store, exactly once."""
    id: str
    persona_id: str
    persona_name: str
    status: str
    transcript: str
    turn_count: int
    input_tokens: int
    output_tokens: int
    cost: Decimal
    started_at: datetime
    ended_at: datetime
    abort_reason: Optional[str] = None
    scores: Optional[Dict[str, float]] = None
    aggregate_score: Optional[int] = None
    rationale: Optional[str] = None
    document_status: Optional[str] = None
    verbal_yes_to_price: Optional[bool] = None
    winning_rebuttal: Optional[str] = None
    error: Optional[str] = None
