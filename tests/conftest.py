"""
Shared fixtures: a scripted completion gateway, temporary SQLite stores and
a fixed clock.
"""

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from battle_guard.core.gateway import Completion, CompletionGateway, Role
from battle_guard.core.pricing import model_for_tier
from battle_guard.core.token_counter import TokenUsage
from battle_guard.storage.models import EntryType, LedgerEntry, Persona
from battle_guard.storage.repository import (
    SQLiteStore,
    initialize_schema,
    insert_ledger_entry,
    insert_persona,
)

FIXED_NOW = datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)

DEFAULT_VERDICT = {
    "math_defense": 8,
    "humanity": 7,
    "success": 6,
    "feedback": "Held the $82,700 offer under pressure.",
    "verbalYesToPrice": True,
    "documentStatus": None,
    "winningRebuttal": "The roof alone is a $15k job.",
}


def fixed_clock() -> datetime:
    return FIXED_NOW


class ScriptedGateway(CompletionGateway):
    """Completion gateway stub.

    ``turns`` and ``verdicts`` are consumed in call order; an Exception item
    is raised instead of returned. Once a script runs out, turns return a
    numbered line with the role's configured usage and grades return
    ``DEFAULT_VERDICT``.
    """

    def __init__(
        self,
        turns=None,
        verdicts=None,
        closer_usage=None,
        persona_usage=None,
        referee_usage=None,
        latency=0.0,
        timeout_s=5.0,
    ):
        super().__init__(timeout_s=timeout_s)
        self.turns = list(turns or [])
        self.verdicts = list(verdicts or [])
        self.usage = {
            Role.CLOSER: closer_usage or TokenUsage(),
            Role.PERSONA: persona_usage or TokenUsage(),
        }
        self.referee_usage = referee_usage or TokenUsage()
        self.latency = latency
        self.turn_calls = []
        self.grade_calls = []
        self.active_calls = 0
        self.max_active_calls = 0

    async def _call_turn(self, *, role, messages, tier):
        self.turn_calls.append((role, tier, messages))
        await self._simulate_latency()
        if self.turns:
            item = self.turns.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return Completion(
            text=f"{role.value} line {len(self.turn_calls)}",
            usage=self.usage[role],
            model=model_for_tier(tier),
        )

    async def _call_grade(self, *, messages, tier):
        self.grade_calls.append((tier, messages))
        await self._simulate_latency()
        text = json.dumps(DEFAULT_VERDICT)
        if self.verdicts:
            item = self.verdicts.pop(0)
            if isinstance(item, Exception):
                raise item
            text = item
        return Completion(text=text, usage=self.referee_usage, model=model_for_tier(tier))

    async def _simulate_latency(self):
        self.active_calls += 1
        self.max_active_calls = max(self.max_active_calls, self.active_calls)
        try:
            await asyncio.sleep(self.latency)
        finally:
            self.active_calls -= 1

    @property
    def referee_tiers(self):
        return [tier for tier, _ in self.grade_calls]


@pytest.fixture
def db_path(tmp_path):
    """Path to an initialized temporary database."""
    path = str(tmp_path / "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def store(db_path):
    return SQLiteStore(db_path)


@pytest.fixture
def seed_personas(db_path):
    """Insert ``count`` active personas p1..pN in creation order."""
    def _seed(count, inactive=()):
        personas = []
        for i in range(1, count + 1):
            persona = Persona(
                id=f"p{i}",
                name=f"Seller {i}",
                instruction=f"You are stubborn seller number {i}. Hold out for more money.",
                is_active=f"p{i}" not in inactive,
            )
            insert_persona(persona, db_path, created_at=FIXED_NOW + timedelta(seconds=i))
            personas.append(persona)
        return personas
    return _seed


@pytest.fixture
def seed_spend(db_path):
    """Append a TURN ledger entry costing ``amount`` dollars."""
    def _seed(amount, timestamp=FIXED_NOW):
        insert_ledger_entry(LedgerEntry(
            entry_id=uuid.uuid4().hex,
            timestamp=timestamp,
            provider="openai",
            model="gpt-4o",
            tier="premium",
            input_tokens=0,
            output_tokens=0,
            cost=Decimal(amount),
            entry_type=EntryType.TURN,
            tags={"seeded": True},
        ), db_path)
    return _seed
