"""
Tests for batch scheduling: stop conditions, pacing, concurrency and
per-battle error handling.
"""

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from battle_guard.config.loader import ArenaConfig, BatchConfig, BattleConfig, BudgetConfig
from battle_guard.core.arena import build_arena
from battle_guard.core.errors import LedgerWriteError
from battle_guard.core.gateway import GatewayRateLimit
from battle_guard.core.orchestrator import AbortReason
from battle_guard.core.pricing import ModelTier
from battle_guard.core.runner import RunStatus
from battle_guard.core.scheduler import BatchOptions, BatchSummary, StopReason
from battle_guard.core.token_counter import TokenUsage
from battle_guard.storage.repository import SQLiteStore, fetch_battles

from conftest import ScriptedGateway, fixed_clock

# 160k premium input tokens cost exactly $0.40
FORTY_CENTS = TokenUsage(input_tokens=160_000, output_tokens=0)

SEQUENTIAL = BatchOptions(batch_size=10, max_concurrent=1, delay_between_battles=0)


def make_arena(store, gateway, budget=None, max_turns=2):
    config = ArenaConfig(
        budget=budget or BudgetConfig(per_run_ceiling=None),
        battle=BattleConfig(max_turns=max_turns),
    )
    return build_arena(config, gateway=gateway, store=store, clock=fixed_clock)


class TestReferenceScenarios:
    """Test the budget scenarios end to end."""

    @pytest.mark.asyncio
    async def test_referee_tier_degrades_after_throttle_threshold(self, store, seed_personas):
        """$15 cap, $3 threshold, $0.40 battles: #1-#7 premium, #8-#10 economy."""
        seed_personas(10)
        gateway = ScriptedGateway(closer_usage=FORTY_CENTS)
        arena = make_arena(store, gateway)

        summary = await arena.run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.COMPLETED
        assert summary.battles_completed == 10
        assert summary.total_cost == Decimal("4.00")
        assert gateway.referee_tiers == [ModelTier.PREMIUM] * 7 + [ModelTier.ECONOMY] * 3
        assert [r.score.tier for r in summary.results] == gateway.referee_tiers
        assert not summary.kill_switch_fired

    @pytest.mark.asyncio
    async def test_no_battle_starts_once_cap_is_reached(self, store, seed_personas, seed_spend):
        seed_personas(3)
        seed_spend("15.00")
        gateway = ScriptedGateway()
        arena = make_arena(store, gateway)

        summary = await arena.run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.DAILY_CAP
        assert summary.battles_started == 0
        assert summary.results == []
        assert gateway.turn_calls == []
        assert summary.kill_switch_fired

    @pytest.mark.asyncio
    async def test_cap_crossed_mid_batch_stops_new_battles(self, store, db_path, seed_personas):
        seed_personas(5)
        gateway = ScriptedGateway(closer_usage=FORTY_CENTS)
        arena = make_arena(store, gateway, budget=BudgetConfig(
            daily_cap=Decimal("1.00"), per_run_ceiling=None
        ))

        summary = await arena.run_batch(SEQUENTIAL)

        # $0.40, $0.80, then the third closer turn crosses $1.00
        assert summary.stop_reason == StopReason.DAILY_CAP
        assert summary.battles_started == 3
        assert summary.battles_completed == 2
        assert summary.results[-1].abort_reason == AbortReason.DAILY_CAP
        assert [e.kind for e in summary.errors] == ["daily_cap"]
        assert len(fetch_battles(db_path=db_path)) == 3
        assert summary.total_cost == Decimal("1.20")


class TestStopConditions:
    """Test run ceiling and operator kill switch."""

    @pytest.mark.asyncio
    async def test_run_ceiling(self, store, seed_personas):
        seed_personas(5)
        gateway = ScriptedGateway(closer_usage=FORTY_CENTS)
        arena = make_arena(store, gateway, budget=BudgetConfig(per_run_ceiling=Decimal("1.00")))

        summary = await arena.run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.RUN_CEILING
        assert summary.battles_started == 3
        assert summary.total_cost == Decimal("1.20")
        assert summary.kill_switch_fired

    @pytest.mark.asyncio
    async def test_stop_during_start_check_blocks_the_start(self, store, seed_personas):
        """A battle that stops the batch while the next start is being checked wins."""
        seed_personas(3)
        arena = make_arena(
            store,
            ScriptedGateway(closer_usage=FORTY_CENTS),
            budget=BudgetConfig(per_run_ceiling=Decimal("0.40")),
        )
        first_battle_done = asyncio.Event()
        run_persona = arena.runner.run_persona

        async def run_and_signal(persona):
            result = await run_persona(persona)
            first_battle_done.set()
            return result

        arena.runner.run_persona = run_and_signal

        is_active = arena.kill_switch.is_active
        calls = []

        async def slow_second_check():
            calls.append(1)
            if len(calls) == 2:
                await first_battle_done.wait()
                await asyncio.sleep(0)
            return await is_active()

        arena.kill_switch.is_active = slow_second_check

        summary = await arena.run_batch(BatchOptions(max_concurrent=2, delay_between_battles=0))

        assert summary.stop_reason == StopReason.RUN_CEILING
        assert summary.battles_started == 1
        assert summary.total_cost == Decimal("0.40")
        assert [r.persona_id for r in summary.results] == ["p1"]

    @pytest.mark.asyncio
    async def test_kill_switch_before_start(self, store, seed_personas):
        seed_personas(3)
        gateway = ScriptedGateway()
        arena = make_arena(store, gateway)
        await arena.kill_switch.activate()

        summary = await arena.run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.KILL_SWITCH
        assert summary.battles_started == 0

    @pytest.mark.asyncio
    async def test_kill_switch_mid_batch(self, store, seed_personas):
        """An operator signal stops new starts after the current battle."""
        seed_personas(5)
        arena = make_arena(store, ScriptedGateway())
        run_persona = arena.runner.run_persona

        async def run_then_flip(persona):
            result = await run_persona(persona)
            if persona.id == "p2":
                await arena.kill_switch.activate()
            return result

        arena.runner.run_persona = run_then_flip

        summary = await arena.run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.KILL_SWITCH
        assert [r.persona_id for r in summary.results] == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_stop_sends_summary_alert(self, store, seed_personas, seed_spend):
        seed_personas(1)
        seed_spend("15.00")
        arena = make_arena(store, ScriptedGateway())
        arena.scheduler.alerts = MagicMock()

        await arena.run_batch(SEQUENTIAL)

        arena.scheduler.alerts.dispatch.assert_called_once()
        assert "daily_cap" in arena.scheduler.alerts.dispatch.call_args.args[0]


class TestScheduling:
    """Test persona resolution, concurrency and retries."""

    @pytest.mark.asyncio
    async def test_no_personas(self, store):
        summary = await make_arena(store, ScriptedGateway()).run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.NO_PERSONAS
        assert summary.results == []

    @pytest.mark.asyncio
    async def test_batch_size_is_the_quota(self, store, seed_personas):
        seed_personas(5)
        arena = make_arena(store, ScriptedGateway())

        summary = await arena.run_batch(BatchOptions(batch_size=3, delay_between_battles=0))

        assert summary.battles_started == 3
        assert sorted(r.persona_id for r in summary.results) == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_explicit_persona_ids(self, store, seed_personas):
        seed_personas(5, inactive=("p4",))
        arena = make_arena(store, ScriptedGateway())

        summary = await arena.run_batch(BatchOptions(
            persona_ids=("p2", "p4", "p5"), delay_between_battles=0
        ))

        assert sorted(r.persona_id for r in summary.results) == ["p2", "p5"]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, seed_personas):
        seed_personas(6)
        gateway = ScriptedGateway(latency=0.05)
        arena = make_arena(store, gateway)

        summary = await arena.run_batch(BatchOptions(
            batch_size=6, max_concurrent=2, delay_between_battles=0
        ))

        assert summary.battles_completed == 6
        assert gateway.max_active_calls == 2

    @pytest.mark.asyncio
    async def test_gateway_abort_is_recorded_and_batch_continues(self, store, seed_personas):
        seed_personas(2)
        gateway = ScriptedGateway(turns=[GatewayRateLimit("slow down")])
        arena = make_arena(store, gateway)

        summary = await arena.run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.COMPLETED
        assert [r.status for r in summary.results] == [RunStatus.ABORTED, RunStatus.COMPLETED]
        assert summary.errors[0].kind == "gateway_failure"
        assert summary.errors[0].persona_id == "p1"

    @pytest.mark.asyncio
    async def test_gateway_abort_is_retried(self, store, seed_personas):
        seed_personas(2)
        gateway = ScriptedGateway(turns=[GatewayRateLimit("slow down")])
        arena = make_arena(store, gateway)

        summary = await arena.run_batch(BatchOptions(
            max_concurrent=1, delay_between_battles=0, max_battle_retries=1
        ))

        assert summary.battles_started == 3
        assert [r.persona_id for r in summary.results] == ["p1", "p2", "p1"]
        assert summary.battles_completed == 2

    @pytest.mark.asyncio
    async def test_grading_failure_is_recorded(self, store, db_path, seed_personas):
        seed_personas(2)
        gateway = ScriptedGateway(verdicts=["{broken"])
        arena = make_arena(store, gateway)

        summary = await arena.run_batch(SEQUENTIAL)

        assert summary.stop_reason == StopReason.COMPLETED
        assert [r.status for r in summary.results] == [RunStatus.FAILED, RunStatus.COMPLETED]
        assert summary.errors[0].kind == "grading"
        assert summary.errors[0].battle_id == summary.results[0].battle_id
        assert summary.average_score == 70

    @pytest.mark.asyncio
    async def test_ledger_failure_propagates(self, db_path, seed_personas):
        """Unmetered spend is fatal to the run."""
        seed_personas(3)

        class ReadOnlyLedgerStore(SQLiteStore):
            async def append_ledger_entry(self, entry):
                raise OSError("attempt to write a readonly database")

        gateway = ScriptedGateway()
        arena = make_arena(ReadOnlyLedgerStore(db_path), gateway)
        arena.runner.ledger.retry_delay = 0

        with pytest.raises(LedgerWriteError):
            await arena.run_batch(BatchOptions(max_concurrent=1, delay_between_battles=0))

        # the first failure stops new starts
        assert len(gateway.turn_calls) == 1


class TestBatchSummary:
    """Test summary properties."""

    def test_empty_summary(self):
        summary = BatchSummary()
        assert summary.battles_completed == 0
        assert summary.average_score is None
        assert not summary.kill_switch_fired

    def test_battle_ceiling_hits_count_as_kill_switch(self):
        summary = BatchSummary(stop_reason=StopReason.COMPLETED, battle_ceiling_hits=1)
        assert summary.kill_switch_fired


class TestBatchOptions:
    """Test option validation."""

    def test_from_config(self):
        options = BatchOptions.from_config(BatchConfig(batch_size=4), ["p1", "p2"])
        assert options.persona_ids == ("p1", "p2")
        assert options.batch_size == 4
        assert options.max_concurrent == 3

    def test_invalid_options(self):
        with pytest.raises(ValueError, match="max_concurrent must be >= 1"):
            BatchOptions(max_concurrent=0)
        with pytest.raises(ValueError, match="delay_between_battles must be >= 0"):
            BatchOptions(delay_between_battles=-1)
