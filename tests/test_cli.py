"""
Tests for the CLI interface.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from battle_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from battle_guard.core.errors import GradingError, LedgerWriteError, PersonaNotFoundError
from battle_guard.core.gateway import Role, Utterance
from battle_guard.core.orchestrator import AbortReason
from battle_guard.core.pricing import ModelTier
from battle_guard.core.referee import CriterionScore, RefereeScore
from battle_guard.core.runner import BattleRunResult, RunStatus
from battle_guard.core.scheduler import BattleError, BatchOptions, BatchSummary, StopReason
from battle_guard.core.token_counter import TokenUsage

runner = CliRunner()


@pytest.fixture
def config_path(tmp_path):
    """Config file pointing at a temporary database."""
    path = tmp_path / "arena.yaml"
    path.write_text(yaml.dump({
        "budget": {"daily_cap": 15.0},
        "batch": {"delay_between_battles": 0},
        "storage": {"db_path": str(tmp_path / "arena.db")},
    }), encoding="utf-8")
    return str(path)


@pytest.fixture
def mock_arena():
    """Patch the composition root with a mock arena."""
    with patch('battle_guard.cli.main.build_arena') as mock_build:
        arena = MagicMock()
        arena.run_battle = AsyncMock()
        arena.run_batch = AsyncMock()
        mock_build.return_value = arena
        yield arena


def make_result(status=RunStatus.COMPLETED, abort_reason=None, error=None):
    score = None
    if status is RunStatus.COMPLETED:
        score = RefereeScore(
            criterion_scores=(
                CriterionScore("math_defense", 8, Decimal("0.3333")),
                CriterionScore("humanity", 7, Decimal("0.3333")),
                CriterionScore("success", 6, Decimal("0.3334")),
            ),
            aggregate_score=70,
            rationale="Held the price.",
            tier=ModelTier.PREMIUM,
        )
    return BattleRunResult(
        battle_id="b-123",
        persona_id="p1",
        status=status,
        transcript=(Utterance(Role.CLOSER, "Hi"), Utterance(Role.PERSONA, "No")),
        usage=TokenUsage(1200, 300),
        cost=Decimal("1234.5"),
        score=score,
        abort_reason=abort_reason,
        error=error,
    )


class TestSetupCommands:
    """Test init, status, personas and kill-switch against a real database."""

    def test_init(self, config_path, tmp_path):
        result = runner.invoke(app, ["init", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert (tmp_path / "arena.db").exists()

    def test_status_shows_budget(self, config_path):
        result = runner.invoke(app, ["status", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "NORMAL" in result.output
        assert "$15.00" in result.output
        assert "$3.00" in result.output

    def test_personas_empty(self, config_path):
        result = runner.invoke(app, ["personas", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No active personas found" in result.output

    def test_personas_listed(self, config_path, tmp_path):
        from battle_guard.storage.models import Persona
        from battle_guard.storage.repository import initialize_schema, insert_persona

        db_path = str(tmp_path / "arena.db")
        initialize_schema(db_path)
        insert_persona(Persona("p1", "Stubborn Steve", "You want $120k."), db_path)

        result = runner.invoke(app, ["personas", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Stubborn Steve" in result.output

    def test_kill_switch_round_trip(self, config_path):
        assert "Kill switch off" in runner.invoke(
            app, ["kill-switch", "status", "--config", config_path]
        ).output

        on = runner.invoke(app, ["kill-switch", "on", "--config", config_path])
        assert on.exit_code == EXIT_CODE_PASS
        assert "Kill switch ON" in runner.invoke(
            app, ["kill-switch", "status", "--config", config_path]
        ).output

        off = runner.invoke(app, ["kill-switch", "off", "--config", config_path])
        assert off.exit_code == EXIT_CODE_PASS
        assert "Kill switch off" in runner.invoke(
            app, ["kill-switch", "--config", config_path]
        ).output

    def test_missing_config_fails(self, tmp_path):
        result = runner.invoke(app, ["status", "--config", str(tmp_path / "nope.yaml")])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output


class TestBattleCommand:
    """Test the battle command."""

    def test_completed_battle(self, config_path, mock_arena):
        mock_arena.run_battle.return_value = make_result()

        result = runner.invoke(app, ["battle", "p1", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        mock_arena.run_battle.assert_awaited_once_with("p1")
        assert "70/100" in result.output
        assert "$1,234.50" in result.output

    def test_budget_abort_is_not_a_failure(self, config_path, mock_arena):
        mock_arena.run_battle.return_value = make_result(
            RunStatus.ABORTED, AbortReason.DAILY_CAP, "Daily budget cap reached"
        )

        result = runner.invoke(app, ["battle", "p1", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Aborted (daily_cap)" in result.output

    def test_gateway_abort_fails(self, config_path, mock_arena):
        mock_arena.run_battle.return_value = make_result(
            RunStatus.ABORTED, AbortReason.GATEWAY_FAILURE, "timed out"
        )

        result = runner.invoke(app, ["battle", "p1", "--config", config_path])

        assert result.exit_code == EXIT_CODE_FAIL

    @pytest.mark.parametrize("error", [
        PersonaNotFoundError("Persona not found: p9"),
        GradingError("Referee returned invalid JSON"),
        LedgerWriteError("disk full"),
    ])
    def test_errors_fail(self, config_path, mock_arena, error):
        mock_arena.run_battle.side_effect = error

        result = runner.invoke(app, ["battle", "p9", "--config", config_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert str(error) in result.output


class TestBatchCommand:
    """Test the batch command."""

    def test_options_are_passed(self, config_path, mock_arena):
        mock_arena.run_batch.return_value = BatchSummary(stop_reason=StopReason.COMPLETED)

        result = runner.invoke(app, [
            "batch", "--persona", "p1", "--persona", "p2",
            "--batch-size", "2", "--max-concurrent", "1", "--delay", "0.5",
            "--config", config_path,
        ])

        assert result.exit_code == EXIT_CODE_PASS
        options = mock_arena.run_batch.await_args.args[0]
        assert options == BatchOptions(
            persona_ids=("p1", "p2"),
            batch_size=2,
            max_concurrent=1,
            delay_between_battles=0.5,
        )

    def test_budget_stop_is_reported(self, config_path, mock_arena):
        mock_arena.run_batch.return_value = BatchSummary(
            results=[make_result()],
            errors=[BattleError("p2", "daily_cap", "Daily budget cap reached", "b-456")],
            battles_started=2,
            total_cost=Decimal("15.2"),
            stop_reason=StopReason.DAILY_CAP,
        )

        result = runner.invoke(app, ["batch", "--config", config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Stop reason: daily_cap" in result.output
        assert "Battles completed: 1/2" in result.output
        assert "$15.20" in result.output
        assert "Kill switch fired" in result.output
        assert "b-456" in result.output

    def test_ledger_failure_fails(self, config_path, mock_arena):
        mock_arena.run_batch.side_effect = LedgerWriteError("disk full")

        result = runner.invoke(app, ["batch", "--config", config_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Ledger write failed" in result.output

    def test_invalid_options_fail(self, config_path, mock_arena):
        result = runner.invoke(app, ["batch", "--max-concurrent", "0", "--config", config_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid batch options" in result.output
        mock_arena.run_batch.assert_not_awaited()
