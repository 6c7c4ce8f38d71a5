"""
CLI interface for Battle Guard.

Provides command-line access to battles, batches, the budget state and the
operator kill switch.
"""

import asyncio
import logging
import sys
from dataclasses import replace
from enum import Enum
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from battle_guard.config.loader import ArenaConfig, load_arena_config
from battle_guard.core.arena import build_arena
from battle_guard.core.errors import GradingError, LedgerWriteError, PersonaNotFoundError
from battle_guard.core.guardrails import BudgetGovernor, BudgetPolicy
from battle_guard.core.kill_switch import KillSwitch
from battle_guard.core.orchestrator import AbortReason
from battle_guard.core.runner import BattleRunResult, RunStatus
from battle_guard.core.scheduler import BatchOptions, BatchSummary
from battle_guard.storage.repository import SQLiteStore

app = typer.Typer()
console = Console()

# Exit codes - a budget stop is not a failure
EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_HELP = "Path to arena YAML config (reference defaults when omitted)"

_POLICY_STYLES = {
    BudgetPolicy.NORMAL: "green",
    BudgetPolicy.THROTTLED: "yellow",
    BudgetPolicy.EXCEEDED: "red",
}


class SwitchAction(str, Enum):
    ON = "on"
    OFF = "off"
    STATUS = "status"


def _load_config(path: Optional[str]) -> ArenaConfig:
    """Load the config file, or exit with a readable error."""
    if path is None:
        return ArenaConfig.default()
    try:
        return load_arena_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _open_store(config: ArenaConfig) -> SQLiteStore:
    store = SQLiteStore(config.storage.db_path)
    store.initialize()
    return store


def _format_currency(amount) -> str:
    return f"${amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Battle Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )
    if ctx.invoked_subcommand is None:
        console.print("Battle Guard - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)):
    """Initialize the Battle Guard database."""
    arena_config = _load_config(config)
    try:
        _open_store(arena_config)
        console.print(
            f"[green]✓[/] Database initialized successfully ({arena_config.storage.db_path})"
        )
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)):
    """Show today's budget state and the kill switch."""
    arena_config = _load_config(config)
    store = _open_store(arena_config)
    governor = BudgetGovernor(store, arena_config.budget)
    state = asyncio.run(governor.current_state())
    switch_on = asyncio.run(KillSwitch(store).is_active())

    style = _POLICY_STYLES[state.policy]
    table = Table(title="Daily Budget (UTC)")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Policy", f"[{style}]{state.policy.value.upper()}[/]")
    table.add_row("Daily spend", _format_currency(state.daily_spend))
    table.add_row("Daily cap", _format_currency(state.daily_cap))
    table.add_row("Remaining", _format_currency(state.remaining))
    table.add_row("Used", f"{state.percentage_used:.1f}%")
    table.add_row("Throttle threshold", _format_currency(state.throttle_threshold))
    table.add_row("Per-battle ceiling", _format_currency(arena_config.budget.per_battle_ceiling))
    table.add_row("Kill switch", "[red]ON[/]" if switch_on else "off")
    console.print(table)

    if not state.ledger_available:
        console.print("[red]Ledger unavailable: budget treated as exceeded[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def personas(config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)):
    """List active personas."""
    arena_config = _load_config(config)
    store = _open_store(arena_config)
    active = asyncio.run(store.list_active_personas())

    if not active:
        console.print("\n[bold yellow]No active personas found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Active Personas")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Instruction")
    for persona in active:
        instruction = persona.instruction.splitlines()[0] if persona.instruction else ""
        if len(instruction) > 60:
            instruction = instruction[:57] + "..."
        table.add_row(persona.id, persona.name, instruction)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def battle(
    persona_id: str = typer.Argument(..., help="Persona to battle against"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Run, grade and persist one battle."""
    arena_config = _load_config(config)
    try:
        arena = build_arena(arena_config)
        result = asyncio.run(arena.run_battle(persona_id))
    except PersonaNotFoundError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except GradingError as e:
        console.print(f"[red]Grading failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except LedgerWriteError as e:
        console.print(f"[bold red]Ledger write failed, spend may be unrecorded:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_battle_result(result)
    if result.abort_reason is AbortReason.GATEWAY_FAILURE:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def batch(
    persona: Optional[List[str]] = typer.Option(
        None,
        "--persona",
        "-p",
        help="Persona id to include (repeatable); defaults to the next active personas"
    ),
    batch_size: Optional[int] = typer.Option(
        None,
        "--batch-size",
        "-n",
        help="Maximum number of battles in this run"
    ),
    max_concurrent: Optional[int] = typer.Option(
        None,
        "--max-concurrent",
        help="Maximum battles in flight at once"
    ),
    delay: Optional[float] = typer.Option(
        None,
        "--delay",
        help="Seconds between battle starts"
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """
    Run a batch of battles.

    Stops cleanly when the run ceiling, the daily cap or the operator kill
    switch fires; the summary says which. Only a ledger write failure is
    reported as an error.
    """
    arena_config = _load_config(config)
    try:
        options = BatchOptions.from_config(arena_config.batch, persona)
        overrides = {
            "batch_size": batch_size,
            "max_concurrent": max_concurrent,
            "delay_between_battles": delay,
        }
        options = replace(options, **{k: v for k, v in overrides.items() if v is not None})
    except ValueError as e:
        console.print(f"[red]Invalid batch options:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        arena = build_arena(arena_config)
        summary = asyncio.run(arena.run_batch(options))
    except LedgerWriteError as e:
        console.print(f"[bold red]Ledger write failed, batch stopped:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_batch_summary(summary)
    sys.exit(EXIT_CODE_PASS)


@app.command("kill-switch")
def kill_switch(
    action: SwitchAction = typer.Argument(SwitchAction.STATUS, help="on, off or status"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Turn the operator kill switch on or off, or show it."""
    arena_config = _load_config(config)
    switch = KillSwitch(_open_store(arena_config))

    if action is SwitchAction.ON:
        asyncio.run(switch.activate())
        console.print("[red]Kill switch ON[/] - running batches stop before their next battle")
    elif action is SwitchAction.OFF:
        asyncio.run(switch.deactivate())
        console.print("[green]✓[/] Kill switch off")
    else:
        active, activated_at = asyncio.run(switch.status())
        if active:
            console.print(f"[red]Kill switch ON[/] since {activated_at.isoformat()}")
        else:
            console.print("Kill switch off")
    sys.exit(EXIT_CODE_PASS)


def _display_battle_result(result: BattleRunResult):
    """Display one battle outcome."""
    console.print(f"\n[bold]Battle {result.battle_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Persona: {result.persona_id}")
    console.print(f"Status: {result.status.value}")
    console.print(f"Turns: {result.turn_count}")
    console.print(f"Tokens: {result.usage.total_tokens:,}")
    console.print(f"Cost: {_format_currency(result.cost)}")

    if result.status is RunStatus.ABORTED:
        reason = result.abort_reason.value if result.abort_reason else "unknown"
        console.print(f"\n[bold yellow]Aborted ({reason}):[/] {result.error}")
        return

    score = result.score
    if score is not None:
        console.print(f"\n[bold]Score:[/bold] {score.aggregate_score}/100 ({score.tier.value} referee)")
        for criterion in score.criterion_scores:
            console.print(f"  {criterion.name}: {criterion.score}/10")
        if score.rationale:
            console.print(f"\n{score.rationale}")


def _display_batch_summary(summary: BatchSummary):
    """Display a batch summary and its per-battle errors."""
    console.print("\n[bold]Batch Summary[/bold]")
    console.print("-" * 40)
    console.print(f"Stop reason: {summary.stop_reason.value}")
    console.print(f"Battles completed: {summary.battles_completed}/{summary.battles_started}")
    console.print(f"Total cost: {_format_currency(summary.total_cost)}")
    average = summary.average_score
    if average is not None:
        console.print(f"Average score: {average:.1f}/100")
    if summary.kill_switch_fired:
        console.print("[bold red]Kill switch fired[/]")

    if summary.errors:
        table = Table(title="Battle Errors")
        table.add_column("Persona")
        table.add_column("Battle")
        table.add_column("Kind")
        table.add_column("Message")
        for error in summary.errors:
            table.add_row(error.persona_id, error.battle_id or "-", error.kind, error.message)
        console.print(table)


if __name__ == "__main__":
    app()
