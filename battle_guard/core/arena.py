"""
Caller-facing entry points and the composition root.

``build_arena`` wires the store, ledger, governor, gateway, orchestrator,
referee, runner and scheduler from one ArenaConfig.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from .gateway import CompletionGateway
from .guardrails import BudgetGovernor, BudgetState
from .kill_switch import KillSwitch
from .ledger import CostLedger, utc_now
from .notifications import AlertDispatcher
from .orchestrator import BattleOrchestrator, load_closer_prompt
from .referee import Referee, Rubric
from .runner import BattleRunner, BattleRunResult, QualityAuditor
from .scheduler import BatchOptions, BatchScheduler, BatchSummary
from battle_guard.config.loader import ArenaConfig
from battle_guard.sdk.openai_client import OpenAIGateway
from battle_guard.storage.repository import SQLiteStore

logger = logging.getLogger(__name__)


class BattleArena:
    """Runs single battles and batches, and exposes the budget state."""

    def __init__(
        self,
        config: ArenaConfig,
        store,
        governor: BudgetGovernor,
        runner: BattleRunner,
        scheduler: BatchScheduler,
        kill_switch: KillSwitch,
        alerts: AlertDispatcher,
    ):
        self.config = config
        self.store = store
        self.governor = governor
        self.runner = runner
        self.scheduler = scheduler
        self.kill_switch = kill_switch
        self.alerts = alerts

    async def run_battle(self, persona_id: str) -> BattleRunResult:
        """Run, grade and persist one battle.

        Raises:
            PersonaNotFoundError: If the persona is missing or inactive
            GradingError: If the referee verdict was unusable
            LedgerWriteError: If spend could not be recorded
        """
        try:
            return await self.runner.run_battle(persona_id)
        finally:
            await self.alerts.drain()

    async def run_batch(self, options: Optional[BatchOptions] = None) -> BatchSummary:
        """Run a batch; options default to the configured batch settings."""
        if options is None:
            options = BatchOptions.from_config(self.config.batch)
        try:
            return await self.scheduler.run_batch(options)
        finally:
            await self.alerts.drain()

    async def budget_state(self) -> BudgetState:
        return await self.governor.current_state()


def build_arena(
    config: ArenaConfig,
    gateway: Optional[CompletionGateway] = None,
    store=None,
    clock: Optional[Callable[[], datetime]] = None,
    auditor: Optional[QualityAuditor] = None,
) -> BattleArena:
    """Assemble a BattleArena from configuration.

    Args:
        config: Validated arena configuration
        gateway: Completion gateway; an OpenAIGateway by default
        store: Persistence store; a SQLiteStore on ``config.storage.db_path``
            (schema created if missing) by default
        clock: Source of the current UTC time
        auditor: Optional quality audit for high-scoring battles

    Returns:
        The wired arena
    """
    clock = clock or utc_now
    if store is None:
        store = SQLiteStore(config.storage.db_path)
        store.initialize()
    if gateway is None:
        gateway = OpenAIGateway(temperature=config.battle.temperature)

    alerts = AlertDispatcher(
        webhook_url=config.notifications.webhook_url,
        timeout=config.notifications.timeout_seconds,
    )
    ledger = CostLedger(store, clock=clock)
    governor = BudgetGovernor(
        store,
        config.budget,
        clock=clock,
        alerts=alerts,
        premium_persona=config.battle.premium_persona,
    )
    orchestrator = BattleOrchestrator(
        gateway,
        ledger,
        governor,
        closer_prompt=load_closer_prompt(config.battle.closer_prompt_path),
        max_turns=config.battle.max_turns,
        alerts=alerts,
        clock=clock,
    )
    referee = Referee(gateway, ledger, governor, Rubric(config.referee.criteria))
    runner = BattleRunner(
        store,
        orchestrator,
        referee,
        governor,
        ledger,
        auditor=auditor,
        audit_min_score=config.referee.audit_min_score,
    )
    kill_switch = KillSwitch(store)
    scheduler = BatchScheduler(runner, store, governor, kill_switch=kill_switch, alerts=alerts)
    logger.debug("Arena assembled (db %s)", config.storage.db_path)
    return BattleArena(config, store, governor, runner, scheduler, kill_switch, alerts)
