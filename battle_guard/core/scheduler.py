"""
Batch scheduling of battles.

Runs battles across a set of personas with a bounded number in flight,
a pacing delay between starts and global stop conditions.

Stop Order (checked before each start and after each finished battle):
1. Run ceiling - the batch's own running cost total reached its ceiling
2. Kill switch - an operator turned the switch on
3. Daily cap - the budget governor reports the day as exceeded

A stop is reported in the summary, never raised. Battles already in flight
are always drained before the summary is returned. Only a ledger write
failure, or an unexpected error, propagates to the caller.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Deque, List, Optional, Sequence, Set, Tuple

from .errors import GradingError, LedgerWriteError, PersistenceError
from .guardrails import BudgetGovernor
from .kill_switch import KillSwitch
from .orchestrator import AbortReason
from .runner import BattleRunner, BattleRunResult, RunStatus
from battle_guard.config.loader import BatchConfig
from battle_guard.storage.models import Persona

logger = logging.getLogger(__name__)


class StopReason(Enum):
    """Why a batch stopped accepting new battles."""
    COMPLETED = "completed"
    NO_PERSONAS = "no_personas"
    RUN_CEILING = "run_ceiling"
    DAILY_CAP = "daily_cap"
    KILL_SWITCH = "kill_switch"


_KILL_SWITCH_REASONS = {StopReason.RUN_CEILING, StopReason.DAILY_CAP, StopReason.KILL_SWITCH}


@dataclass(frozen=True)
class BatchOptions:
    """Options for one batch run.

    ``batch_size`` is the per-run battle quota: at most that many personas
    are scheduled, whether they were named explicitly or picked from the
    active list. Re-queued attempts of the same persona don't count
    against it.
    """
    persona_ids: Optional[Tuple[str, ...]] = None
    batch_size: int = 10
    max_concurrent: int = 3
    delay_between_battles: float = 1.0
    max_battle_retries: int = 0

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.delay_between_battles < 0:
            raise ValueError("delay_between_battles must be >= 0")
        if self.max_battle_retries < 0:
            raise ValueError("max_battle_retries must be >= 0")

    @classmethod
    def from_config(
        cls, config: BatchConfig, persona_ids: Optional[Sequence[str]] = None
    ) -> "BatchOptions":
        return cls(
            persona_ids=tuple(persona_ids) if persona_ids else None,
            batch_size=config.batch_size,
            max_concurrent=config.max_concurrent,
            delay_between_battles=config.delay_between_battles,
            max_battle_retries=config.max_battle_retries,
        )


@dataclass(frozen=True)
class BattleError:
    """One per-battle problem reported in the batch summary."""
    persona_id: str
    kind: str
    message: str
    battle_id: Optional[str] = None


@dataclass
class BatchSummary:
    """Structured outcome of a batch, partial or not."""
    results: List[BattleRunResult] = field(default_factory=list)
    errors: List[BattleError] = field(default_factory=list)
    battles_started: int = 0
    total_cost: Decimal = Decimal("0")
    stop_reason: Optional[StopReason] = None
    battle_ceiling_hits: int = 0

    @property
    def battles_completed(self) -> int:
        return sum(1 for r in self.results if r.status is RunStatus.COMPLETED)

    @property
    def kill_switch_fired(self) -> bool:
        """True when a run-level stop or a per-battle ceiling fired."""
        return self.stop_reason in _KILL_SWITCH_REASONS or self.battle_ceiling_hits > 0

    @property
    def average_score(self) -> Optional[float]:
        scores = [r.score.aggregate_score for r in self.results if r.score is not None]
        if not scores:
            return None
        return sum(scores) / len(scores)


class BatchScheduler:
    """Runs battles for many personas under the budget and kill switches."""

    def __init__(
        self,
        runner: BattleRunner,
        store,
        governor: BudgetGovernor,
        kill_switch: Optional[KillSwitch] = None,
        alerts=None,
    ):
        """Initialize the scheduler.

        Args:
            runner: Runs and persists a single battle
            store: Object providing ``list_active_personas`` coroutine
            governor: Budget governor consulted before every start
            kill_switch: Optional operator kill switch
            alerts: Optional AlertDispatcher for the stop summary
        """
        self.runner = runner
        self.store = store
        self.governor = governor
        self.kill_switch = kill_switch
        self.alerts = alerts

    async def run_batch(self, options: Optional[BatchOptions] = None) -> BatchSummary:
        """Run battles until the personas run out or a stop condition fires.

        Args:
            options: Batch options; reference defaults when omitted

        Returns:
            Summary with every finished battle, per-battle errors, the
            running cost total and the stop reason

        Raises:
            LedgerWriteError: If spend could not be recorded. New starts stop
                and in-flight battles drain first.
        """
        options = options or BatchOptions()
        summary = BatchSummary()

        personas = await self.store.list_active_personas(
            options.persona_ids, options.batch_size
        )
        if not personas:
            logger.warning("No active personas found, nothing to run")
            summary.stop_reason = StopReason.NO_PERSONAS
            return summary

        logger.info(
            "Starting batch: %d personas, max %d concurrent, %.1fs between starts",
            len(personas), options.max_concurrent, options.delay_between_battles
        )

        queue: Deque[Tuple[Persona, int]] = deque((p, 1) for p in personas)
        semaphore = asyncio.Semaphore(options.max_concurrent)
        in_flight: Set[asyncio.Task] = set()
        fatal: List[BaseException] = []

        try:
            while not fatal and summary.stop_reason is None:
                if not queue:
                    if not in_flight:
                        break
                    # A finishing battle may re-queue its persona
                    await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                    continue

                if summary.battles_started and options.delay_between_battles > 0:
                    await asyncio.sleep(options.delay_between_battles)

                await semaphore.acquire()
                if fatal or summary.stop_reason is not None:
                    semaphore.release()
                    break
                reason = await self._check_stop(summary)
                if reason is not None:
                    semaphore.release()
                    self._stop(summary, reason)
                    break
                # A battle may have finished and stopped the batch during the check
                if fatal or summary.stop_reason is not None:
                    semaphore.release()
                    break

                persona, attempt = queue.popleft()
                summary.battles_started += 1
                task = asyncio.create_task(
                    self._run_one(persona, attempt, options, queue, summary, semaphore, fatal)
                )
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*list(in_flight), return_exceptions=True)

        if fatal:
            raise fatal[0]

        if summary.stop_reason is None:
            summary.stop_reason = StopReason.COMPLETED
        self._report(summary)
        return summary

    async def _run_one(
        self,
        persona: Persona,
        attempt: int,
        options: BatchOptions,
        queue: Deque[Tuple[Persona, int]],
        summary: BatchSummary,
        semaphore: asyncio.Semaphore,
        fatal: List[BaseException],
    ) -> None:
        try:
            try:
                result = await self.runner.run_persona(persona)
            except (GradingError, PersistenceError) as e:
                self._record_failure(summary, persona, e)
            except LedgerWriteError as e:
                logger.error("Ledger write failed, stopping batch: %s", e)
                fatal.append(e)
            except Exception as e:
                logger.exception("Unexpected error in battle against persona %s", persona.id)
                fatal.append(e)
            else:
                self._record_result(summary, persona, attempt, result, options, queue)

            if not fatal and summary.stop_reason is None:
                reason = await self._check_stop(summary)
                if reason is not None:
                    self._stop(summary, reason)
        finally:
            semaphore.release()

    def _record_result(
        self,
        summary: BatchSummary,
        persona: Persona,
        attempt: int,
        result: BattleRunResult,
        options: BatchOptions,
        queue: Deque[Tuple[Persona, int]],
    ) -> None:
        summary.results.append(result)
        summary.total_cost += result.cost
        if result.status is not RunStatus.ABORTED:
            return

        reason = result.abort_reason
        summary.errors.append(BattleError(
            persona_id=persona.id,
            kind=reason.value if reason else "aborted",
            message=result.error or "",
            battle_id=result.battle_id,
        ))
        if reason is AbortReason.BATTLE_CEILING:
            summary.battle_ceiling_hits += 1
        elif reason is AbortReason.GATEWAY_FAILURE and attempt <= options.max_battle_retries:
            logger.info(
                "Re-queueing persona %s after gateway failure (retry %d/%d)",
                persona.id, attempt, options.max_battle_retries
            )
            queue.append((persona, attempt + 1))

    def _record_failure(self, summary: BatchSummary, persona: Persona, error) -> None:
        result = error.result
        if result is not None:
            summary.results.append(result)
            summary.total_cost += result.cost
        elif isinstance(error, GradingError):
            summary.total_cost += error.cost
        summary.errors.append(BattleError(
            persona_id=persona.id,
            kind="grading" if isinstance(error, GradingError) else "persistence",
            message=str(error),
            battle_id=result.battle_id if result is not None else None,
        ))

    async def _check_stop(self, summary: BatchSummary) -> Optional[StopReason]:
        if self.governor.exceeds_run_ceiling(summary.total_cost):
            return StopReason.RUN_CEILING
        if self.kill_switch is not None and await self.kill_switch.is_active():
            return StopReason.KILL_SWITCH
        state = await self.governor.current_state()
        if state.is_exceeded:
            return StopReason.DAILY_CAP
        return None

    def _stop(self, summary: BatchSummary, reason: StopReason) -> None:
        if summary.stop_reason is not None:
            return
        summary.stop_reason = reason
        logger.error(
            "Batch stopping (%s) after %d battles, total cost $%s",
            reason.value, summary.battles_started, summary.total_cost
        )

    def _report(self, summary: BatchSummary) -> None:
        average = summary.average_score
        logger.info(
            "Batch finished (%s): %d/%d battles completed, %d errors, total cost $%s, "
            "average score %s",
            summary.stop_reason.value,
            summary.battles_completed,
            summary.battles_started,
            len(summary.errors),
            summary.total_cost,
            f"{average:.1f}" if average is not None else "n/a",
        )
        if summary.stop_reason in _KILL_SWITCH_REASONS and self.alerts is not None:
            self.alerts.dispatch(
                f"KILL-SWITCH: battle run stopped ({summary.stop_reason.value})\n"
                f"Battles completed: {summary.battles_completed}/{summary.battles_started}\n"
                f"Total cost: ${summary.total_cost:.2f}\n"
                f"Errors: {len(summary.errors)}"
            )
