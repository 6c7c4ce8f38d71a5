"""
Budget guardrails and daily spend governance.

Implements the daily spending cap with strict enforcement policies.

Policy Order:
1. Exceeded (spend >= daily cap) - Hard stop, no new battle or turn starts
2. Throttled (spend >= throttle threshold) - Referee and persona use the
   economy tier, optional audit disabled
3. Normal - Premium tier for grading

The per-battle ceiling is checked separately after every turn and aborts
only the battle that crossed it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Tuple

from .pricing import ModelTier
from battle_guard.config.loader import BudgetConfig

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


class BudgetPolicy(Enum):
    """Budget policy levels in order of severity."""
    NORMAL = "normal"
    THROTTLED = "throttled"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class BudgetState:
    """Today's budget position, derived from the ledger on every read."""
    daily_spend: Decimal
    remaining: Decimal
    percentage_used: Decimal
    is_throttled: bool
    is_exceeded: bool
    daily_cap: Decimal
    throttle_threshold: Decimal
    ledger_available: bool = True

    def __post_init__(self):
        """Exceeded is a strict superset of throttled."""
        if self.is_exceeded and not self.is_throttled:
            raise ValueError("an exceeded budget must also be throttled")

    @property
    def policy(self) -> BudgetPolicy:
        if self.is_exceeded:
            return BudgetPolicy.EXCEEDED
        if self.is_throttled:
            return BudgetPolicy.THROTTLED
        return BudgetPolicy.NORMAL


def start_of_utc_day(now: datetime) -> datetime:
    """Midnight UTC of the day containing ``now``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def evaluate_budget(daily_spend: Decimal, config: BudgetConfig) -> BudgetState:
    """Compare a day's spend against the throttle threshold and daily cap."""
    threshold = config.throttle_threshold
    is_exceeded = daily_spend >= config.daily_cap
    is_throttled = is_exceeded or daily_spend >= threshold
    return BudgetState(
        daily_spend=daily_spend,
        remaining=max(Decimal("0"), config.daily_cap - daily_spend),
        percentage_used=daily_spend / config.daily_cap * _HUNDRED,
        is_throttled=is_throttled,
        is_exceeded=is_exceeded,
        daily_cap=config.daily_cap,
        throttle_threshold=threshold,
    )


class BudgetGovernor:
    """Derives BudgetState from today's ledger and maps it to model tiers.

    Nothing is cached: every ``current_state`` call sums the ledger again.
    """

    def __init__(
        self,
        store,
        config: BudgetConfig,
        clock: Optional[Callable[[], datetime]] = None,
        alerts=None,
        premium_persona: bool = False,
    ):
        """Initialize the governor.

        Args:
            store: Object providing ``fetch_ledger_entries_since(ts)`` coroutine
            config: Budget thresholds
            clock: Source of the current UTC time
            alerts: Optional AlertDispatcher notified when the cap is hit
            premium_persona: Use the premium tier for persona turns when normal
        """
        self.store = store
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.alerts = alerts
        self.premium_persona = premium_persona
        # (UTC day, policy) last reported
        self._last_reported: Optional[Tuple[datetime, BudgetPolicy]] = None

    async def current_state(self) -> BudgetState:
        """Sum today's ledger entries and evaluate the policy.

        Fails closed: if the ledger cannot be read, the budget is reported
        as exceeded.
        """
        day = start_of_utc_day(self.clock())
        try:
            entries = await self.store.fetch_ledger_entries_since(day)
        except Exception as e:
            logger.error("Ledger unavailable, treating budget as exceeded: %s", e)
            return BudgetState(
                daily_spend=self.config.daily_cap,
                remaining=Decimal("0"),
                percentage_used=_HUNDRED,
                is_throttled=True,
                is_exceeded=True,
                daily_cap=self.config.daily_cap,
                throttle_threshold=self.config.throttle_threshold,
                ledger_available=False,
            )

        daily_spend = sum((entry.cost for entry in entries), Decimal("0"))
        state = evaluate_budget(daily_spend, self.config)
        self._report(state, day)
        return state

    def _report(self, state: BudgetState, day: datetime) -> None:
        """Log, and alert on the cap, only when the day's policy changes."""
        key = (day, state.policy)
        if key == self._last_reported:
            return
        self._last_reported = key

        if state.is_exceeded:
            logger.error(
                "Budget limit reached: daily spend $%.2f / $%.2f",
                state.daily_spend, state.daily_cap
            )
            if self.alerts is not None:
                self.alerts.dispatch(
                    f"BUDGET LIMIT REACHED - TRAINING PAUSED\n"
                    f"Daily spend: ${state.daily_spend:.2f}\n"
                    f"Daily cap: ${state.daily_cap:.2f}\n"
                    f"Percentage used: {state.percentage_used:.1f}%"
                )
        elif state.is_throttled:
            logger.warning(
                "Budget throttling active: daily spend $%.2f >= threshold $%.2f "
                "(remaining $%.2f)",
                state.daily_spend, state.throttle_threshold, state.remaining
            )

    def closer_tier(self, state: BudgetState) -> ModelTier:
        """The closer stays on the premium tier until the hard cap."""
        return ModelTier.PREMIUM

    def persona_tier(self, state: BudgetState) -> ModelTier:
        if self.premium_persona and not state.is_throttled:
            return ModelTier.PREMIUM
        return ModelTier.ECONOMY

    def referee_tier(self, state: BudgetState) -> ModelTier:
        return ModelTier.ECONOMY if state.is_throttled else ModelTier.PREMIUM

    def audit_enabled(self, state: BudgetState) -> bool:
        return not state.is_throttled

    def exceeds_battle_ceiling(self, battle_cost: Decimal) -> bool:
        """Per-battle kill-switch, independent of the daily cap."""
        return battle_cost >= self.config.per_battle_ceiling

    def exceeds_run_ceiling(self, run_cost: Decimal) -> bool:
        ceiling = self.config.per_run_ceiling
        return ceiling is not None and run_cost >= ceiling
