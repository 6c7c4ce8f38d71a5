"""
Cost ledger writer.

Every priced completion-service call becomes one append-only LedgerEntry.
Failures are loud: money that was spent but not recorded is invisible to
the budget governor, so a write that cannot be completed raises
LedgerWriteError instead of being dropped.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .errors import LedgerWriteError
from .pricing import PROVIDER, ModelTier, calculate_usage_cost, model_for_tier
from .retry import retry_async
from .token_counter import TokenUsage
from battle_guard.storage.models import EntryType, LedgerEntry

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CostLedger:
    """Prices calls and appends them to the store's ledger."""

    def __init__(
        self,
        store,
        clock: Callable[[], datetime] = utc_now,
        write_attempts: int = 3,
        retry_delay: float = 0.1,
    ):
        """Initialize the ledger.

        Args:
            store: Object providing ``append_ledger_entry(entry)`` coroutine
            clock: Source of the current UTC time
            write_attempts: Tries per entry before failing the run
            retry_delay: Initial backoff between tries, in seconds
        """
        self.store = store
        self.clock = clock
        self.write_attempts = write_attempts
        self.retry_delay = retry_delay

    async def record(
        self,
        tier: ModelTier,
        usage: TokenUsage,
        entry_type: EntryType,
        tags: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> LedgerEntry:
        """Price one call and append it to the ledger.

        Args:
            tier: Tier the call was billed under
            usage: Token usage reported by the service
            entry_type: TURN or REFEREE
            tags: Context such as battle id, turn index and role
            model: Model name reported by the service (defaults to the tier's)

        Returns:
            The entry that was written

        Raises:
            LedgerWriteError: If the entry could not be written
        """
        entry = LedgerEntry(
            entry_id=uuid.uuid4().hex,
            timestamp=self.clock(),
            provider=PROVIDER,
            model=model or model_for_tier(tier),
            tier=tier.value,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=calculate_usage_cost(tier, usage),
            entry_type=entry_type,
            tags=dict(tags or {}),
        )
        await self._append(entry)
        logger.info(
            "Cost logged: %s %s $%s (%d tokens) %s",
            entry.entry_type.value, entry.model, entry.cost, entry.total_tokens, entry.tags
        )
        return entry

    async def record_summary(
        self,
        usage: TokenUsage,
        total_cost: Decimal,
        tags: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Append an informational battle summary.

        The summary carries zero cost and zero tokens; the battle totals go
        into the tags so the day's spend is never counted twice.
        """
        summary_tags = dict(tags or {})
        summary_tags.update({
            "total_input_tokens": usage.input_tokens,
            "total_output_tokens": usage.output_tokens,
            "total_cost": str(total_cost),
        })
        entry = LedgerEntry(
            entry_id=uuid.uuid4().hex,
            timestamp=self.clock(),
            provider=PROVIDER,
            model="-",
            tier="-",
            input_tokens=0,
            output_tokens=0,
            cost=Decimal("0"),
            entry_type=EntryType.SUMMARY,
            tags=summary_tags,
        )
        await self._append(entry)
        return entry

    async def _append(self, entry: LedgerEntry) -> None:
        try:
            await retry_async(
                lambda: self.store.append_ledger_entry(entry),
                attempts=self.write_attempts,
                base_delay=self.retry_delay,
                description=f"ledger write {entry.entry_id}",
            )
        except Exception as e:
            raise LedgerWriteError(
                f"Failed to record ${entry.cost} {entry.entry_type.value} spend "
                f"after {self.write_attempts} attempts: {e}"
            ) from e
