"""
Operator-issued kill signal for running batches.

The flag lives in the store so that one process (the CLI) can stop a batch
running in another.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

FLAG_NAME = "kill_switch"


class KillSwitch:
    """Store-backed on/off switch checked before every battle a batch starts."""

    def __init__(self, store):
        self.store = store

    async def is_active(self) -> bool:
        """Whether the switch is on. An unreadable flag counts as on."""
        try:
            value = await self.store.get_flag(FLAG_NAME)
        except Exception as e:
            logger.error("Kill-switch flag unreadable, treating as active: %s", e)
            return True
        return value is not None and value != ""

    async def status(self) -> Tuple[bool, Optional[datetime]]:
        """Return (active, activated_at)."""
        value = await self.store.get_flag(FLAG_NAME)
        if not value:
            return False, None
        return True, datetime.fromisoformat(value)

    async def activate(self) -> None:
        await self.store.set_flag(FLAG_NAME, datetime.now(timezone.utc).isoformat())
        logger.warning("Kill-switch activated")

    async def deactivate(self) -> None:
        await self.store.set_flag(FLAG_NAME, "")
        logger.info("Kill-switch deactivated")
