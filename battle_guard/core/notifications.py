"""
Best-effort operator alerts.

Alerts are posted to a Slack-compatible webhook in background tasks.
Delivery never blocks or fails the governance decision that triggered it.
"""

import asyncio
import logging
from typing import Optional, Set

import httpx

logger = logging.getLogger(__name__)


class AlertDispatcher:
    """Fire-and-forget webhook sender."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the dispatcher.

        Args:
            webhook_url: Incoming-webhook URL; alerts are only logged when unset
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def dispatch(self, message: str) -> None:
        """Schedule delivery of ``message`` and return immediately."""
        logger.info("Alert: %s", message.splitlines()[0] if message else "")
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, alert not delivered")
            return
        task = loop.create_task(self._send(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, message: str) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.webhook_url, json={"text": message})
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Error sending alert to webhook: %s", e)

    async def drain(self) -> None:
        """Wait for alerts still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
