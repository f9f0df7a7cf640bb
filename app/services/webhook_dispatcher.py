"""
Tenant webhook notifications.

Delivery to third-party endpoints is handled outside this service; here
notifications are emitted fire-and-forget and written to the log.
"""

import asyncio
import logging
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, tenant_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        """Queue a notification without waiting for it."""
        try:
            task = asyncio.create_task(self._deliver(tenant_id, event_type, payload))
        except RuntimeError:
            logger.warning(f"No running event loop; dropping webhook {event_type} for tenant {tenant_id}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, tenant_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(
            f"Webhook {event_type}",
            extra={"tenant_id": tenant_id, "event_type": event_type, "payload": payload},
        )

    async def drain(self) -> None:
        """Wait for queued notifications."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


webhook_dispatcher = WebhookDispatcher()
