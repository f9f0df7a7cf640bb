"""
Campaign Progress Broadcaster

Manages WebSocket subscribers for live campaign progress.
Supports:
- Several viewers per campaign (multiple tabs/devices)
- Dropping dead connections on send failure
"""

from fastapi import WebSocket
from typing import Any, Dict, Set
import logging
import asyncio

logger = logging.getLogger(__name__)


class ProgressBroadcaster:
    """Tracks WebSocket connections by campaign_id and pushes progress snapshots."""

    def __init__(self):
        self._connections: Dict[int, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, campaign_id: int) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(campaign_id, set()).add(websocket)
        logger.info(
            f"Progress viewer connected: campaign_id={campaign_id}, "
            f"total_connections={self.total_connections}"
        )

    def disconnect(self, websocket: WebSocket, campaign_id: int) -> None:
        viewers = self._connections.get(campaign_id)
        if viewers is not None:
            viewers.discard(websocket)
            if not viewers:
                del self._connections[campaign_id]
        logger.info(f"Progress viewer disconnected: campaign_id={campaign_id}")

    @property
    def total_connections(self) -> int:
        return sum(len(viewers) for viewers in self._connections.values())

    def viewers(self, campaign_id: int) -> int:
        return len(self._connections.get(campaign_id, ()))

    async def publish(self, campaign_id: int, progress: Dict[str, Any]) -> int:
        """
        Send a progress snapshot to every viewer of the campaign.

        Returns:
            Number of connections the message was sent to
        """
        viewers = list(self._connections.get(campaign_id, ()))
        if not viewers:
            return 0

        message = {"type": "campaign.progress", "campaign_id": campaign_id, "data": progress}
        sent_count = 0
        dead_connections = []
        for websocket in viewers:
            try:
                await websocket.send_json(message)
                sent_count += 1
            except Exception as e:
                logger.warning(f"Failed to push progress for campaign {campaign_id}: {e}")
                dead_connections.append(websocket)

        for ws in dead_connections:
            self.disconnect(ws, campaign_id)

        return sent_count


progress_broadcaster = ProgressBroadcaster()
