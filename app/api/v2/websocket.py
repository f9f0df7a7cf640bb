"""
Campaign Progress WebSocket

Streams progress snapshots of one campaign while it runs.

Connection URL: ws://host/api/v2/ws/campaigns/{campaign_id}/progress?tenant_id=<tenant>

Message Protocol:
- Client -> Server:
    - {"type": "ping"} - Heartbeat ping
    - {"type": "refresh"} - Ask for the current snapshot
- Server -> Client:
    - {"type": "pong", "timestamp": "..."} - Heartbeat response
    - {"type": "campaign.progress", "campaign_id": 1, "data": {...}} - Progress snapshot
    - {"type": "error", "message": "..."} - Error message
"""

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query
import logging
import json

from app.exceptions import NotFoundError
from app.services.campaign_executor import CampaignExecutor, get_campaign_executor
from app.services.progress_broadcaster import progress_broadcaster
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


async def _send_snapshot(websocket: WebSocket, executor: CampaignExecutor, campaign_id: int, tenant_id: str):
    progress = await executor.get_progress(campaign_id, tenant_id=tenant_id)
    await websocket.send_json({
        "type": "campaign.progress",
        "campaign_id": campaign_id,
        "data": progress.model_dump(mode="json"),
    })


@router.websocket("/ws/campaigns/{campaign_id}/progress")
async def campaign_progress_socket(
    websocket: WebSocket,
    campaign_id: int,
    tenant_id: str = Query(..., description="Tenant owning the campaign"),
    executor: CampaignExecutor = Depends(get_campaign_executor),
):
    try:
        await executor.get_progress(campaign_id, tenant_id=tenant_id)
    except NotFoundError:
        logger.warning(f"Progress socket rejected: campaign {campaign_id} not found for tenant")
        await websocket.close(code=4004, reason="Campaign not found")
        return

    await progress_broadcaster.connect(websocket, campaign_id)

    try:
        await _send_snapshot(websocket, executor, campaign_id, tenant_id)

        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON format"})
                continue

            message_type = data.get("type")
            if message_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": utcnow().isoformat()})
            elif message_type == "refresh":
                await _send_snapshot(websocket, executor, campaign_id, tenant_id)
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {message_type}"})

    except WebSocketDisconnect:
        pass
    finally:
        progress_broadcaster.disconnect(websocket, campaign_id)
