"""
Campaign Execution API Endpoints

Control plane for campaign runs: send now, schedule, pause, resume, cancel,
retry failed messages, and read progress and delivery statistics.
"""

from fastapi import APIRouter, status
from typing import Optional
import logging

from app.api.deps import DbSession, Executor, TenantId
from app.exceptions import NotFoundError
from app.models.campaign import Campaign
from app.schemas.campaign import (
    CampaignAnalyticsResponse,
    CampaignProgressResponse,
    DeliveryStatistics,
    RetryResult,
    ScheduleCampaignRequest,
    SendCampaignRequest,
)
from app.services.delivery_statistics import statistics_for

logger = logging.getLogger(__name__)
router = APIRouter()


async def _tenant_campaign(db: DbSession, campaign_id: int, tenant_id: str) -> Campaign:
    campaign = await db.get(Campaign, campaign_id)
    if campaign is None or campaign.tenant_id != tenant_id:
        raise NotFoundError("Campaign", campaign_id)
    return campaign


@router.post(
    "/{campaign_id}/send",
    response_model=CampaignProgressResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def send_campaign(
    campaign_id: int,
    executor: Executor,
    tenant_id: TenantId,
    request: Optional[SendCampaignRequest] = None,
):
    """Start sending a draft or scheduled campaign now."""
    request = request or SendCampaignRequest()
    return await executor.start(
        campaign_id,
        tenant_id=tenant_id,
        batch_size=request.batch_size,
        rate_limit_per_minute=request.rate_limit_per_minute,
    )


@router.post("/{campaign_id}/schedule", response_model=CampaignProgressResponse)
async def schedule_campaign(
    campaign_id: int,
    request: ScheduleCampaignRequest,
    executor: Executor,
    tenant_id: TenantId,
):
    """Schedule a draft campaign to start at a future time."""
    return await executor.schedule(
        campaign_id,
        request.scheduled_time,
        tenant_id=tenant_id,
        batch_size=request.batch_size,
        rate_limit_per_minute=request.rate_limit_per_minute,
    )


@router.post("/{campaign_id}/pause", response_model=CampaignProgressResponse)
async def pause_campaign(campaign_id: int, executor: Executor, tenant_id: TenantId):
    """Pause a running campaign after its current batch."""
    return await executor.pause(campaign_id, tenant_id=tenant_id)


@router.post("/{campaign_id}/resume", response_model=CampaignProgressResponse)
async def resume_campaign(campaign_id: int, executor: Executor, tenant_id: TenantId):
    """Resume a paused campaign from the next unsent batch."""
    return await executor.resume(campaign_id, tenant_id=tenant_id)


@router.post("/{campaign_id}/cancel", response_model=CampaignProgressResponse)
async def cancel_campaign(campaign_id: int, executor: Executor, tenant_id: TenantId):
    """Cancel a scheduled, running or paused campaign."""
    return await executor.cancel(campaign_id, tenant_id=tenant_id)


@router.post("/{campaign_id}/retry-failed", response_model=RetryResult)
async def retry_failed_messages(campaign_id: int, executor: Executor, tenant_id: TenantId):
    """Re-send failed messages that still have retry budget."""
    return await executor.retry_failed(campaign_id, tenant_id=tenant_id)


@router.get("/{campaign_id}/progress", response_model=CampaignProgressResponse)
async def get_campaign_progress(campaign_id: int, executor: Executor, tenant_id: TenantId):
    """Live progress of a campaign run."""
    return await executor.get_progress(campaign_id, tenant_id=tenant_id)


@router.get("/{campaign_id}/statistics", response_model=DeliveryStatistics)
async def get_campaign_statistics(campaign_id: int, db: DbSession, tenant_id: TenantId):
    """Delivery, open, click and bounce statistics for a campaign."""
    campaign = await _tenant_campaign(db, campaign_id, tenant_id)
    return statistics_for(campaign)


@router.get("/{campaign_id}/analytics", response_model=CampaignAnalyticsResponse)
async def get_campaign_analytics(
    campaign_id: int,
    db: DbSession,
    executor: Executor,
    tenant_id: TenantId,
):
    """Progress and statistics together."""
    campaign = await _tenant_campaign(db, campaign_id, tenant_id)
    progress = await executor.get_progress(campaign_id, tenant_id=tenant_id)
    return CampaignAnalyticsResponse(
        campaign_id=campaign.id,
        name=campaign.name,
        channel=campaign.channel,
        progress=progress,
        statistics=statistics_for(campaign),
    )
