"""
Serialized read-modify-write access to a campaign and its progress row.

Within one process every write for a campaign runs under that campaign's
asyncio.Lock. Across processes the ``version`` column on CampaignProgress
rejects stale writes; the mutation is then re-run against fresh rows.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.database import async_session_maker
from app.exceptions import ExecutionError, NotFoundError
from app.models.campaign import Campaign
from app.models.campaign_progress import CampaignProgress
from app.schemas.campaign import CampaignProgressResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")
Mutation = Callable[[AsyncSession, Campaign, Optional[CampaignProgress]], Awaitable[T]]


def to_progress_response(campaign_id: int, progress: Optional[CampaignProgress]) -> CampaignProgressResponse:
    """Build the read model; zeroed defaults when the campaign has no progress row."""
    if progress is None:
        return CampaignProgressResponse(campaign_id=campaign_id)
    return CampaignProgressResponse(
        campaign_id=campaign_id,
        status=progress.status,
        total_recipients=progress.total_recipients or 0,
        emails_sent=progress.emails_sent or 0,
        emails_success=progress.emails_success or 0,
        emails_failed=progress.emails_failed or 0,
        emails_in_progress=progress.emails_in_progress or 0,
        current_batch_number=progress.current_batch_number or 0,
        total_batches=progress.total_batches or 0,
        batch_size=progress.batch_size or 0,
        rate_limit_per_minute=progress.rate_limit_per_minute or 0,
        progress_percentage=progress.progress_percentage,
        success_rate=progress.success_rate,
        failure_rate=progress.failure_rate,
        scheduled_time=progress.scheduled_time,
        started_at=progress.started_at,
        paused_at=progress.paused_at,
        completed_at=progress.completed_at,
        last_batch_sent_at=progress.last_batch_sent_at,
        error_message=progress.error_message,
    )


async def load_progress(db: AsyncSession, campaign_id: int) -> Optional[CampaignProgress]:
    result = await db.execute(
        select(CampaignProgress).where(CampaignProgress.campaign_id == campaign_id)
    )
    return result.scalar_one_or_none()


class ProgressStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.PROGRESS_WRITE_ATTEMPTS
        self._locks: Dict[int, asyncio.Lock] = {}

    def lock(self, campaign_id: int) -> asyncio.Lock:
        lock = self._locks.get(campaign_id)
        if lock is None:
            lock = self._locks[campaign_id] = asyncio.Lock()
        return lock

    async def read(
        self, campaign_id: int, tenant_id: Optional[str] = None
    ) -> Tuple[Campaign, Optional[CampaignProgress]]:
        async with self.session_factory() as db:
            campaign = await self._load_campaign(db, campaign_id, tenant_id)
            progress = await load_progress(db, campaign_id)
        return campaign, progress

    async def mutate(
        self, campaign_id: int, mutation: Mutation, tenant_id: Optional[str] = None
    ) -> T:
        async with self.lock(campaign_id):
            return await self.mutate_locked(campaign_id, mutation, tenant_id)

    async def mutate_locked(
        self, campaign_id: int, mutation: Mutation, tenant_id: Optional[str] = None
    ) -> T:
        """Run ``mutation`` and commit; the caller must hold ``lock(campaign_id)``."""
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as db:
                campaign = await self._load_campaign(db, campaign_id, tenant_id)
                progress = await load_progress(db, campaign_id)
                try:
                    result = await mutation(db, campaign, progress)
                    await db.commit()
                    return result
                except StaleDataError:
                    await db.rollback()
                    logger.warning(
                        "Concurrent progress write detected, retrying",
                        extra={"campaign_id": campaign_id, "attempt": attempt},
                    )
        raise ExecutionError(
            f"Progress for campaign {campaign_id} changed during {self.max_attempts} write attempts"
        )

    @staticmethod
    async def _load_campaign(db: AsyncSession, campaign_id: int, tenant_id: Optional[str]) -> Campaign:
        campaign = await db.get(Campaign, campaign_id)
        if campaign is None or (tenant_id is not None and campaign.tenant_id != tenant_id):
            raise NotFoundError("Campaign", campaign_id)
        return campaign
