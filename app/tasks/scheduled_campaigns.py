"""Scheduled Campaign Poller - launches campaigns whose start time has passed.

Runs every SCHEDULED_POLL_INTERVAL_SECONDS (60s by default). Each due
campaign is claimed with a conditional UPDATE (status must still be
'scheduled'), so when several pollers race only the one whose UPDATE
matched the row launches it. A claim whose launch fails is handed back
so the next poll tries again.
"""

import logging
from datetime import datetime
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.campaign import Campaign
from app.models.campaign_progress import CampaignProgress
from app.schemas.campaign import CampaignStatus
from app.services.campaign_executor import CampaignExecutor, get_campaign_executor
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler()
    return scheduler


async def find_due_campaigns(db: AsyncSession, now: datetime) -> List[int]:
    result = await db.execute(
        select(CampaignProgress.campaign_id)
        .where(
            CampaignProgress.status == CampaignStatus.SCHEDULED.value,
            CampaignProgress.scheduled_time.is_not(None),
            CampaignProgress.scheduled_time <= now,
        )
        .order_by(CampaignProgress.scheduled_time)
    )
    return list(result.scalars().all())


async def claim_scheduled_campaign(db: AsyncSession, campaign_id: int) -> bool:
    """Move a scheduled progress row to running; False if someone else got there first."""
    result = await db.execute(
        update(CampaignProgress)
        .where(
            CampaignProgress.campaign_id == campaign_id,
            CampaignProgress.status == CampaignStatus.SCHEDULED.value,
        )
        .values(
            status=CampaignStatus.RUNNING.value,
            version=CampaignProgress.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def release_claim(db: AsyncSession, campaign_id: int) -> bool:
    """Give a claimed row back to the poller when its campaign never left scheduled."""
    still_scheduled = select(Campaign.id).where(
        Campaign.id == campaign_id,
        Campaign.status == CampaignStatus.SCHEDULED.value,
    )
    result = await db.execute(
        update(CampaignProgress)
        .where(
            CampaignProgress.campaign_id == campaign_id,
            CampaignProgress.status == CampaignStatus.RUNNING.value,
            CampaignProgress.campaign_id.in_(still_scheduled),
        )
        .values(
            status=CampaignStatus.SCHEDULED.value,
            version=CampaignProgress.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def launch_due_campaigns(
    executor: Optional[CampaignExecutor] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    now: Optional[datetime] = None,
) -> List[int]:
    """
    Main job: claim and start every scheduled campaign that is due.

    Returns the ids of the campaigns launched by this poll.
    """
    executor = executor or get_campaign_executor()
    session_factory = session_factory or executor.store.session_factory
    now = now or utcnow()
    launched: List[int] = []

    try:
        async with session_factory() as db:
            due = await find_due_campaigns(db, now)
            if due:
                logger.info(f"Found {len(due)} scheduled campaigns due")

            for campaign_id in due:
                if not await claim_scheduled_campaign(db, campaign_id):
                    logger.info(f"Campaign {campaign_id} already claimed by another poller")
                    continue
                try:
                    if await executor.start_claimed(campaign_id):
                        launched.append(campaign_id)
                except Exception as e:
                    logger.error(f"Error launching scheduled campaign {campaign_id}: {e}", exc_info=True)
                    if await release_claim(db, campaign_id):
                        logger.info(f"Campaign {campaign_id} returned to scheduled for the next poll")

    except Exception as e:
        logger.error(f"Fatal error in scheduled campaign poll: {e}", exc_info=True)

    return launched


def start_campaign_scheduler(executor: Optional[CampaignExecutor] = None):
    """Start the poller job."""
    global scheduler

    scheduler = get_scheduler()
    scheduler.add_job(
        launch_due_campaigns,
        IntervalTrigger(seconds=settings.SCHEDULED_POLL_INTERVAL_SECONDS),
        kwargs={"executor": executor},
        id="scheduled_campaigns",
        name="Launch scheduled campaigns",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduled campaign poller started")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")


def stop_campaign_scheduler():
    """Stop the poller."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduled campaign poller stopped")
