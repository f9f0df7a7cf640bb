"""
Campaign Executor

Runs approved campaigns: resolves the audience, sends in rate-limited
batches, records every attempt, and exposes pause/resume/cancel/retry.

Concurrency model:
- One asyncio task per running campaign; batches inside a run are sequential
- Control operations and the run loop write status and counters through
  ProgressStore, which serializes them per campaign
- The run loop only reads status, and re-reads it before every batch, so a
  pause or cancel takes effect at the next batch boundary and is never
  overwritten. It only writes terminal status itself (completed/failed),
  and completion is applied only while the run is still running
- No database session is held while messages are being sent
- Each send is logged as soon as it returns; a resumed run skips every
  recipient that already has a MessageLog row
- shutdown() cancels live runs and parks them as paused
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import async_session_maker
from app.exceptions import ExecutionError, InvalidStateError, ValidationError
from app.models.campaign import Campaign
from app.models.campaign_progress import CampaignProgress
from app.models.delivery_event import DeliveryEvent
from app.models.message_log import MessageLog
from app.schemas.campaign import (
    CampaignChannel,
    CampaignProgressResponse,
    CampaignStatus,
    MessageStatus,
    RetryResult,
)
from app.schemas.tracking import DeliveryEventType
from app.services.batch_rate_limiter import calculate_total_batches, calculate_wait_time, partition
from app.services.campaign_state import is_terminal, transition
from app.services.channel_senders import SendResult, SenderResolver, get_channel_sender
from app.services.event_tracker import reserve_sent_event, settle_sent_event
from app.services.progress_broadcaster import ProgressBroadcaster, progress_broadcaster
from app.services.progress_store import ProgressStore, to_progress_response
from app.services.recipient_provider import Recipient, RecipientProvider
from app.services.retry_manager import RetryManager, send_safely
from app.services.tracking_tokens import instrument_email_body
from app.services.webhook_dispatcher import WebhookDispatcher, webhook_dispatcher
from app.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _RunContext:
    tenant_id: str
    channel: CampaignChannel
    subject: Optional[str]
    body: str
    batch_size: int
    rate_limit_per_minute: int
    completed_batches: int


@dataclass(frozen=True)
class _Outcome:
    recipient: str
    event_id: int
    result: SendResult
    elapsed_ms: int


class CampaignExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        sender_resolver: SenderResolver = get_channel_sender,
        recipient_provider: Optional[RecipientProvider] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = ProgressStore(session_factory)
        self._sender_resolver = sender_resolver
        self._recipients = recipient_provider or RecipientProvider(session_factory)
        self._broadcaster = broadcaster or progress_broadcaster
        self._webhooks = webhooks or webhook_dispatcher
        self._sleep = sleep
        self._retry_manager = RetryManager(self.store, self._recipients, sender_resolver)
        # Campaigns whose run loop will still look at the status again
        self._active: Set[int] = set()
        # Most recent run task per campaign
        self._tasks: Dict[int, asyncio.Task] = {}

    # Control operations

    async def start(
        self,
        campaign_id: int,
        tenant_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        rate_limit_per_minute: Optional[int] = None,
    ) -> CampaignProgressResponse:
        """Start a draft or scheduled campaign now. Returns once the run is launched."""
        batch_size = self._batch_size(batch_size)
        rate = self._rate(rate_limit_per_minute)

        async def begin(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            current = CampaignStatus(campaign.status)
            if current not in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED):
                raise InvalidStateError(
                    f"Campaign {campaign.id} can only be started from draft or scheduled, not {current.value}"
                )
            transition(current, CampaignStatus.RUNNING)
            now = utcnow()
            if progress is None:
                progress = CampaignProgress(campaign_id=campaign.id, tenant_id=campaign.tenant_id)
                db.add(progress)
            progress.status = CampaignStatus.RUNNING.value
            progress.batch_size = batch_size
            progress.rate_limit_per_minute = rate
            progress.started_at = now
            progress.completed_at = None
            progress.error_message = None
            campaign.status = CampaignStatus.RUNNING.value
            campaign.started_at = now
            await db.flush()
            return to_progress_response(campaign.id, progress)

        async with self.store.lock(campaign_id):
            snapshot = await self.store.mutate_locked(campaign_id, begin, tenant_id)
            self._spawn_locked(campaign_id)

        logger.info(
            f"Campaign {campaign_id} started",
            extra={"campaign_id": campaign_id, "batch_size": batch_size, "rate_limit_per_minute": rate},
        )
        return snapshot

    async def start_claimed(self, campaign_id: int) -> bool:
        """
        Launch a scheduled campaign whose progress row the poller already
        claimed (moved to running). Returns False if the campaign was no longer
        scheduled.
        """

        async def begin(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]) -> bool:
            if campaign.status != CampaignStatus.SCHEDULED.value:
                logger.warning(
                    f"Claimed campaign {campaign.id} is {campaign.status}; not launching",
                    extra={"campaign_id": campaign.id},
                )
                if progress is not None and progress.status == CampaignStatus.RUNNING.value:
                    # Hand the claim back: the row follows the campaign again
                    progress.status = campaign.status
                return False
            now = utcnow()
            campaign.status = transition(CampaignStatus.SCHEDULED, CampaignStatus.RUNNING).value
            campaign.started_at = now
            if progress is not None:
                progress.status = CampaignStatus.RUNNING.value
                progress.started_at = now
            return True

        async with self.store.lock(campaign_id):
            launched = await self.store.mutate_locked(campaign_id, begin)
            if launched:
                self._spawn_locked(campaign_id)
        return launched

    async def schedule(
        self,
        campaign_id: int,
        scheduled_time: datetime,
        tenant_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        rate_limit_per_minute: Optional[int] = None,
    ) -> CampaignProgressResponse:
        scheduled_time = ensure_utc(scheduled_time)
        if scheduled_time <= utcnow():
            raise ValidationError("Scheduled time must be in the future")
        batch_size = self._batch_size(batch_size)
        rate = self._rate(rate_limit_per_minute)

        async def plan(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            campaign.status = transition(campaign.status, CampaignStatus.SCHEDULED).value
            campaign.scheduled_at = scheduled_time
            if progress is None:
                progress = CampaignProgress(campaign_id=campaign.id, tenant_id=campaign.tenant_id)
                db.add(progress)
            progress.status = CampaignStatus.SCHEDULED.value
            progress.scheduled_time = scheduled_time
            progress.batch_size = batch_size
            progress.rate_limit_per_minute = rate
            await db.flush()
            return to_progress_response(campaign.id, progress)

        snapshot = await self.store.mutate(campaign_id, plan, tenant_id)
        logger.info(
            f"Campaign {campaign_id} scheduled for {scheduled_time.isoformat()}",
            extra={"campaign_id": campaign_id},
        )
        return snapshot

    async def pause(self, campaign_id: int, tenant_id: Optional[str] = None) -> CampaignProgressResponse:
        async def hold(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            campaign.status = transition(campaign.status, CampaignStatus.PAUSED).value
            if progress is not None:
                progress.status = CampaignStatus.PAUSED.value
                progress.paused_at = utcnow()
            return to_progress_response(campaign.id, progress)

        snapshot = await self.store.mutate(campaign_id, hold, tenant_id)
        logger.info(f"Campaign {campaign_id} paused", extra={"campaign_id": campaign_id})
        await self._publish(snapshot)
        return snapshot

    async def resume(self, campaign_id: int, tenant_id: Optional[str] = None) -> CampaignProgressResponse:
        async def proceed(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            campaign.status = transition(campaign.status, CampaignStatus.RUNNING).value
            if progress is not None:
                progress.status = CampaignStatus.RUNNING.value
            return to_progress_response(campaign.id, progress)

        async with self.store.lock(campaign_id):
            snapshot = await self.store.mutate_locked(campaign_id, proceed, tenant_id)
            self._spawn_locked(campaign_id)

        logger.info(f"Campaign {campaign_id} resumed", extra={"campaign_id": campaign_id})
        await self._publish(snapshot)
        return snapshot

    async def cancel(self, campaign_id: int, tenant_id: Optional[str] = None) -> CampaignProgressResponse:
        async def stop(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            campaign.status = transition(campaign.status, CampaignStatus.CANCELLED).value
            now = utcnow()
            campaign.completed_at = now
            if progress is not None:
                progress.status = CampaignStatus.CANCELLED.value
                progress.completed_at = now
                progress.emails_in_progress = 0
            return to_progress_response(campaign.id, progress)

        snapshot = await self.store.mutate(campaign_id, stop, tenant_id)
        logger.info(f"Campaign {campaign_id} cancelled", extra={"campaign_id": campaign_id})
        await self._publish(snapshot)
        return snapshot

    async def retry_failed(self, campaign_id: int, tenant_id: Optional[str] = None) -> RetryResult:
        return await self._retry_manager.retry_failed(campaign_id, tenant_id)

    async def get_progress(self, campaign_id: int, tenant_id: Optional[str] = None) -> CampaignProgressResponse:
        _, progress = await self.store.read(campaign_id, tenant_id)
        return to_progress_response(campaign_id, progress)

    async def join(self, campaign_id: int) -> None:
        """Wait until the current run task of a campaign has finished."""
        task = self._tasks.get(campaign_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight runs and park them as paused so a later resume picks them up."""
        interrupted = {cid: task for cid, task in self._tasks.items() if not task.done()}
        for task in interrupted.values():
            task.cancel()
        if interrupted:
            await asyncio.gather(*interrupted.values(), return_exceptions=True)
        for campaign_id in interrupted:
            await self._suspend(campaign_id)
        logger.info(f"Campaign executor stopped ({len(interrupted)} runs interrupted)")

    async def _suspend(self, campaign_id: int) -> None:
        async def park(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            if progress is None or progress.status != CampaignStatus.RUNNING.value:
                return False
            progress.status = transition(progress.status, CampaignStatus.PAUSED).value
            progress.paused_at = utcnow()
            progress.emails_in_progress = 0
            if campaign.status == CampaignStatus.RUNNING.value:
                campaign.status = CampaignStatus.PAUSED.value
            # Reservations for sends that never returned
            await db.execute(
                delete(DeliveryEvent)
                .where(
                    DeliveryEvent.campaign_id == campaign.id,
                    DeliveryEvent.event_type == DeliveryEventType.SENT.value,
                    DeliveryEvent.processed.is_(False),
                )
                .execution_options(synchronize_session=False)
            )
            return True

        try:
            parked = await self.store.mutate(campaign_id, park)
        except Exception as e:
            logger.error(
                f"Could not pause interrupted campaign {campaign_id}: {e}",
                extra={"campaign_id": campaign_id},
                exc_info=True,
            )
            return
        if parked:
            logger.info(
                f"Campaign {campaign_id} paused by shutdown; resume to continue",
                extra={"campaign_id": campaign_id},
            )

    def is_running(self, campaign_id: int) -> bool:
        task = self._tasks.get(campaign_id)
        return task is not None and not task.done()

    # Run loop

    def _spawn_locked(self, campaign_id: int) -> None:
        if campaign_id in self._active and self.is_running(campaign_id):
            # The live loop re-reads status before its next batch and carries on
            return
        self._active.add(campaign_id)
        task = asyncio.create_task(self._run(campaign_id), name=f"campaign-run-{campaign_id}")
        self._tasks[campaign_id] = task
        task.add_done_callback(lambda finished, cid=campaign_id: self._forget(cid, finished))

    def _forget(self, campaign_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(campaign_id) is task:
            del self._tasks[campaign_id]
            self._active.discard(campaign_id)

    async def _run(self, campaign_id: int) -> None:
        try:
            await self._execute(campaign_id)
        except asyncio.CancelledError:
            logger.info(f"Run of campaign {campaign_id} interrupted", extra={"campaign_id": campaign_id})
            raise
        except Exception as e:
            error = e if isinstance(e, ExecutionError) else ExecutionError(str(e) or type(e).__name__)
            logger.error(
                f"Campaign {campaign_id} failed: {error}",
                extra={"campaign_id": campaign_id},
                exc_info=True,
            )
            await self._fail(campaign_id, str(error))

    async def _execute(self, campaign_id: int) -> None:
        context = await self._load_context(campaign_id)
        audience = await self._recipients.get_active_recipients(context.tenant_id, context.channel)
        already_sent = await self._logged_recipients(campaign_id)
        pending = [recipient for recipient in audience if recipient.address not in already_sent]

        batches = list(partition(pending, context.batch_size))
        total_batches = context.completed_batches + calculate_total_batches(len(pending), context.batch_size)

        async def size_run(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            progress = self._require_progress(campaign, progress)
            progress.total_recipients = (progress.emails_sent or 0) + len(pending)
            progress.total_batches = total_batches
            campaign.total_recipients = progress.total_recipients

        await self.store.mutate(campaign_id, size_run)
        logger.info(
            f"Campaign {campaign_id}: {len(pending)} recipients in {len(batches)} batches",
            extra={
                "campaign_id": campaign_id,
                "recipients": len(pending),
                "skipped_already_sent": len(audience) - len(pending),
                "batches": len(batches),
            },
        )

        sender = self._sender_resolver(context.channel)
        wait = calculate_wait_time(context.rate_limit_per_minute, context.batch_size)

        for index, batch in enumerate(batches):
            if not await self._still_running(campaign_id):
                return
            batch_number = context.completed_batches + index + 1
            event_ids = await self._open_batch(campaign_id, batch)

            succeeded = 0
            for recipient, event_id in zip(batch, event_ids):
                outcome = await self._send(sender, context, recipient, event_id)
                await self.store.mutate(campaign_id, self._log_outcome(batch_number, context, outcome))
                succeeded += 1 if outcome.result.success else 0

            snapshot = await self.store.mutate(campaign_id, self._close_batch(batch_number))
            await self._publish(snapshot)
            logger.info(
                f"Campaign {campaign_id} batch {batch_number}/{total_batches} sent",
                extra={
                    "campaign_id": campaign_id,
                    "batch_number": batch_number,
                    "succeeded": succeeded,
                    "failed": len(batch) - succeeded,
                },
            )

            if index < len(batches) - 1 and wait.total_seconds() > 0:
                await self._sleep(wait.total_seconds())

        await self._complete(campaign_id)

    async def _load_context(self, campaign_id: int) -> _RunContext:
        campaign, progress = await self.store.read(campaign_id)
        if progress is None:
            raise ExecutionError(f"Campaign {campaign_id} has no progress record")
        return _RunContext(
            tenant_id=campaign.tenant_id,
            channel=CampaignChannel(campaign.channel),
            subject=campaign.subject,
            body=campaign.body or "",
            batch_size=progress.batch_size or settings.CAMPAIGN_DEFAULT_BATCH_SIZE,
            rate_limit_per_minute=progress.rate_limit_per_minute or 0,
            completed_batches=progress.current_batch_number or 0,
        )

    async def _logged_recipients(self, campaign_id: int) -> Set[str]:
        async with self.store.session_factory() as db:
            result = await db.execute(
                select(MessageLog.recipient).where(MessageLog.campaign_id == campaign_id)
            )
            return set(result.scalars().all())

    async def _still_running(self, campaign_id: int) -> bool:
        async with self.store.lock(campaign_id):
            _, progress = await self.store.read(campaign_id)
            running = progress is not None and progress.status == CampaignStatus.RUNNING.value
            if not running:
                self._active.discard(campaign_id)
                logger.info(
                    f"Campaign {campaign_id} is {progress.status if progress else 'missing'}; stopping run",
                    extra={"campaign_id": campaign_id},
                )
            return running

    async def _open_batch(self, campaign_id: int, batch: List[Recipient]) -> List[int]:
        async def reserve(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            progress = self._require_progress(campaign, progress)
            progress.emails_in_progress = len(batch)
            events = [await reserve_sent_event(db, campaign.id, recipient.address) for recipient in batch]
            return [event.id for event in events]

        return await self.store.mutate(campaign_id, reserve)

    async def _send(self, sender, context: _RunContext, recipient: Recipient, event_id: int) -> _Outcome:
        body = context.body
        if context.channel == CampaignChannel.EMAIL:
            body = instrument_email_body(body, event_id, recipient.address)
        started = time.monotonic()
        result = await send_safely(sender, recipient.address, context.subject, body)
        return _Outcome(
            recipient=recipient.address,
            event_id=event_id,
            result=result,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _log_outcome(batch_number: int, context: _RunContext, outcome: _Outcome):
        """Record one send as soon as it returns, so an interrupted run never repeats it."""

        async def persist(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            progress = CampaignExecutor._require_progress(campaign, progress)
            ok = outcome.result.success
            now = utcnow()
            db.add(MessageLog(
                campaign_id=campaign.id,
                batch_number=batch_number,
                recipient=outcome.recipient,
                channel=context.channel.value,
                status=(MessageStatus.SENT if ok else MessageStatus.FAILED).value,
                retry_count=0,
                max_retries=settings.CAMPAIGN_MAX_RETRIES,
                error_message=None if ok else outcome.result.error,
                provider_message_id=outcome.result.message_id,
                processing_time_ms=outcome.elapsed_ms,
                sent_at=now if ok else None,
                timestamp=now,
            ))
            await settle_sent_event(db, outcome.event_id, ok, outcome.result.message_id)

            progress.emails_sent = (progress.emails_sent or 0) + 1
            if ok:
                progress.emails_success = (progress.emails_success or 0) + 1
            else:
                progress.emails_failed = (progress.emails_failed or 0) + 1
            progress.emails_in_progress = max(0, (progress.emails_in_progress or 0) - 1)
            campaign.sent_count = progress.emails_success

        return persist

    @staticmethod
    def _close_batch(batch_number: int):
        async def persist(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            progress = CampaignExecutor._require_progress(campaign, progress)
            progress.emails_in_progress = 0
            progress.current_batch_number = batch_number
            progress.last_batch_sent_at = utcnow()
            return to_progress_response(campaign.id, progress)

        return persist

    async def _complete(self, campaign_id: int) -> None:
        async def finish(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            progress = self._require_progress(campaign, progress)
            if progress.status != CampaignStatus.RUNNING.value:
                return None
            now = utcnow()
            progress.status = transition(progress.status, CampaignStatus.COMPLETED).value
            progress.completed_at = now
            progress.emails_in_progress = 0
            campaign.status = CampaignStatus.COMPLETED.value
            campaign.completed_at = now
            campaign.total_recipients = progress.total_recipients
            campaign.sent_count = progress.emails_success
            return to_progress_response(campaign.id, progress), campaign.tenant_id

        async with self.store.lock(campaign_id):
            outcome = await self.store.mutate_locked(campaign_id, finish)
            self._active.discard(campaign_id)

        if outcome is None:
            logger.info(f"Campaign {campaign_id} left running state before completion")
            return

        snapshot, tenant_id = outcome
        logger.info(
            f"Campaign {campaign_id} completed",
            extra={
                "campaign_id": campaign_id,
                "emails_sent": snapshot.emails_sent,
                "emails_failed": snapshot.emails_failed,
            },
        )
        await self._publish(snapshot)
        self._webhooks.dispatch(tenant_id, "campaign.completed", {
            "campaign_id": campaign_id,
            "total_recipients": snapshot.total_recipients,
            "emails_sent": snapshot.emails_sent,
            "emails_success": snapshot.emails_success,
            "emails_failed": snapshot.emails_failed,
        })

    async def _fail(self, campaign_id: int, message: str) -> None:
        async def mark_failed(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]):
            now = utcnow()
            if not is_terminal(campaign.status):
                campaign.status = CampaignStatus.FAILED.value
                campaign.completed_at = now
            if progress is not None and not is_terminal(progress.status):
                progress.status = CampaignStatus.FAILED.value
                progress.error_message = message
                progress.completed_at = now
                progress.emails_in_progress = 0
            return to_progress_response(campaign.id, progress)

        try:
            async with self.store.lock(campaign_id):
                snapshot = await self.store.mutate_locked(campaign_id, mark_failed)
                self._active.discard(campaign_id)
            await self._publish(snapshot)
        except Exception as e:
            logger.error(
                f"Could not record failure of campaign {campaign_id}: {e}",
                extra={"campaign_id": campaign_id},
                exc_info=True,
            )

    async def _publish(self, snapshot: CampaignProgressResponse) -> None:
        try:
            await self._broadcaster.publish(snapshot.campaign_id, snapshot.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Progress broadcast failed for campaign {snapshot.campaign_id}: {e}")

    @staticmethod
    def _require_progress(campaign: Campaign, progress: Optional[CampaignProgress]) -> CampaignProgress:
        if progress is None:
            raise ExecutionError(f"Campaign {campaign.id} has no progress record")
        return progress

    @staticmethod
    def _batch_size(batch_size: Optional[int]) -> int:
        size = batch_size or settings.CAMPAIGN_DEFAULT_BATCH_SIZE
        if size <= 0:
            raise ValidationError("Batch size must be positive")
        return size

    @staticmethod
    def _rate(rate_limit_per_minute: Optional[int]) -> int:
        if rate_limit_per_minute is None:
            return settings.CAMPAIGN_DEFAULT_RATE_LIMIT_PER_MINUTE
        return max(0, rate_limit_per_minute)


_executor: Optional[CampaignExecutor] = None


def get_campaign_executor() -> CampaignExecutor:
    """Process-wide executor shared by the API and the scheduled poller."""
    global _executor
    if _executor is None:
        _executor = CampaignExecutor()
    return _executor
