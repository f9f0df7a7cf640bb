"""
Failed message retries.

Re-sends MessageLog rows that failed and still have retry budget
(retry_count < max_retries). Rows that exhausted their budget are never
touched. A row is claimed (failed -> pending) before it is re-sent, so
concurrent retry passes never send the same message twice. Each attempt
increments retry_count; a success moves the message from the failed to the
success counters of the campaign and its progress.
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.campaign import Campaign
from app.models.campaign_progress import CampaignProgress
from app.models.message_log import MessageLog
from app.schemas.campaign import CampaignChannel, MessageStatus, RetryResult
from app.services.channel_senders import SendResult, SenderResolver, get_channel_sender
from app.services.event_tracker import reserve_sent_event, settle_sent_event
from app.services.progress_store import ProgressStore
from app.services.recipient_provider import RecipientProvider
from app.services.tracking_tokens import instrument_email_body
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _RetryCandidate:
    log_id: int
    recipient: str
    batch_number: int


async def send_safely(sender, recipient: str, subject: Optional[str], body: str) -> SendResult:
    """Call a channel sender, turning raised errors into a failed result."""
    try:
        return await sender.send(recipient, subject, body)
    except Exception as e:
        logger.warning(f"Send to {recipient} raised: {e}")
        return SendResult(success=False, error=str(e) or type(e).__name__)


class RetryManager:
    def __init__(
        self,
        store: ProgressStore,
        recipient_provider: Optional[RecipientProvider] = None,
        sender_resolver: SenderResolver = get_channel_sender,
    ):
        self._store = store
        self._recipients = recipient_provider or RecipientProvider(store.session_factory)
        self._sender_resolver = sender_resolver

    async def retry_failed(self, campaign_id: int, tenant_id: Optional[str] = None) -> RetryResult:
        campaign, _ = await self._store.read(campaign_id, tenant_id)
        channel = CampaignChannel(campaign.channel)
        candidates = await self._candidates(campaign_id)
        summary = RetryResult(campaign_id=campaign_id)

        if not candidates:
            logger.info(f"No retryable messages for campaign {campaign_id}")
            return summary

        sender = self._sender_resolver(channel)
        for candidate in candidates:
            recipient = await self._recipients.find_recipient(campaign.tenant_id, candidate.recipient, channel)
            if recipient is None:
                summary.skipped += 1
                logger.info(
                    "Skipping retry for recipient no longer in audience",
                    extra={"campaign_id": campaign_id, "message_log_id": candidate.log_id},
                )
                continue

            if not await self._claim(candidate.log_id):
                summary.skipped += 1
                logger.info(
                    "Skipping retry claimed by another pass",
                    extra={"campaign_id": campaign_id, "message_log_id": candidate.log_id},
                )
                continue

            try:
                result = await self._resend(campaign, channel, sender, candidate)
            except Exception:
                await self._release(candidate.log_id)
                raise

            summary.attempted += 1
            if result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

        logger.info(
            f"Retry pass finished for campaign {campaign_id}",
            extra={
                "campaign_id": campaign_id,
                "attempted": summary.attempted,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
            },
        )
        return summary

    async def _candidates(self, campaign_id: int) -> List[_RetryCandidate]:
        async with self._store.session_factory() as db:
            result = await db.execute(
                select(MessageLog)
                .where(
                    MessageLog.campaign_id == campaign_id,
                    MessageLog.status == MessageStatus.FAILED.value,
                    MessageLog.retry_count < MessageLog.max_retries,
                )
                .order_by(MessageLog.id)
            )
            return [
                _RetryCandidate(log_id=log.id, recipient=log.recipient, batch_number=log.batch_number)
                for log in result.scalars().all()
            ]

    async def _claim(self, log_id: int) -> bool:
        """Move a retryable row from failed to pending; only one pass can win it."""
        async with self._store.session_factory() as db:
            result = await db.execute(
                update(MessageLog)
                .where(
                    MessageLog.id == log_id,
                    MessageLog.status == MessageStatus.FAILED.value,
                    MessageLog.retry_count < MessageLog.max_retries,
                )
                .values(status=MessageStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def _release(self, log_id: int) -> None:
        async with self._store.session_factory() as db:
            await db.execute(
                update(MessageLog)
                .where(MessageLog.id == log_id, MessageLog.status == MessageStatus.PENDING.value)
                .values(status=MessageStatus.FAILED.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _resend(
        self, campaign: Campaign, channel: CampaignChannel, sender, candidate: _RetryCandidate
    ) -> SendResult:
        event_id = await self._reserve_event(campaign.id, candidate.recipient)
        body = campaign.body or ""
        if channel == CampaignChannel.EMAIL:
            body = instrument_email_body(body, event_id, candidate.recipient)

        started = time.monotonic()
        result = await send_safely(sender, candidate.recipient, campaign.subject, body)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        await self._store.mutate(campaign.id, self._apply_outcome(candidate, event_id, result, elapsed_ms))
        return result

    async def _reserve_event(self, campaign_id: int, email: str) -> int:
        async with self._store.session_factory() as db:
            event = await reserve_sent_event(db, campaign_id, email)
            await db.commit()
            return event.id

    @staticmethod
    def _apply_outcome(candidate: _RetryCandidate, event_id: int, result: SendResult, elapsed_ms: int):
        async def apply(db: AsyncSession, campaign: Campaign, progress: Optional[CampaignProgress]) -> None:
            log = await db.get(MessageLog, candidate.log_id)
            if log is None:
                await settle_sent_event(db, event_id, False)
                return

            now = utcnow()
            log.retry_count = (log.retry_count or 0) + 1
            log.timestamp = now
            log.processing_time_ms = elapsed_ms
            await settle_sent_event(db, event_id, result.success, result.message_id)

            if not result.success:
                log.status = MessageStatus.FAILED.value
                log.error_message = result.error
                return

            log.status = MessageStatus.SENT.value
            log.sent_at = now
            log.error_message = None
            log.provider_message_id = result.message_id
            campaign.sent_count = (campaign.sent_count or 0) + 1
            if progress is not None:
                progress.emails_success = (progress.emails_success or 0) + 1
                progress.emails_failed = max(0, (progress.emails_failed or 0) - 1)

        return apply
