"""
Delivery Event Tracker

Ingests asynchronous delivery signals (opens, clicks, unsubscribes, provider
callbacks) for messages a campaign has sent.

Recording is best effort: a failure to store one signal is logged and never
reaches the caller. Each recorded signal:
1. Appends a DeliveryEvent pointing at the SENT event it refers to
2. Bumps the matching campaign counter (opens and clicks once per recipient)
3. Feeds bounces/complaints to subscriber reputation and unsubscribes to the
   subscriber, scoped to the tenant of the campaign that sent the message
4. Writes the status folded from the stored events to the shared status cache

Signals whose reference is not a known SENT event are stored for audit only.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session_maker
from app.models.campaign import Campaign
from app.models.delivery_event import DeliveryEvent
from app.models.engagement import FirstEngagement
from app.models.message_log import MessageLog
from app.schemas.tracking import BounceType, DeliveryEventType, DeliveryStatus
from app.services.delivery_status import fold_events
from app.services.reputation_service import ReputationService
from app.services.status_cache import DeliveryStatusCache, get_status_cache
from app.services.webhook_dispatcher import WebhookDispatcher, webhook_dispatcher
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

# INSERT ... ON CONFLICT DO NOTHING per supported database
_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

COUNTER_COLUMNS = {
    DeliveryEventType.DELIVERED: "delivered_count",
    DeliveryEventType.OPENED: "opened_count",
    DeliveryEventType.CLICKED: "clicked_count",
    DeliveryEventType.BOUNCED: "bounced_count",
    DeliveryEventType.COMPLAINED: "complained_count",
    DeliveryEventType.UNSUBSCRIBED: "unsubscribed_count",
}

# Counted once per recipient per campaign; every event is still stored
UNIQUE_PER_RECIPIENT = frozenset({DeliveryEventType.OPENED, DeliveryEventType.CLICKED})


async def reserve_sent_event(db: AsyncSession, campaign_id: int, email: str) -> DeliveryEvent:
    """Add an unconfirmed SENT event so its id can go into tracking links before sending."""
    event = DeliveryEvent(
        campaign_id=campaign_id,
        email=email,
        event_type=DeliveryEventType.SENT.value,
        processed=False,
    )
    db.add(event)
    await db.flush()
    return event


async def settle_sent_event(
    db: AsyncSession, event_id: int, success: bool, message_id: Optional[str] = None
) -> None:
    """Confirm a reserved SENT event after a successful send, drop it otherwise."""
    event = await db.get(DeliveryEvent, event_id)
    if event is None:
        return
    if success:
        event.processed = True
        if message_id:
            event.event_data = {"provider_message_id": message_id}
    else:
        await db.delete(event)


class EventTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        status_cache: Optional[DeliveryStatusCache] = None,
        reputation: Optional[ReputationService] = None,
        webhooks: Optional[WebhookDispatcher] = None,
    ):
        self._session_factory = session_factory
        self.status_cache = status_cache or get_status_cache()
        self._reputation = reputation or ReputationService()
        self._webhooks = webhooks or webhook_dispatcher

    async def record(
        self,
        event_ref: int,
        event_type: DeliveryEventType,
        email: str,
        detail: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[DeliveryStatus]:
        """Store one delivery signal. Returns the message's status, or None for an unknown reference."""
        try:
            return await self._record(
                event_ref, DeliveryEventType(event_type), email, detail or {}, ip_address, user_agent
            )
        except Exception as e:
            logger.error(
                f"Failed to record {event_type} event for ref {event_ref}: {e}",
                extra={"event_ref": event_ref, "email": email},
                exc_info=True,
            )
            return None

    async def _record(
        self,
        event_ref: int,
        event_type: DeliveryEventType,
        email: str,
        detail: Dict[str, Any],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Optional[DeliveryStatus]:
        tenant_id = None
        status = None
        async with self._session_factory() as db:
            source = await db.get(DeliveryEvent, event_ref)
            anchored = source is not None and source.event_type == DeliveryEventType.SENT.value
            campaign_id = source.campaign_id if anchored else None

            if not anchored:
                logger.warning(
                    f"Tracking event {event_type.value} references unknown sent event {event_ref}",
                    extra={"event_ref": event_ref},
                )

            db.add(DeliveryEvent(
                campaign_id=campaign_id,
                source_event_id=event_ref if anchored else None,
                email=email,
                event_type=event_type.value,
                event_data=detail or None,
                ip_address=ip_address,
                user_agent=user_agent,
                processed=True,
            ))

            if campaign_id is not None:
                campaign = await db.get(Campaign, campaign_id)
                tenant_id = campaign.tenant_id if campaign else None

                count_it = event_type in COUNTER_COLUMNS
                if count_it and event_type in UNIQUE_PER_RECIPIENT:
                    count_it = await self._claim_first_engagement(db, campaign_id, email, event_type)
                if count_it:
                    column = getattr(Campaign, COUNTER_COLUMNS[event_type])
                    await db.execute(
                        update(Campaign)
                        .where(Campaign.id == campaign_id)
                        .values({column: column + 1})
                        .execution_options(synchronize_session=False)
                    )
                if event_type == DeliveryEventType.DELIVERED:
                    await db.execute(
                        update(MessageLog)
                        .where(
                            MessageLog.campaign_id == campaign_id,
                            MessageLog.recipient == email,
                            MessageLog.status == "sent",
                        )
                        .values(status="delivered")
                        .execution_options(synchronize_session=False)
                    )

            # Subscriber state is only touched when the signal is tied to a tenant's campaign
            if tenant_id is not None:
                if event_type in (DeliveryEventType.BOUNCED, DeliveryEventType.COMPLAINED):
                    await self._reputation.update(
                        db, email, event_type, tenant_id, bounce_type=detail.get("bounce_type")
                    )
                elif event_type == DeliveryEventType.UNSUBSCRIBED:
                    await self._reputation.unsubscribe(db, email, tenant_id)

            if anchored:
                status = await self._stored_status(db, event_ref)

            await db.commit()

        logger.info(
            f"Recorded {event_type.value} event",
            extra={"event_ref": event_ref, "campaign_id": campaign_id},
        )

        if event_type == DeliveryEventType.BOUNCED and tenant_id is not None:
            self._webhooks.dispatch(tenant_id, "email.bounced", {
                "campaign_id": campaign_id,
                "email": email,
                "bounce_type": detail.get("bounce_type"),
                "reason": detail.get("reason"),
            })

        if status is not None:
            await self.status_cache.set(event_ref, status)
        return status

    @staticmethod
    async def _claim_first_engagement(
        db: AsyncSession, campaign_id: int, email: str, event_type: DeliveryEventType
    ) -> bool:
        """Insert the first-engagement row; True only for the insert that created it."""
        insert = _DIALECT_INSERTS[db.get_bind().dialect.name]
        result = await db.execute(
            insert(FirstEngagement.__table__)
            .values(campaign_id=campaign_id, email=email, event_type=event_type.value, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["campaign_id", "email", "event_type"])
        )
        return result.rowcount == 1

    @staticmethod
    async def _stored_status(db: AsyncSession, event_ref: int) -> Optional[DeliveryStatus]:
        """Fold the stored events of one message; None if the ref is not a SENT event."""
        source = await db.get(DeliveryEvent, event_ref)
        if source is None or source.event_type != DeliveryEventType.SENT.value:
            return None
        result = await db.execute(
            select(DeliveryEvent.event_type)
            .where(DeliveryEvent.source_event_id == event_ref)
            .order_by(DeliveryEvent.id)
        )
        return fold_events([DeliveryEventType.SENT, *result.scalars().all()])

    # Convenience wrappers

    async def track_open(self, event_ref: int, email: str, ip_address: str = None, user_agent: str = None):
        return await self.record(
            event_ref, DeliveryEventType.OPENED, email, ip_address=ip_address, user_agent=user_agent
        )

    async def track_click(
        self, event_ref: int, email: str, url: str, ip_address: str = None, user_agent: str = None
    ):
        return await self.record(
            event_ref, DeliveryEventType.CLICKED, email, {"url": url},
            ip_address=ip_address, user_agent=user_agent,
        )

    async def track_unsubscribe(self, event_ref: int, email: str, ip_address: str = None, user_agent: str = None):
        return await self.record(
            event_ref, DeliveryEventType.UNSUBSCRIBED, email, ip_address=ip_address, user_agent=user_agent
        )

    async def track_delivered(self, event_ref: int, email: str):
        return await self.record(event_ref, DeliveryEventType.DELIVERED, email)

    async def handle_bounce(
        self,
        event_ref: int,
        email: str,
        bounce_type: BounceType = BounceType.UNKNOWN,
        reason: Optional[str] = None,
    ):
        return await self.record(
            event_ref,
            DeliveryEventType.BOUNCED,
            email,
            {"bounce_type": BounceType(bounce_type).value, "reason": reason},
        )

    async def track_complaint(self, event_ref: int, email: str, reason: Optional[str] = None):
        return await self.record(
            event_ref, DeliveryEventType.COMPLAINED, email, {"reason": reason} if reason else None
        )

    # Queries

    async def get_delivery_status(self, event_ref: int) -> DeliveryStatus:
        """Cached status if known, otherwise derived from stored events; unknown refs are failed."""
        cached = await self.status_cache.get(event_ref)
        if cached is not None:
            return cached

        async with self._session_factory() as db:
            status = await self._stored_status(db, event_ref)
        if status is None:
            return DeliveryStatus.FAILED

        await self.status_cache.set(event_ref, status)
        return status

    async def get_bounced_emails(self, hours: int = 24) -> List[str]:
        since = utcnow() - timedelta(hours=hours)
        async with self._session_factory() as db:
            result = await db.execute(
                select(DeliveryEvent.email)
                .where(
                    DeliveryEvent.event_type == DeliveryEventType.BOUNCED.value,
                    DeliveryEvent.created_at >= since,
                )
                .distinct()
                .order_by(DeliveryEvent.email)
            )
            return list(result.scalars().all())


_tracker: Optional[EventTracker] = None


def get_event_tracker() -> EventTracker:
    """Process-wide tracker used by the tracking endpoints."""
    global _tracker
    if _tracker is None:
        _tracker = EventTracker()
    return _tracker
