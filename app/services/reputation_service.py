"""
Subscriber reputation.

Bounces and complaints lower a subscriber's score; hard failures and scores
under REPUTATION_SUPPRESSION_THRESHOLD take the subscriber out of future
audiences.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.subscriber import Subscriber
from app.schemas.tracking import BounceType, DeliveryEventType

logger = logging.getLogger(__name__)

BOUNCE_PENALTIES = {
    BounceType.HARD_BOUNCE: 100,
    BounceType.INVALID_EMAIL: 100,
    BounceType.BLOCKED: 30,
    BounceType.SPAM: 30,
    BounceType.SOFT_BOUNCE: 10,
    BounceType.MAILBOX_FULL: 10,
    BounceType.UNKNOWN: 15,
}
COMPLAINT_PENALTY = 50

# Bounce types that remove the address immediately
PERMANENT_BOUNCES = frozenset({BounceType.HARD_BOUNCE, BounceType.INVALID_EMAIL})


class ReputationService:
    def __init__(self, suppression_threshold: Optional[int] = None):
        self.suppression_threshold = (
            suppression_threshold
            if suppression_threshold is not None
            else settings.REPUTATION_SUPPRESSION_THRESHOLD
        )

    async def update(
        self,
        db: AsyncSession,
        email: str,
        event_type: DeliveryEventType,
        tenant_id: str,
        bounce_type: Optional[BounceType] = None,
    ) -> int:
        """Apply the penalty for a bounce or complaint to the tenant's subscribers with ``email``.

        Returns the number of subscribers changed. Changes are added to ``db``;
        the caller commits.
        """
        event_type = DeliveryEventType(event_type)
        if event_type == DeliveryEventType.BOUNCED:
            bounce_type = BounceType(bounce_type) if bounce_type else BounceType.UNKNOWN
            penalty = BOUNCE_PENALTIES[bounce_type]
        elif event_type == DeliveryEventType.COMPLAINED:
            penalty = COMPLAINT_PENALTY
        else:
            return 0

        subscribers = (await db.execute(
            select(Subscriber).where(Subscriber.tenant_id == tenant_id, Subscriber.email == email)
        )).scalars().all()

        for subscriber in subscribers:
            subscriber.reputation_score = max(0, (subscriber.reputation_score or 0) - penalty)
            if subscriber.status != "active":
                continue
            if event_type == DeliveryEventType.BOUNCED and bounce_type in PERMANENT_BOUNCES:
                subscriber.status = "bounced"
            elif subscriber.reputation_score < self.suppression_threshold:
                subscriber.status = "suppressed"

        if subscribers:
            logger.info(
                "Reputation updated",
                extra={
                    "tenant_id": tenant_id,
                    "event_type": event_type.value,
                    "bounce_type": bounce_type.value if bounce_type else None,
                    "subscribers": len(subscribers),
                },
            )
        return len(subscribers)

    async def unsubscribe(self, db: AsyncSession, email: str, tenant_id: str) -> int:
        subscribers = (await db.execute(
            select(Subscriber).where(
                Subscriber.tenant_id == tenant_id,
                Subscriber.email == email,
                Subscriber.status == "active",
            )
        )).scalars().all()
        for subscriber in subscribers:
            subscriber.status = "unsubscribed"
        return len(subscribers)
