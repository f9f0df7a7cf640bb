"""Resolves a tenant's active audience for a channel."""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session_maker
from app.models.subscriber import Subscriber
from app.schemas.campaign import CampaignChannel

logger = logging.getLogger(__name__)

ACTIVE = "active"


@dataclass(frozen=True)
class Recipient:
    subscriber_id: int
    address: str
    name: Optional[str] = None


def _address_column(channel: CampaignChannel):
    if CampaignChannel(channel) == CampaignChannel.EMAIL:
        return Subscriber.email
    return Subscriber.phone


class RecipientProvider:
    """Reads active subscribers; email campaigns use the email address, SMS/WhatsApp the phone."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_maker):
        self._session_factory = session_factory

    async def get_active_recipients(self, tenant_id: str, channel: CampaignChannel) -> List[Recipient]:
        column = _address_column(channel)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subscriber.id, column, Subscriber.name)
                .where(
                    Subscriber.tenant_id == tenant_id,
                    Subscriber.status == ACTIVE,
                    column.is_not(None),
                    column != "",
                )
                .order_by(Subscriber.id)
            )
            rows = result.all()

        # One message per address even if the address is listed twice
        seen = set()
        recipients = []
        for subscriber_id, address, name in rows:
            if address in seen:
                continue
            seen.add(address)
            recipients.append(Recipient(subscriber_id=subscriber_id, address=address, name=name))

        logger.info(
            "Resolved campaign audience",
            extra={"tenant_id": tenant_id, "channel": str(channel), "recipients": len(recipients)},
        )
        return recipients

    async def find_recipient(
        self, tenant_id: str, address: str, channel: CampaignChannel
    ) -> Optional[Recipient]:
        """Look up one still-active recipient by address."""
        column = _address_column(channel)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subscriber.id, column, Subscriber.name)
                .where(
                    Subscriber.tenant_id == tenant_id,
                    Subscriber.status == ACTIVE,
                    column == address,
                )
                .order_by(Subscriber.id)
                .limit(1)
            )
            row = result.first()
        if row is None:
            return None
        return Recipient(subscriber_id=row[0], address=row[1], name=row[2])
