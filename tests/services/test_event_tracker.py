"""
Tests for Delivery Event Tracker.
"""

import asyncio

import pytest
from unittest.mock import MagicMock
from sqlalchemy import select

from app.models import Campaign, DeliveryEvent, MessageLog, Subscriber
from app.schemas.tracking import BounceType, DeliveryEventType, DeliveryStatus
from app.services.event_tracker import EventTracker, reserve_sent_event, settle_sent_event
from app.services.status_cache import DeliveryStatusCache

from tests.fakes import UnreachableRedis


async def sent_event(session_factory, campaign_id, email):
    """Store a confirmed SENT event and return its id."""
    async with session_factory() as db:
        event = await reserve_sent_event(db, campaign_id, email)
        await settle_sent_event(db, event.id, True, "msg-1")
        await db.commit()
        return event.id


async def load_campaign(session_factory, campaign_id):
    async with session_factory() as db:
        return await db.get(Campaign, campaign_id)


async def load_subscriber(session_factory, email):
    async with session_factory() as db:
        return (await db.execute(select(Subscriber).where(Subscriber.email == email))).scalar_one()


async def subscriber_in(session_factory, tenant_id, email):
    async with session_factory() as db:
        return (await db.execute(
            select(Subscriber).where(Subscriber.tenant_id == tenant_id, Subscriber.email == email)
        )).scalar_one()


class TestOpensAndClicks:
    """Tests for engagement signals."""

    @pytest.mark.asyncio
    async def test_opens_counted_once_per_recipient(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        first = await tracker.track_open(ref, "alice@example.com", ip_address="10.0.0.1", user_agent="Mail/1.0")
        second = await tracker.track_open(ref, "alice@example.com")

        assert first == DeliveryStatus.OPENED
        assert second == DeliveryStatus.OPENED
        campaign = await load_campaign(session_factory, campaign_id)
        assert campaign.opened_count == 1

        async with session_factory() as db:
            opens = (await db.execute(
                select(DeliveryEvent).where(DeliveryEvent.event_type == "opened")
            )).scalars().all()
        assert len(opens) == 2
        assert all(event.source_event_id == ref for event in opens)
        assert opens[0].ip_address == "10.0.0.1"
        assert opens[0].user_agent == "Mail/1.0"

    @pytest.mark.asyncio
    async def test_click_advances_status_and_stores_url(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        await tracker.track_open(ref, "alice@example.com")
        status = await tracker.track_click(ref, "alice@example.com", "https://example.com/offer")

        assert status == DeliveryStatus.CLICKED
        assert await tracker.get_delivery_status(ref) == DeliveryStatus.CLICKED
        campaign = await load_campaign(session_factory, campaign_id)
        assert campaign.clicked_count == 1

        async with session_factory() as db:
            click = (await db.execute(
                select(DeliveryEvent).where(DeliveryEvent.event_type == "clicked")
            )).scalar_one()
        assert click.event_data == {"url": "https://example.com/offer"}

    @pytest.mark.asyncio
    async def test_open_after_click_keeps_clicked(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        await tracker.track_click(ref, "alice@example.com", "https://example.com")
        status = await tracker.track_open(ref, "alice@example.com")

        assert status == DeliveryStatus.CLICKED

    @pytest.mark.asyncio
    async def test_concurrent_opens_counted_once(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        results = await asyncio.gather(*(tracker.track_open(ref, "alice@example.com") for _ in range(5)))

        assert results == [DeliveryStatus.OPENED] * 5
        campaign = await load_campaign(session_factory, campaign_id)
        assert campaign.opened_count == 1
        async with session_factory() as db:
            opens = (await db.execute(
                select(DeliveryEvent).where(DeliveryEvent.event_type == "opened")
            )).scalars().all()
        assert len(opens) == 5

    @pytest.mark.asyncio
    async def test_first_click_counted_per_campaign(self, tracker, seed_campaign, session_factory):
        first_campaign = await seed_campaign(["alice@example.com"])
        second_campaign = await seed_campaign()
        first_ref = await sent_event(session_factory, first_campaign, "alice@example.com")
        second_ref = await sent_event(session_factory, second_campaign, "alice@example.com")

        await tracker.track_click(first_ref, "alice@example.com", "https://example.com/a")
        await tracker.track_click(first_ref, "alice@example.com", "https://example.com/b")
        await tracker.track_click(second_ref, "alice@example.com", "https://example.com/a")

        assert (await load_campaign(session_factory, first_campaign)).clicked_count == 1
        assert (await load_campaign(session_factory, second_campaign)).clicked_count == 1


class TestUnknownReferences:
    """Tests for signals that point at no known message."""

    @pytest.mark.asyncio
    async def test_orphan_event_is_stored_without_campaign(self, tracker, session_factory):
        status = await tracker.track_open(9999, "nobody@example.com")

        assert status is None
        async with session_factory() as db:
            event = (await db.execute(select(DeliveryEvent))).scalar_one()
        assert event.campaign_id is None
        assert event.source_event_id is None
        assert event.event_type == "opened"

    @pytest.mark.asyncio
    async def test_unknown_reference_reports_failed(self, tracker):
        assert await tracker.get_delivery_status(424242) == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_sent_message_without_signals(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        assert await tracker.get_delivery_status(ref) == DeliveryStatus.SENT

    @pytest.mark.asyncio
    async def test_orphan_bounce_leaves_subscribers_alone(self, tracker, seed_campaign, session_factory):
        await seed_campaign(["shared@example.com"], tenant_id="tenant-a")
        await seed_campaign(["shared@example.com"], tenant_id="tenant-b")

        status = await tracker.handle_bounce(999999, "shared@example.com", BounceType.HARD_BOUNCE)
        await tracker.track_complaint(999999, "shared@example.com")

        assert status is None
        for tenant_id in ("tenant-a", "tenant-b"):
            subscriber = await subscriber_in(session_factory, tenant_id, "shared@example.com")
            assert subscriber.status == "active"
            assert subscriber.reputation_score == 100

    @pytest.mark.asyncio
    async def test_orphan_unsubscribe_leaves_subscribers_alone(self, tracker, seed_campaign, session_factory):
        await seed_campaign(["shared@example.com"], tenant_id="tenant-a")
        await seed_campaign(["shared@example.com"], tenant_id="tenant-b")

        status = await tracker.track_unsubscribe(999999, "shared@example.com")

        assert status is None
        for tenant_id in ("tenant-a", "tenant-b"):
            subscriber = await subscriber_in(session_factory, tenant_id, "shared@example.com")
            assert subscriber.status == "active"


class TestProviderSignals:
    """Tests for delivered, bounce and complaint callbacks."""

    @pytest.mark.asyncio
    async def test_delivered_updates_message_log(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")
        async with session_factory() as db:
            db.add(MessageLog(campaign_id=campaign_id, batch_number=1, recipient="alice@example.com", status="sent"))
            await db.commit()

        status = await tracker.track_delivered(ref, "alice@example.com")

        assert status == DeliveryStatus.DELIVERED
        campaign = await load_campaign(session_factory, campaign_id)
        assert campaign.delivered_count == 1
        async with session_factory() as db:
            log = (await db.execute(select(MessageLog))).scalar_one()
        assert log.status == "delivered"

    @pytest.mark.asyncio
    async def test_hard_bounce_is_terminal_and_removes_subscriber(
        self, tracker, webhooks, seed_campaign, session_factory
    ):
        webhooks.dispatch = MagicMock()
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        status = await tracker.handle_bounce(ref, "alice@example.com", BounceType.HARD_BOUNCE, "No such user")
        later = await tracker.track_open(ref, "alice@example.com")

        assert status == DeliveryStatus.BOUNCED
        assert later == DeliveryStatus.BOUNCED
        subscriber = await load_subscriber(session_factory, "alice@example.com")
        assert subscriber.status == "bounced"
        assert subscriber.reputation_score == 0
        campaign = await load_campaign(session_factory, campaign_id)
        assert campaign.bounced_count == 1

        webhooks.dispatch.assert_called_once()
        tenant_id, event_type, payload = webhooks.dispatch.call_args.args
        assert tenant_id == "tenant-1"
        assert event_type == "email.bounced"
        assert payload["bounce_type"] == "hard_bounce"
        assert payload["reason"] == "No such user"

    @pytest.mark.asyncio
    async def test_soft_bounce_lowers_score_only(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        await tracker.handle_bounce(ref, "alice@example.com", BounceType.SOFT_BOUNCE)

        subscriber = await load_subscriber(session_factory, "alice@example.com")
        assert subscriber.status == "active"
        assert subscriber.reputation_score == 90

    @pytest.mark.asyncio
    async def test_repeated_complaints_suppress_subscriber(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        await tracker.track_complaint(ref, "alice@example.com")
        after_first = await load_subscriber(session_factory, "alice@example.com")
        await tracker.track_complaint(ref, "alice@example.com", reason="spam report")
        after_second = await load_subscriber(session_factory, "alice@example.com")

        assert after_first.status == "active"
        assert after_first.reputation_score == 50
        assert after_second.status == "suppressed"
        assert after_second.reputation_score == 0
        campaign = await load_campaign(session_factory, campaign_id)
        assert campaign.complained_count == 2

    @pytest.mark.asyncio
    async def test_unsubscribe_marks_subscriber(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        status = await tracker.track_unsubscribe(ref, "alice@example.com")

        assert status == DeliveryStatus.UNSUBSCRIBED
        subscriber = await load_subscriber(session_factory, "alice@example.com")
        assert subscriber.status == "unsubscribed"
        campaign = await load_campaign(session_factory, campaign_id)
        assert campaign.unsubscribed_count == 1

    @pytest.mark.asyncio
    async def test_bounce_only_touches_sending_tenant(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"], tenant_id="tenant-a")
        await seed_campaign(["alice@example.com"], tenant_id="tenant-b")
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")

        await tracker.handle_bounce(ref, "alice@example.com", BounceType.HARD_BOUNCE)
        await tracker.track_unsubscribe(ref, "alice@example.com")

        bounced = await subscriber_in(session_factory, "tenant-a", "alice@example.com")
        untouched = await subscriber_in(session_factory, "tenant-b", "alice@example.com")
        assert bounced.status == "bounced"
        assert untouched.status == "active"
        assert untouched.reputation_score == 100


class TestQueries:
    """Tests for status and bounce queries."""

    @pytest.mark.asyncio
    async def test_bounced_emails_in_window(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["bob@example.com", "alice@example.com"])
        for email in ("bob@example.com", "alice@example.com"):
            ref = await sent_event(session_factory, campaign_id, email)
            await tracker.handle_bounce(ref, email, BounceType.SOFT_BOUNCE)

        assert await tracker.get_bounced_emails(hours=24) == ["alice@example.com", "bob@example.com"]

    @pytest.mark.asyncio
    async def test_status_rebuilt_from_stored_events(self, tracker, seed_campaign, session_factory):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")
        await tracker.track_delivered(ref, "alice@example.com")
        await tracker.track_open(ref, "alice@example.com")

        restarted = EventTracker(session_factory=session_factory)

        assert await restarted.get_delivery_status(ref) == DeliveryStatus.OPENED

    @pytest.mark.asyncio
    async def test_recording_failure_never_raises(self):
        broken = EventTracker(session_factory=MagicMock(side_effect=RuntimeError("database down")))

        result = await broken.record(1, DeliveryEventType.OPENED, "alice@example.com")

        assert result is None


class TestSharedStatus:
    """Tests for status consistency across tracker instances."""

    @pytest.mark.asyncio
    async def test_terminal_status_seen_by_every_tracker(
        self, session_factory, seed_campaign, webhooks, shared_redis
    ):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")
        first = EventTracker(
            session_factory=session_factory, status_cache=DeliveryStatusCache(client=shared_redis), webhooks=webhooks
        )
        second = EventTracker(
            session_factory=session_factory, status_cache=DeliveryStatusCache(client=shared_redis), webhooks=webhooks
        )

        assert await first.track_open(ref, "alice@example.com") == DeliveryStatus.OPENED
        assert await second.handle_bounce(ref, "alice@example.com", BounceType.HARD_BOUNCE) == DeliveryStatus.BOUNCED

        assert await first.get_delivery_status(ref) == DeliveryStatus.BOUNCED
        assert await first.track_click(ref, "alice@example.com", "https://example.com") == DeliveryStatus.BOUNCED
        assert shared_redis.values[f"delivery_status:{ref}"] == "bounced"

    @pytest.mark.asyncio
    async def test_cached_status_is_served_without_database(self, session_factory, shared_redis):
        shared_redis.values["delivery_status:55"] = "clicked"
        tracker = EventTracker(session_factory=session_factory, status_cache=DeliveryStatusCache(client=shared_redis))

        assert await tracker.get_delivery_status(55) == DeliveryStatus.CLICKED

    @pytest.mark.asyncio
    async def test_falls_back_to_database_when_redis_is_down(
        self, session_factory, seed_campaign, webhooks
    ):
        campaign_id = await seed_campaign(["alice@example.com"])
        ref = await sent_event(session_factory, campaign_id, "alice@example.com")
        first = EventTracker(
            session_factory=session_factory, status_cache=DeliveryStatusCache(client=UnreachableRedis()), webhooks=webhooks
        )
        second = EventTracker(
            session_factory=session_factory, status_cache=DeliveryStatusCache(client=UnreachableRedis()), webhooks=webhooks
        )

        await first.track_open(ref, "alice@example.com")
        status = await second.handle_bounce(ref, "alice@example.com", BounceType.HARD_BOUNCE)

        assert status == DeliveryStatus.BOUNCED
        assert await first.get_delivery_status(ref) == DeliveryStatus.BOUNCED
