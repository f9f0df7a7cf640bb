import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.database import Base, get_db
from app.models import Campaign, Subscriber
from app.services.campaign_executor import CampaignExecutor, get_campaign_executor
from app.services.channel_senders import MockChannelSender
from app.services.event_tracker import EventTracker, get_event_tracker
from app.services.progress_broadcaster import ProgressBroadcaster
from app.services.status_cache import DeliveryStatusCache
from app.services.webhook_dispatcher import WebhookDispatcher

from tests.factories import CampaignFactory, SubscriberFactory
from tests.fakes import InMemoryRedis

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

TENANT_ID = "tenant-1"


@pytest_asyncio.fixture
async def session_factory():
    """Create test database and tables; yields a session factory bound to it."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(session_factory):
    """A session on the test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_sender():
    return MockChannelSender()


@pytest.fixture
def webhooks():
    return WebhookDispatcher()


@pytest.fixture
def executor(session_factory, mock_sender, webhooks):
    """Executor wired to the test database, the mock sender and a no-op sleep."""
    return CampaignExecutor(
        session_factory=session_factory,
        sender_resolver=lambda channel: mock_sender,
        broadcaster=ProgressBroadcaster(),
        webhooks=webhooks,
        sleep=AsyncMock(),
    )


@pytest.fixture
def tracker(session_factory, webhooks):
    return EventTracker(session_factory=session_factory, status_cache=DeliveryStatusCache(), webhooks=webhooks)


@pytest.fixture
def seed_campaign(session_factory):
    """
    Insert a campaign plus one active subscriber per recipient address.

    Usage:
        campaign_id = await seed_campaign(["a@example.com", "b@example.com"])
    """

    async def _seed(recipients=(), tenant_id=TENANT_ID, channel="email", **campaign_fields) -> int:
        async with session_factory() as db:
            for address in recipients:
                fields = {"email": address} if channel == "email" else {"phone": address}
                db.add(Subscriber(**SubscriberFactory(tenant_id=tenant_id, **fields)))
            campaign = Campaign(**CampaignFactory(tenant_id=tenant_id, channel=channel, **campaign_fields))
            db.add(campaign)
            await db.commit()
            return campaign.id

    return _seed


@pytest_asyncio.fixture
async def client(session_factory, executor, tracker):
    """Create test client with overridden database and services."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_campaign_executor] = lambda: executor
    app.dependency_overrides[get_event_tracker] = lambda: tracker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.headers["X-Tenant-ID"] = TENANT_ID
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def shared_redis():
    return InMemoryRedis()
