"""
Test configuration and fixtures.
Uses a per-test SQLite file so background sessions and the test session see
the same rows. Mocks all external services.
"""
import uuid
from contextlib import ExitStack
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from httpx import AsyncClient, ASGITransport

from intakewire.database import Base, get_db
from intakewire.models import Organization, Contact, Lead, WebhookEndpoint, FollowupSequence

# Modules that open their own sessions outside FastAPI
SESSION_FACTORY_TARGETS = (
    "intakewire.services.event_emitter.async_session_factory",
    "intakewire.services.webhook_delivery.async_session_factory",
    "intakewire.services.followup_scheduler.async_session_factory",
    "intakewire.services.followup_executor.async_session_factory",
    "intakewire.workers.recovery_sweeper.async_session_factory",
)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'intakewire_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def patched_sessions(session_factory):
    """Point every background session factory at the test database."""
    with ExitStack() as stack:
        for target in SESSION_FACTORY_TARGETS:
            stack.enter_context(patch(target, session_factory))
        yield session_factory


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("intakewire.utils.redis_client.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.incr = AsyncMock(return_value=1)
        redis_mock.expire = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
async def org(db):
    organization = Organization(id=uuid.uuid4(), name="Hale & Ortiz LLP")
    db.add(organization)
    await db.commit()
    return organization


@pytest.fixture
async def contact(db, org):
    record = Contact(
        id=uuid.uuid4(),
        org_id=org.id,
        first_name="Dana",
        last_name="Reyes",
        phone="+15125551234",
        email="dana@example.com",
    )
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def lead(db, org, contact):
    record = Lead(
        id=uuid.uuid4(),
        org_id=org.id,
        contact_id=contact.id,
        source="web_form",
        status="new",
        practice_area="personal injury",
    )
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def endpoint(db, org):
    record = WebhookEndpoint(
        id=uuid.uuid4(),
        org_id=org.id,
        url="https://hooks.example.com/intake",
        secret="whsec_test_secret",
        events=["lead.created", "lead.updated"],
        active=True,
    )
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def sequence(db, org):
    record = FollowupSequence(
        id=uuid.uuid4(),
        org_id=org.id,
        name="New lead nurture",
        trigger_event="lead.created",
        steps=[
            {"delay_minutes": 0, "channel": "sms", "message_template": "Hi {first_name}, thanks for reaching out."},
            {"delay_minutes": 60, "channel": "sms", "message_template": "Checking in about your {practice_area} matter."},
            {"delay_minutes": 1440, "channel": "email", "message_template": "Still here to help, {first_name}."},
        ],
        stop_rules={"stop_on_statuses": ["retained"], "stop_on_response": True},
        is_active=True,
    )
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
async def api_client(session_factory, patched_sessions, mock_redis):
    """HTTP client against the app, with request sessions on the test database."""
    from intakewire.main import create_app

    application = create_app()

    async def _test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = _test_db
    async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as client:
        yield client
