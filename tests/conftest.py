"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os
import pytest
import uuid
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from fieldops.database import Base, use_sqlite_transactions  # noqa: E402
import fieldops.models  # noqa: E402,F401
from fieldops.models.crew_worker import CrewWorker  # noqa: E402
from fieldops.models.customer import Customer  # noqa: E402
from fieldops.models.job import Job  # noqa: E402
from fieldops.models.lead import Lead  # noqa: E402
from fieldops.models.tenant import Tenant  # noqa: E402
from fieldops.schemas.delivery import DeliveryResult  # noqa: E402
from fieldops.schemas.orchestration import OrchestrationConfig  # noqa: E402
from fieldops.services.adapters import DeliveryAdapters  # noqa: E402


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = use_sqlite_transactions(create_async_engine("sqlite+aiosqlite:///:memory:"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("fieldops.utils.cache.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def adapters():
    """Delivery adapters that always succeed; swap side effects per test."""
    return DeliveryAdapters(
        send_text=AsyncMock(return_value=DeliveryResult.ok("SM_test_123")),
        place_call=AsyncMock(return_value=DeliveryResult.ok("call_test_123")),
        send_chat=AsyncMock(return_value=DeliveryResult.ok("42")),
        create_payment_link=AsyncMock(
            return_value=DeliveryResult.ok("plink_test", url="https://buy.stripe.com/test_abc")
        ),
    )


@pytest.fixture
def config():
    return OrchestrationConfig(owner_phone="+15125550100")


@pytest.fixture
async def tenant(db):
    tenant = Tenant(
        id=uuid.uuid4(),
        slug="sparkle",
        business_name="Sparkle Cleaning Co",
        business_name_short="Sparkle",
        owner_name="Dana",
        owner_phone="+15125550100",
        sms_from_phone="+15125550000",
        timezone="America/Los_Angeles",
        workflow_config={},
    )
    db.add(tenant)
    await db.flush()
    return tenant


@pytest.fixture
async def customer(db, tenant):
    customer = Customer(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        first_name="Jordan",
        last_name="Lee",
        phone="+15125550111",
        email="jordan@example.com",
        address="12 Elm St",
    )
    db.add(customer)
    await db.flush()
    return customer


@pytest.fixture
async def lead(db, tenant, customer):
    lead = Lead(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        customer_id=customer.id,
        first_name="Jordan",
        phone="+15125550111",
        email="jordan@example.com",
        source="website",
        status="new",
        followup_stage=0,
        sms_attempt_count=0,
        call_attempt_count=0,
    )
    db.add(lead)
    await db.flush()
    return lead


@pytest.fixture
async def job(db, tenant, customer):
    job = Job(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        customer_id=customer.id,
        date=date(2026, 3, 10),
        scheduled_at="10:00",
        duration_hours=3.0,
        service_type="Deep Clean",
        address="12 Elm St",
        phone="+15125550111",
        price_cents=18000,
        crew=[],
        status="scheduled",
    )
    db.add(job)
    await db.flush()
    return job


@pytest.fixture
async def workers(db, tenant):
    crew = [
        CrewWorker(id=uuid.uuid4(), tenant_id=tenant.id, name=name, phone=phone, telegram_id=chat, active=True)
        for name, phone, chat in (
            ("Ana", "+15125550201", "1001"),
            ("Ben", "+15125550202", "1002"),
            ("Cam", "+15125550203", "1003"),
        )
    ]
    db.add_all(crew)
    await db.flush()
    return crew
