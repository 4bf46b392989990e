"""
Pytest configuration and fixtures for async database testing.

Each test gets its own SQLite database file (aiosqlite) under tmp_path with
a freshly created schema, so tests that commit (every write path does) stay
isolated. Set TEST_DATABASE_URL to run against a disposable PostgreSQL
database instead; the schema is dropped and recreated per test.
"""
import os
import uuid
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.db import Base
from app.models import Location, Service, Walker, WorkingHours

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

# Verify we're NOT pointed at a shared database by accident
if TEST_DATABASE_URL and "neon" in TEST_DATABASE_URL.lower():
    raise RuntimeError(
        f"DANGER: Tests are configured to use a hosted database!\n"
        f"TEST_DATABASE_URL: {TEST_DATABASE_URL}\n"
        f"Tests drop and recreate every table."
    )

TZ_NAME = "America/Phoenix"  # no DST, so local offsets are stable in tests


# ────────────────────────────────────────────────────────────────
# Time helpers
# ────────────────────────────────────────────────────────────────

def local_dt(day: date, hour: int, minute: int = 0) -> datetime:
    """Walker-local wall time as a UTC datetime."""
    return datetime.combine(day, time(hour, minute), tzinfo=ZoneInfo(TZ_NAME)).astimezone(timezone.utc)


def upcoming(weekday: int, weeks_ahead: int = 1) -> date:
    """A future date on the given Python weekday (Monday = 0), at least a few days out."""
    today = datetime.now(ZoneInfo(TZ_NAME)).date()
    start = today + timedelta(days=3)
    return start + timedelta(days=(weekday - start.weekday()) % 7 + 7 * (weeks_ahead - 1))


# ────────────────────────────────────────────────────────────────
# Database
# ────────────────────────────────────────────────────────────────

@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create async SQLAlchemy engine for the test database.

    NullPool gives every session its own connection, which the concurrency
    tests rely on.
    """
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'walkers_test.db'}"
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


# ────────────────────────────────────────────────────────────────
# Seed data
# ────────────────────────────────────────────────────────────────

@pytest.fixture
def org_id():
    return uuid.uuid4()


@pytest.fixture
def customer_id():
    return uuid.uuid4()


@pytest.fixture
async def walker(async_session, org_id):
    """A walker working Monday-Friday 08:00-18:00 Phoenix time."""
    walker = Walker(organization_id=org_id, name="Sam Walker", timezone=TZ_NAME)
    async_session.add(walker)
    await async_session.flush()
    for day_of_week in range(1, 6):
        async_session.add(
            WorkingHours(
                walker_id=walker.id,
                day_of_week=day_of_week,
                start_time=time(8, 0),
                end_time=time(18, 0),
            )
        )
    await async_session.commit()
    async_session.expunge_all()
    return walker


@pytest.fixture
async def service(async_session, org_id):
    service = Service(organization_id=org_id, name="30 Minute Walk", duration_minutes=30, price_cents=2500)
    async_session.add(service)
    await async_session.commit()
    async_session.expunge(service)
    return service


@pytest.fixture
async def locations(async_session, org_id, customer_id):
    """Three customer homes a few kilometres apart in Tempe."""
    homes = [
        Location(organization_id=org_id, customer_id=customer_id, address="100 E Main St, Tempe, AZ",
                 latitude=33.4255, longitude=-111.9400),
        Location(organization_id=org_id, customer_id=customer_id, address="2000 S Rural Rd, Tempe, AZ",
                 latitude=33.4000, longitude=-111.9261),
        Location(organization_id=org_id, customer_id=customer_id, address="1 Mill Ave, Tempe, AZ",
                 latitude=33.4300, longitude=-111.9100),
    ]
    async_session.add_all(homes)
    await async_session.commit()
    for home in homes:
        async_session.expunge(home)
    return homes


@pytest.fixture
def location(locations):
    return locations[0]


# ────────────────────────────────────────────────────────────────
# HTTP client
# ────────────────────────────────────────────────────────────────

@pytest.fixture(scope="function")
async def client(session_factory):
    """
    Create FastAPI AsyncClient with database session override.

    Each request gets its own session from the test engine, like production.
    """
    # Import here to avoid circular dependencies
    from app.main import app
    from app.core.db import get_session

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def identity_headers(org_id: uuid.UUID, user_id: uuid.UUID, role: str = "customer") -> dict:
    return {
        "X-Organization-Id": str(org_id),
        "X-User-Id": str(user_id),
        "X-User-Role": role,
    }
