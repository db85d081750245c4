import sys
import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# Add the backend directory to the Python path
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.database import Base
from services.pipeline import OrderPipeline
from tests.helpers import (
    FakeFulfillmentDispatcher,
    FakePaymentGateway,
    RecordingSleep,
    build_order,
)

# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine):
    """Session configured like the application's: no expiry on commit"""
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    """Fixed 'now' for sweeps and the retry scheduler"""
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def dispatcher():
    return FakeFulfillmentDispatcher()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def pipeline(db_session, gateway, dispatcher, sleep, clock):
    return OrderPipeline(db_session, gateway=gateway, dispatcher=dispatcher, sleep=sleep, now=lambda: clock)


@pytest_asyncio.fixture
async def make_order(db_session):
    """Persist an order built from sensible defaults plus overrides"""
    async def _make(**overrides):
        order = build_order(**overrides)
        db_session.add(order)
        await db_session.commit()
        return order
    return _make
