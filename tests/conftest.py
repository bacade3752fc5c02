from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.base import create_engine_from_url, init_db
from database.models import User, UserRole, Vehicle, FleetStatus
from services.fleet_service import FleetService
from services.reservation_service import ReservationService


NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_from_url(f"sqlite+aiosqlite:///{tmp_path / 'rental_test.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def reservations(session_factory):
    return ReservationService(session_factory=session_factory)


@pytest.fixture
def fleet(session_factory):
    return FleetService(session_factory=session_factory)


async def create_user(session_factory, name="Asha Rao", email=None, role=UserRole.CLIENT) -> User:
    async with session_factory() as session:
        user = User(full_name=name, email=email, role=role)
        session.add(user)
        await session.commit()
        return user


async def create_vehicle(session_factory, number="KA01AB1234", price_per_day=Decimal("2000"), **kwargs) -> Vehicle:
    async with session_factory() as session:
        vehicle = Vehicle(
            number=number,
            model=kwargs.pop("model", "Maruti Swift"),
            price_per_day=price_per_day,
            fleet_status=kwargs.pop("fleet_status", FleetStatus.AVAILABLE),
            **kwargs,
        )
        session.add(vehicle)
        await session.commit()
        return vehicle


async def fetch(session_factory, model, entity_id):
    async with session_factory() as session:
        return await session.get(model, entity_id)


@pytest_asyncio.fixture
async def client(session_factory):
    return await create_user(session_factory, email="client@example.com")


@pytest_asyncio.fixture
async def vehicle(session_factory):
    return await create_vehicle(session_factory)


@pytest.fixture
def window(now):
    """One-day rental starting in an hour"""
    pickup = now + timedelta(hours=1)
    return pickup, pickup + timedelta(hours=24)
