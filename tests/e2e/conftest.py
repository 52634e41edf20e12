"""
E2E test fixtures for the Towline dispatch engine.

Provides:
- A file-backed async SQLite database per test (so concurrent sessions
  see each other's commits, as they would on PostgreSQL)
- Pre-populated seed data: one customer with a vehicle, providers around
  central Riyadh, a provider in Jeddah, an offline provider and a stale one
- A fixed clock, an in-memory settings provider and a recording publisher
- Helper fixtures for broadcasts in various states

The routing provider is forced onto its haversine fallback so every ETA
is deterministic; the full service -> broadcast guard -> DB flow is
exercised.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from towline.integrations.maps.osrmService import OSRMError
from towline.models import (
    Base,
    ProviderProfile,
    User,
    UserRole,
    UserStatus,
    Vehicle,
)
from towline.services.broadcastManager import create_broadcast
from towline.services.offerService import submit_offer
from towline.services.settingsProvider import StaticSettingsProvider

# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

CUSTOMER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER_CUSTOMER_ID = uuid.UUID("abababab-abab-abab-abab-abababababab")
VEHICLE_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
OTHER_VEHICLE_ID = uuid.UUID("cdcdcdcd-cdcd-cdcd-cdcd-cdcdcdcdcdcd")

PROVIDER_NEAR_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
PROVIDER_MID_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
PROVIDER_EDGE_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")
PROVIDER_WASH_ID = uuid.UUID("44444444-4444-4444-4444-444444444444")
PROVIDER_OFFLINE_ID = uuid.UUID("55555555-5555-5555-5555-555555555555")
PROVIDER_STALE_ID = uuid.UUID("66666666-6666-6666-6666-666666666666")
PROVIDER_JEDDAH_ID = uuid.UUID("77777777-7777-7777-7777-777777777777")

TOWING_PROVIDER_IDS = [PROVIDER_NEAR_ID, PROVIDER_MID_ID, PROVIDER_EDGE_ID]

# 12:00 in Riyadh (UTC+3): daytime, no night surge
FIXED_NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

RIYADH_PICKUP = {"latitude": 24.7136, "longitude": 46.6753, "address": "Olaya St, Riyadh"}
RIYADH_DESTINATION = {"latitude": 24.7742, "longitude": 46.7386, "address": "Workshop, Al Nakheel"}
DAMMAM_PICKUP = {"latitude": 26.4207, "longitude": 50.0888, "address": "Corniche, Dammam"}


# ---------------------------------------------------------------------------
# Async engine + session factory (file-backed SQLite)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    """One database file per test, schema created and seeded."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'towline.db'}", echo=False)

    # SQLite does not enforce foreign keys by default
    @event.listens_for(db_engine.sync_engine, "connect")
    def _enable_fk(dbapi_conn, _):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await _seed(session)
        await session.commit()

    yield db_engine

    await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """The session the operation under test runs in."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def check_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A second, independent session for asserting what was committed."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


def _user(user_id: uuid.UUID, email: str, first: str, last: str, role: UserRole) -> User:
    return User(
        id=user_id,
        email=email,
        first_name=first,
        last_name=last,
        role=role,
        status=UserStatus.ACTIVE,
    )


def _provider(
    user_id: uuid.UUID,
    name: str,
    latitude: str,
    longitude: str,
    *,
    available: bool = True,
    service_types: list[str] | None = None,
    seen: datetime | None = None,
) -> list:
    first, last = name.split(" ")
    user = _user(user_id, f"{first.lower()}@providers.example", first, last, UserRole.PROVIDER)
    profile = ProviderProfile(
        user_id=user_id,
        is_available=available,
        service_types=service_types or [],
        current_latitude=Decimal(latitude),
        current_longitude=Decimal(longitude),
        location_updated_at=seen or FIXED_NOW - timedelta(minutes=5),
        rating=Decimal("4.80"),
    )
    return [user, profile]


async def _seed(session: AsyncSession) -> None:
    session.add_all([
        _user(CUSTOMER_ID, "sara@example.com", "Sara", "Alqahtani", UserRole.CUSTOMER),
        _user(OTHER_CUSTOMER_ID, "omar@example.com", "Omar", "Fahad", UserRole.CUSTOMER),
    ])
    await session.flush()

    session.add_all([
        Vehicle(id=VEHICLE_ID, owner_id=CUSTOMER_ID, plate_number="RUH 1234", make="Toyota", model="Camry"),
        Vehicle(id=OTHER_VEHICLE_ID, owner_id=OTHER_CUSTOMER_ID, plate_number="RUH 9876", make="Kia"),
    ])

    rows: list = []
    # ~1.1 km, ~2.5 km and ~5 km from the Riyadh pickup
    rows += _provider(PROVIDER_NEAR_ID, "Ali Hassan", "24.7236", "46.6753")
    rows += _provider(PROVIDER_MID_ID, "Yousef Nasser", "24.7336", "46.6853")
    rows += _provider(PROVIDER_EDGE_ID, "Fahad Salem", "24.7536", "46.6953")
    rows += _provider(PROVIDER_WASH_ID, "Majed Rashid", "24.7180", "46.6800", service_types=["car_wash"])
    rows += _provider(PROVIDER_OFFLINE_ID, "Turki Saad", "24.7140", "46.6760", available=False)
    rows += _provider(
        PROVIDER_STALE_ID, "Nawaf Adel", "24.7150", "46.6770", seen=FIXED_NOW - timedelta(hours=3)
    )
    rows += _provider(PROVIDER_JEDDAH_ID, "Hani Zaki", "21.4858", "39.1925")
    for row in rows:
        session.add(row)
        if isinstance(row, User):
            await session.flush()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def offline_routing():
    """Force the haversine fallback for every route lookup."""
    with patch(
        "towline.integrations.maps.distanceCalculator.get_route",
        new=AsyncMock(side_effect=OSRMError("routing disabled in tests")),
    ) as get_route:
        yield get_route


@pytest.fixture(autouse=True)
def events(recorder):
    """Capture every fan-out event."""
    return recorder


@pytest.fixture
def settings_provider() -> StaticSettingsProvider:
    return StaticSettingsProvider()


# ---------------------------------------------------------------------------
# Broadcast helpers
# ---------------------------------------------------------------------------


def towing_request(**overrides) -> dict:
    request = {
        "vehicle_id": str(VEHICLE_ID),
        "pickup": RIYADH_PICKUP,
        "destination": RIYADH_DESTINATION,
        "urgency": "normal",
        "details": {"job_type": "towing", "vehicle_condition": "not_starting", "towing_type": "flatbed"},
    }
    request.update(overrides)
    return request


def car_wash_request(**overrides) -> dict:
    request = {
        "vehicle_id": str(VEHICLE_ID),
        "pickup": RIYADH_PICKUP,
        "details": {"job_type": "car_wash", "service_type": "external", "water_available": True},
    }
    request.update(overrides)
    return request


@pytest_asyncio.fixture
async def open_broadcast(db, settings_provider):
    """A towing broadcast opened at ``FIXED_NOW`` (window closes 15 minutes later)."""
    return await create_broadcast(
        db, CUSTOMER_ID, towing_request(), settings_provider=settings_provider, now=FIXED_NOW
    )


@pytest_asyncio.fixture
async def broadcast_with_offers(db, open_broadcast):
    """The open broadcast with three offers, submitted one minute apart.

    Returns ``(created, [offer_near, offer_mid, offer_edge])``; bids are
    150, 120 and 180.
    """
    offers = []
    for i, (provider_id, bid) in enumerate(
        zip(TOWING_PROVIDER_IDS, ["150.00", "120.00", "180.00"]), start=1
    ):
        offers.append(
            await submit_offer(
                db,
                provider_id,
                open_broadcast.broadcast_id,
                {"bid_amount": bid, "message": f"Offer {i}"},
                now=FIXED_NOW + timedelta(minutes=i),
            )
        )
    return open_broadcast, offers
