"""
Shared pytest fixtures for Towline unit tests.

Provides mock database sessions, a recording publisher that captures
fan-out events, and sample domain objects that mirror production ORM
models without requiring a live database connection.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from towline.events.publisher import set_publisher
from towline.models.job import Job, JobStatus, JobType, Urgency
from towline.models.user import ProviderProfile, User, UserRole, UserStatus


# ---------------------------------------------------------------------------
# Database session mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db() -> AsyncMock:
    """Async mock of ``AsyncSession``.

    Provides a mock that supports ``db.execute()``, ``db.add()``,
    ``db.flush()``, and ``db.commit()`` out of the box.  Individual tests
    can configure ``mock_db.execute.return_value`` to control query results.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# Fan-out capture
# ---------------------------------------------------------------------------


class RecordingPublisher:
    """Publisher that keeps every (topic, event, data) it was asked to send."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, topic: str, event: str, data: dict[str, Any]) -> None:
        self.published.append((topic, event, data))

    def events(self, event: str) -> list[tuple[str, dict[str, Any]]]:
        return [(topic, data) for topic, name, data in self.published if name == event]

    def topics(self, event: str) -> list[str]:
        return [topic for topic, _ in self.events(event)]


@pytest.fixture
def recorder():
    """Install a ``RecordingPublisher`` for the duration of a test."""
    publisher = RecordingPublisher()
    set_publisher(publisher)
    yield publisher
    set_publisher(None)


# ---------------------------------------------------------------------------
# Domain object fixtures
# ---------------------------------------------------------------------------

RIYADH = (24.7136, 46.6753)


@pytest.fixture
def sample_provider_user() -> User:
    """An active provider with a fresh location in central Riyadh."""
    user = MagicMock(spec=User)
    user.id = uuid.uuid4()
    user.first_name = "Khalid"
    user.last_name = "Saleh"
    user.full_name = "Khalid Saleh"
    user.role = UserRole.PROVIDER
    user.status = UserStatus.ACTIVE

    profile = MagicMock(spec=ProviderProfile)
    profile.id = uuid.uuid4()
    profile.user_id = user.id
    profile.is_available = True
    profile.service_types = []
    profile.current_latitude = Decimal(str(RIYADH[0]))
    profile.current_longitude = Decimal(str(RIYADH[1]))
    profile.has_location = True
    profile.location_updated_at = datetime(2025, 3, 1, 9, 55, tzinfo=timezone.utc)
    user.provider_profile = profile
    return user


@pytest.fixture
def sample_job(sample_provider_user: User) -> Job:
    """A towing job assigned to the sample provider, en route to pickup."""
    job = MagicMock(spec=Job)
    job.id = uuid.uuid4()
    job.job_number = "TWG-20250301-ABC123"
    job.job_type = JobType.TOWING
    job.customer_id = uuid.uuid4()
    job.provider_id = sample_provider_user.id
    job.status = JobStatus.PROVIDER_EN_ROUTE
    job.urgency = Urgency.NORMAL
    job.pickup_latitude = Decimal("24.7136")
    job.pickup_longitude = Decimal("46.6753")
    job.destination_latitude = Decimal("24.7742")
    job.destination_longitude = Decimal("46.7386")
    job.has_destination = True
    return job
