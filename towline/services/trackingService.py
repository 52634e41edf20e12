"""
Live tracking service
=====================

Providers push GPS samples; each sample is appended to
``provider_locations`` and refreshes the provider's last known position
(used for dispatch eligibility).

When a sample is tied to a job with an active target point (the pickup
while the provider is en route, the destination while the job is in
progress), the ETA to that point is recomputed through the routing
resolver and fanned out to the job's subscribers.

History is read lazily in keyset-paged batches so a long route can be
replayed without loading it all at once.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from towline.core.errors import ForbiddenError, InvalidRequestError, InvalidStatusError, NotFoundError
from towline.core.timeutils import ensure_utc, utcnow
from towline.events.dispatchEvents import emit_provider_moved
from towline.integrations.maps.distanceCalculator import RouteResult, resolve_route
from towline.models.job import Job, JobStatus
from towline.models.location import LocationStatus, ProviderLocation
from towline.models.user import User, UserRole
from towline.schemas.dispatch import LocationUpdate, parse_request
from towline.services.broadcastGuard import atomic
from towline.services.geoService import Coordinate, OperatingBounds, validate_coordinate

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100
_HISTORY_BATCH_SIZE = 50

# Job statuses during which the assigned provider streams samples for the job
_TRACKABLE_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.PROVIDER_ASSIGNED,
    JobStatus.PROVIDER_EN_ROUTE,
    JobStatus.PROVIDER_ARRIVED,
    JobStatus.IN_PROGRESS,
})


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LocationSample:
    """A single GPS point as read back from the store."""

    provider_id: uuid.UUID
    job_id: Optional[uuid.UUID]
    latitude: float
    longitude: float
    heading: Optional[float]
    speed: Optional[float]
    accuracy: Optional[float]
    status: LocationStatus
    recorded_at: datetime

    @classmethod
    def from_model(cls, row: ProviderLocation) -> "LocationSample":
        return cls(
            provider_id=row.provider_id,
            job_id=row.job_id,
            latitude=float(row.latitude),
            longitude=float(row.longitude),
            heading=row.heading,
            speed=row.speed,
            accuracy=row.accuracy,
            status=row.status,
            recorded_at=ensure_utc(row.recorded_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": str(self.provider_id),
            "job_id": str(self.job_id) if self.job_id else None,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "heading": self.heading,
            "speed": self.speed,
            "accuracy": self.accuracy,
            "status": self.status.value,
            "recorded_at": self.recorded_at.isoformat(),
        }


@dataclass(frozen=True)
class LocationPushResult:
    sample: LocationSample
    eta: Optional[RouteResult]


@dataclass(frozen=True)
class TrackingSnapshot:
    """Where the assigned provider is now and how far they are from the target."""

    job_id: uuid.UUID
    provider_id: uuid.UUID
    job_status: JobStatus
    location: Optional[LocationSample]
    target: Optional[Coordinate]
    eta: Optional[RouteResult]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def tracking_target(job: Job) -> Coordinate | None:
    """The point the provider is heading to, if the job has one right now."""
    if job.status == JobStatus.PROVIDER_EN_ROUTE:
        return Coordinate.of(job.pickup_latitude, job.pickup_longitude)
    if job.status == JobStatus.IN_PROGRESS:
        if job.has_destination:
            return Coordinate.of(job.destination_latitude, job.destination_longitude)
        return Coordinate.of(job.pickup_latitude, job.pickup_longitude)
    return None


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------

async def push_location(
    db: AsyncSession,
    provider_id: uuid.UUID,
    update: LocationUpdate | dict[str, Any],
    *,
    bounds: OperatingBounds | None = None,
    now: datetime | None = None,
) -> LocationPushResult:
    """Record a provider location sample and fan out the job ETA.

    Raises:
        InvalidRequestError: Malformed payload.
        InvalidCoordinatesError: The point is outside the operating region.
        NotFoundError: Unknown provider or job.
        ForbiddenError: The job is assigned to someone else.
        InvalidStatusError: The job is not being worked on.
    """
    update = parse_request(LocationUpdate, update)
    moment = now or utcnow()
    point = validate_coordinate(update.latitude, update.longitude, bounds)

    result = await db.execute(
        select(User)
        .options(selectinload(User.provider_profile))
        .where(User.id == provider_id)
    )
    user = result.scalar_one_or_none()
    if user is None or user.role != UserRole.PROVIDER or user.provider_profile is None:
        raise NotFoundError(f"Provider {provider_id} not found")

    job: Job | None = None
    if update.job_id is not None:
        job = await db.get(Job, update.job_id, populate_existing=True)
        if job is None:
            raise NotFoundError(f"Job {update.job_id} not found")
        if job.provider_id != provider_id:
            raise ForbiddenError("Provider is not assigned to this job")
        if job.status not in _TRACKABLE_STATUSES:
            raise InvalidStatusError(
                f"Job is {job.status.value}; location updates are not tracked",
                details={"job_id": str(job.id), "status": job.status.value},
            )

    recorded_at = ensure_utc(update.recorded_at) if update.recorded_at else moment
    sample = ProviderLocation(
        provider_id=provider_id,
        job_id=job.id if job is not None else None,
        latitude=point.latitude,
        longitude=point.longitude,
        heading=update.heading,
        speed=update.speed,
        accuracy=update.accuracy,
        status=LocationStatus.ON_JOB if job is not None else LocationStatus.ONLINE,
        recorded_at=recorded_at,
    )
    profile = user.provider_profile
    async with atomic(db, "push_location"):
        db.add(sample)
        profile.current_latitude = sample.latitude
        profile.current_longitude = sample.longitude
        profile.location_updated_at = recorded_at

    stored = LocationSample.from_model(sample)

    eta: RouteResult | None = None
    target = tracking_target(job) if job is not None else None
    if target is not None:
        eta = await resolve_route(point, target, at=moment)
        await emit_provider_moved(
            job.id,
            provider_id,
            latitude=point.latitude,
            longitude=point.longitude,
            heading=update.heading,
            speed=update.speed,
            eta_minutes=eta.duration_minutes,
            distance_km=eta.distance_km,
            routing_method=eta.method.value,
        )

    logger.debug(
        "Location from provider %s: (%.5f, %.5f) job=%s eta=%s",
        provider_id,
        point.latitude,
        point.longitude,
        update.job_id,
        eta.duration_minutes if eta else None,
    )
    return LocationPushResult(sample=stored, eta=eta)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_current_tracking(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> TrackingSnapshot:
    """Latest sample of the assigned provider plus a fresh ETA.

    Raises:
        NotFoundError: Unknown job, or no provider assigned yet.
    """
    moment = now or utcnow()
    job = await db.get(Job, job_id, populate_existing=True)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    if job.provider_id is None:
        raise NotFoundError(f"No provider assigned to job {job_id} yet")

    result = await db.execute(
        select(ProviderLocation)
        .where(
            ProviderLocation.provider_id == job.provider_id,
            ProviderLocation.status != LocationStatus.OFFLINE,
        )
        .order_by(ProviderLocation.recorded_at.desc(), ProviderLocation.id.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    location = LocationSample.from_model(row) if row is not None else None

    target = tracking_target(job)
    eta: RouteResult | None = None
    if location is not None and target is not None:
        here = Coordinate(location.latitude, location.longitude)
        eta = await resolve_route(here, target, at=moment)

    return TrackingSnapshot(
        job_id=job.id,
        provider_id=job.provider_id,
        job_status=job.status,
        location=location,
        target=target,
        eta=eta,
    )


async def get_location_history(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
    batch_size: int = _HISTORY_BATCH_SIZE,
) -> AsyncIterator[LocationSample]:
    """Yield a job's samples oldest first, at most ``limit`` of them.

    Rows are fetched in batches of ``batch_size`` keyed on
    ``(recorded_at, id)``, so the sequence is finite and stable even while
    new samples are being appended.
    """
    if limit <= 0 or batch_size <= 0:
        raise InvalidRequestError("limit and batch_size must be positive")
    if start is not None and end is not None and ensure_utc(start) > ensure_utc(end):
        raise InvalidRequestError("start must not be after end")

    job = await db.get(Job, job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")

    filters = [ProviderLocation.job_id == job_id]
    if start is not None:
        filters.append(ProviderLocation.recorded_at >= ensure_utc(start))
    if end is not None:
        filters.append(ProviderLocation.recorded_at <= ensure_utc(end))

    remaining = limit
    cursor: tuple[datetime, uuid.UUID] | None = None
    while remaining > 0:
        batch = min(batch_size, remaining)
        stmt = select(ProviderLocation).where(*filters)
        if cursor is not None:
            last_at, last_id = cursor
            stmt = stmt.where(
                or_(
                    ProviderLocation.recorded_at > last_at,
                    and_(ProviderLocation.recorded_at == last_at, ProviderLocation.id > last_id),
                )
            )
        stmt = stmt.order_by(
            ProviderLocation.recorded_at.asc(), ProviderLocation.id.asc()
        ).limit(batch)

        rows = list((await db.execute(stmt)).scalars().all())
        for row in rows:
            yield LocationSample.from_model(row)
        remaining -= len(rows)
        if len(rows) < batch:
            break
        cursor = (rows[-1].recorded_at, rows[-1].id)
