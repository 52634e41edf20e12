"""
Broadcast Manager
=================

Customer-side dispatch: turns a service request into a priced job and
fans it out to the providers who can reach it.

Flow of ``create_broadcast``:

1. Validate the request payload and its coordinates.
2. Resolve the trip (pickup -> destination) through the routing resolver;
   on-site services (car wash) have no trip.
3. Quote the job with the pricing engine.
4. Persist the job, find eligible providers, and either open a broadcast
   window or record NO_PROVIDERS_AVAILABLE.
5. After commit, notify every eligible provider.

Also hosts the read side of a broadcast (with lazy expiry applied),
customer cancellation and the periodic expiry sweep.
"""

from __future__ import annotations

import logging
import math
import random
import string
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from towline.core.config import settings
from towline.core.errors import (
    BroadcastExpiredError,
    ConcurrentModificationError,
    ForbiddenError,
    NoProvidersError,
    NotFoundError,
)
from towline.core.rounding import round_half_up, to_decimal
from towline.core.timeutils import ensure_utc, utcnow
from towline.events.dispatchEvents import (
    emit_broadcast_cancelled,
    emit_broadcast_created,
    emit_broadcast_expired,
    emit_job_status_changed,
)
from towline.integrations.maps.distanceCalculator import ZERO_ROUTE, resolve_route
from towline.models.broadcast import BroadcastStatus, JobBroadcast, JobOffer, OfferStatus
from towline.models.job import Job, JobStatus, JobType
from towline.models.user import ProviderProfile, User, UserRole, UserStatus
from towline.models.vehicle import Vehicle
from towline.schemas.dispatch import BroadcastRequest, parse_request
from towline.services.broadcastGuard import (
    atomic,
    broadcast_lock,
    compare_and_set,
    effective_status,
    expire_broadcast,
    load_broadcast,
)
from towline.services.geoService import (
    Coordinate,
    OperatingBounds,
    default_bounds,
    filter_by_radius,
    validate_coordinate,
)
from towline.services.jobStateManager import (
    OPEN_BROADCAST_STATUSES,
    ActorType,
    require_transition,
)
from towline.services.pricingEngine import PriceQuote, price_job
from towline.services.settingsProvider import (
    DatabaseSettingsProvider,
    DispatchPolicy,
    SettingsProvider,
    load_dispatch_policy,
    load_pricing_rates,
)

logger = logging.getLogger(__name__)

_JOB_NUMBER_PREFIX: dict[JobType, str] = {
    JobType.TOWING: "TWG",
    JobType.CAR_WASH: "WASH",
}

# Kilometres per degree of latitude, for the SQL bounding-box prefilter
_KM_PER_DEGREE = 111.32

_SWEEP_BATCH_SIZE = 100


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EligibleProvider:
    provider_id: uuid.UUID
    distance_km: float


@dataclass(frozen=True)
class BroadcastCreated:
    """Outcome of a successful ``create_broadcast``."""
    job_id: uuid.UUID
    job_number: str
    broadcast_id: uuid.UUID
    job_type: JobType
    estimated_price: Decimal
    quote: PriceQuote
    estimated_distance_km: float
    estimated_duration_min: int
    routing_method: str
    broadcast_until: datetime
    eligible_provider_ids: list[uuid.UUID]

    @property
    def eligible_provider_count(self) -> int:
        return len(self.eligible_provider_ids)


@dataclass(frozen=True)
class BroadcastView:
    """Read model of a broadcast with lazy expiry applied to ``status``."""
    broadcast_id: uuid.UUID
    job_id: uuid.UUID
    job_number: Optional[str]
    job_type: JobType
    customer_id: uuid.UUID
    status: BroadcastStatus
    origin: Coordinate
    origin_address: Optional[str]
    destination: Optional[Coordinate]
    destination_address: Optional[str]
    estimated_price: Optional[Decimal]
    estimated_distance_km: Optional[float]
    search_radius_km: float
    offer_count: int
    broadcast_until: datetime
    selected_offer_id: Optional[uuid.UUID]
    details: dict[str, Any]

    @classmethod
    def from_model(cls, broadcast: JobBroadcast, now: datetime | None = None) -> "BroadcastView":
        destination = None
        if broadcast.destination_latitude is not None and broadcast.destination_longitude is not None:
            destination = Coordinate.of(broadcast.destination_latitude, broadcast.destination_longitude)
        return cls(
            broadcast_id=broadcast.id,
            job_id=broadcast.job_id,
            job_number=broadcast.job.job_number if broadcast.job is not None else None,
            job_type=broadcast.job_type,
            customer_id=broadcast.customer_id,
            status=effective_status(broadcast, now),
            origin=Coordinate.of(broadcast.origin_latitude, broadcast.origin_longitude),
            origin_address=broadcast.origin_address,
            destination=destination,
            destination_address=broadcast.destination_address,
            estimated_price=broadcast.estimated_price,
            estimated_distance_km=broadcast.estimated_distance_km,
            search_radius_km=broadcast.search_radius_km,
            offer_count=broadcast.offer_count,
            broadcast_until=ensure_utc(broadcast.broadcast_until),
            selected_offer_id=broadcast.selected_offer_id,
            details=dict(broadcast.details_json or {}),
        )


@dataclass(frozen=True)
class CancellationResult:
    job_id: uuid.UUID
    job_status: JobStatus
    broadcast_id: Optional[uuid.UUID]
    rejected_offer_count: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def generate_job_number(job_type: JobType, now: datetime | None = None) -> str:
    """Generate a human-readable job number like ``TWG-20250301-7KQ2ZD``."""
    moment = now or utcnow()
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"{_JOB_NUMBER_PREFIX[job_type]}-{moment:%Y%m%d}-{suffix}"


def _serves(profile: ProviderProfile, job_type: JobType) -> bool:
    return not profile.service_types or job_type.value in profile.service_types


async def find_eligible_providers(
    db: AsyncSession,
    origin: Coordinate,
    job_type: JobType,
    policy: DispatchPolicy,
    *,
    now: datetime | None = None,
    exclude_user_id: uuid.UUID | None = None,
) -> list[EligibleProvider]:
    """Active, available providers with a fresh location inside the radius.

    A bounding box narrows the query; the exact haversine radius is applied
    in Python.  Results are closest first.
    """
    moment = now or utcnow()
    cutoff = moment - timedelta(minutes=policy.location_max_age_minutes)
    radius = policy.search_radius_km
    lat_delta = radius / _KM_PER_DEGREE
    lng_delta = radius / (_KM_PER_DEGREE * max(math.cos(math.radians(origin.latitude)), 0.01))

    stmt = (
        select(ProviderProfile)
        .join(User, User.id == ProviderProfile.user_id)
        .where(
            User.role == UserRole.PROVIDER,
            User.status == UserStatus.ACTIVE,
            ProviderProfile.is_available.is_(True),
            ProviderProfile.location_updated_at >= cutoff,
            ProviderProfile.current_latitude.between(
                to_decimal(origin.latitude - lat_delta), to_decimal(origin.latitude + lat_delta)
            ),
            ProviderProfile.current_longitude.between(
                to_decimal(origin.longitude - lng_delta), to_decimal(origin.longitude + lng_delta)
            ),
        )
    )
    if exclude_user_id is not None:
        stmt = stmt.where(ProviderProfile.user_id != exclude_user_id)

    result = await db.execute(stmt)
    candidates = [p for p in result.scalars().all() if _serves(p, job_type)]

    return [
        EligibleProvider(provider_id=match.provider.user_id, distance_km=round_half_up(match.distance_km, 2))
        for match in filter_by_radius(candidates, origin, radius)
    ]


def _point(point: Coordinate) -> dict[str, float]:
    return {"latitude": point.latitude, "longitude": point.longitude}


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

async def create_broadcast(
    db: AsyncSession,
    customer_id: uuid.UUID,
    request: BroadcastRequest | dict[str, Any],
    *,
    settings_provider: SettingsProvider | None = None,
    bounds: OperatingBounds | None = None,
    now: datetime | None = None,
) -> BroadcastCreated:
    """Price a service request and broadcast it to nearby providers.

    Raises:
        InvalidRequestError: Malformed payload.
        InvalidCoordinatesError: Pickup or destination outside the region.
        NotFoundError: Unknown vehicle.
        ForbiddenError: The vehicle belongs to someone else.
        NoProvidersError: Nobody eligible in range.  The job is persisted
            as NO_PROVIDERS_AVAILABLE before this is raised.
    """
    request = parse_request(BroadcastRequest, request)
    moment = now or utcnow()
    region = bounds or default_bounds()
    job_type = request.job_type

    pickup = validate_coordinate(request.pickup.latitude, request.pickup.longitude, region)
    destination_point = request.pickup if request.is_on_site else request.destination
    destination = (
        pickup
        if request.is_on_site
        else validate_coordinate(destination_point.latitude, destination_point.longitude, region)
    )

    vehicle = await db.get(Vehicle, request.vehicle_id)
    if vehicle is None:
        raise NotFoundError(f"Vehicle {request.vehicle_id} not found")
    if vehicle.owner_id != customer_id:
        raise ForbiddenError("Vehicle does not belong to the requesting customer")

    config = settings_provider or DatabaseSettingsProvider(db)
    rates = await load_pricing_rates(config, job_type)
    policy = await load_dispatch_policy(config, job_type)

    trip = ZERO_ROUTE if request.is_on_site else await resolve_route(pickup, destination, at=moment)
    quote = price_job(trip.distance_km, request.urgency, moment, rates)

    async with atomic(db, "create_broadcast"):
        job = Job(
            job_number=generate_job_number(job_type, moment),
            job_type=job_type,
            customer_id=customer_id,
            vehicle_id=vehicle.id,
            status=JobStatus.PENDING_BROADCAST,
            urgency=request.urgency,
            pickup_latitude=to_decimal(pickup.latitude),
            pickup_longitude=to_decimal(pickup.longitude),
            pickup_address=request.pickup.address,
            destination_latitude=to_decimal(destination.latitude),
            destination_longitude=to_decimal(destination.longitude),
            destination_address=destination_point.address,
            estimated_distance_km=trip.distance_km,
            estimated_duration_min=trip.duration_minutes,
            routing_method=trip.method.value,
            currency=settings.currency,
            estimated_price=quote.final_price,
            pricing_json=quote.as_json(),
            details_json=request.details.model_dump(mode="json"),
            notes=request.notes,
        )
        db.add(job)
        await db.flush()

        pool = await find_eligible_providers(
            db, pickup, job_type, policy, now=moment, exclude_user_id=customer_id
        )
        if not pool:
            require_transition(job.status, JobStatus.NO_PROVIDERS_AVAILABLE)
            job.status = JobStatus.NO_PROVIDERS_AVAILABLE
            await db.commit()
            logger.info(
                "No providers within %.1f km for job %s (%s)",
                policy.search_radius_km,
                job.job_number,
                job_type.value,
            )
            raise NoProvidersError(
                f"No available providers within {policy.search_radius_km:g} km",
                job_id=job.id,
            )

        broadcast_until = moment + timedelta(minutes=policy.broadcast_timeout_minutes)
        broadcast = JobBroadcast(
            job_id=job.id,
            job_type=job_type,
            customer_id=customer_id,
            origin_latitude=job.pickup_latitude,
            origin_longitude=job.pickup_longitude,
            origin_address=job.pickup_address,
            destination_latitude=job.destination_latitude,
            destination_longitude=job.destination_longitude,
            destination_address=job.destination_address,
            search_radius_km=policy.search_radius_km,
            urgency=request.urgency,
            estimated_price=quote.final_price,
            estimated_distance_km=trip.distance_km,
            details_json=job.details_json,
            status=BroadcastStatus.BROADCASTING,
            version=1,
            offer_count=0,
            eligible_provider_count=len(pool),
            broadcast_until=broadcast_until,
        )
        db.add(broadcast)
        require_transition(job.status, JobStatus.BROADCASTING)
        job.status = JobStatus.BROADCASTING
        await db.flush()

    logger.info(
        "Broadcast %s opened for job %s: %d providers, %.1f km, price %s, until %s",
        broadcast.id,
        job.job_number,
        len(pool),
        trip.distance_km,
        quote.final_price,
        broadcast_until.isoformat(),
    )

    provider_ids = [p.provider_id for p in pool]
    await emit_broadcast_created(
        job.id,
        broadcast.id,
        provider_ids,
        job_type=job_type.value,
        origin={**_point(pickup), "address": job.pickup_address},
        estimated_price=str(quote.final_price),
        broadcast_until=broadcast_until,
    )

    return BroadcastCreated(
        job_id=job.id,
        job_number=job.job_number,
        broadcast_id=broadcast.id,
        job_type=job_type,
        estimated_price=quote.final_price,
        quote=quote,
        estimated_distance_km=trip.distance_km,
        estimated_duration_min=trip.duration_minutes,
        routing_method=trip.method.value,
        broadcast_until=broadcast_until,
        eligible_provider_ids=provider_ids,
    )


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------

async def get_broadcast(
    db: AsyncSession,
    broadcast_id: uuid.UUID,
    *,
    customer_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> BroadcastView:
    """Return a broadcast as clients see it.

    Pass ``customer_id`` to restrict the read to the broadcast's owner.
    """
    broadcast = await load_broadcast(db, broadcast_id)
    if broadcast is None:
        raise NotFoundError(f"Broadcast {broadcast_id} not found")
    if customer_id is not None and broadcast.customer_id != customer_id:
        raise ForbiddenError("Broadcast belongs to another customer")
    return BroadcastView.from_model(broadcast, now)


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

async def cancel_job(
    db: AsyncSession,
    customer_id: uuid.UUID,
    job_id: uuid.UUID,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> CancellationResult:
    """Cancel a job that has not been assigned yet.

    Closes the open broadcast (if any) and rejects its pending offers.

    Raises:
        NotFoundError: Unknown job.
        ForbiddenError: Not the job's customer.
        BroadcastExpiredError: The broadcast window closed before the
            cancel (expiry is persisted).
        InvalidStatusError: The job is past the cancellable states.
        ConcurrentModificationError: An acceptance won the race.
    """
    moment = now or utcnow()
    job = await db.get(Job, job_id, populate_existing=True)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    if job.customer_id != customer_id:
        raise ForbiddenError("Job belongs to another customer")
    require_transition(job.status, JobStatus.CANCELLED, ActorType.CUSTOMER)

    result = await db.execute(
        select(JobBroadcast.id).where(
            JobBroadcast.job_id == job_id,
            JobBroadcast.status.in_(list(OPEN_BROADCAST_STATUSES)),
        )
    )
    broadcast_id = result.scalar_one_or_none()

    previous_status = job.status
    bidder_ids: list[uuid.UUID] = []
    lock = broadcast_lock(broadcast_id) if broadcast_id is not None else nullcontext()

    async with lock:
        async with atomic(db, "cancel_job"):
            if broadcast_id is not None:
                broadcast = await load_broadcast(db, broadcast_id, for_update=True)
                job = broadcast.job
                if effective_status(broadcast, moment) == BroadcastStatus.EXPIRED:
                    if await expire_broadcast(db, broadcast, moment):
                        await db.commit()
                        await emit_broadcast_expired(job_id, broadcast_id)
                    raise BroadcastExpiredError(
                        "Broadcast window has closed",
                        details={"broadcast_id": str(broadcast_id)},
                    )
                require_transition(job.status, JobStatus.CANCELLED, ActorType.CUSTOMER)
                swapped = await compare_and_set(
                    db,
                    broadcast,
                    BroadcastStatus.CANCELLED,
                    allowed_from=OPEN_BROADCAST_STATUSES,
                    now=moment,
                    require_open_window=True,
                    values={"closed_at": moment},
                )
                if not swapped:
                    raise ConcurrentModificationError(
                        "Broadcast changed while cancelling; re-read and retry"
                    )
                pending = await db.execute(
                    select(JobOffer).where(
                        JobOffer.broadcast_id == broadcast_id,
                        JobOffer.status == OfferStatus.PENDING,
                    )
                )
                for offer in pending.scalars().all():
                    offer.status = OfferStatus.REJECTED
                    offer.responded_at = moment
                    bidder_ids.append(offer.provider_id)

            job.status = JobStatus.CANCELLED
            job.cancelled_at = moment
            job.cancellation_reason = reason

    logger.info(
        "Job %s cancelled by customer %s (broadcast %s, %d offers rejected)",
        job_id,
        customer_id,
        broadcast_id,
        len(bidder_ids),
    )

    if broadcast_id is not None:
        await emit_broadcast_cancelled(job_id, broadcast_id, customer_id, bidder_ids, reason)
    await emit_job_status_changed(
        job_id, previous_status.value, JobStatus.CANCELLED.value, actor_id=customer_id
    )

    return CancellationResult(
        job_id=job_id,
        job_status=JobStatus.CANCELLED,
        broadcast_id=broadcast_id,
        rejected_offer_count=len(bidder_ids),
    )


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

async def sweep_expired_broadcasts(
    db: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int = _SWEEP_BATCH_SIZE,
) -> int:
    """Persist expiry for open broadcasts whose window has passed.

    Each broadcast is expired in its own unit of work so one failure does
    not hold back the rest.  Safe to run concurrently with itself and with
    offer/acceptance traffic.

    Returns:
        Number of broadcasts this call expired.
    """
    moment = now or utcnow()
    result = await db.execute(
        select(JobBroadcast.id)
        .where(
            JobBroadcast.status.in_(list(OPEN_BROADCAST_STATUSES)),
            JobBroadcast.broadcast_until <= moment,
        )
        .order_by(JobBroadcast.broadcast_until)
        .limit(batch_size)
    )
    due = list(result.scalars().all())
    await db.rollback()

    expired: list[tuple[uuid.UUID, uuid.UUID]] = []
    for broadcast_id in due:
        async with broadcast_lock(broadcast_id):
            async with atomic(db, "expire_broadcast"):
                broadcast = await load_broadcast(db, broadcast_id, for_update=True)
                if broadcast is not None and await expire_broadcast(db, broadcast, moment):
                    expired.append((broadcast.job_id, broadcast.id))

    for job_id, broadcast_id in expired:
        await emit_broadcast_expired(job_id, broadcast_id)
        await emit_job_status_changed(
            job_id, JobStatus.BROADCASTING.value, JobStatus.BROADCAST_EXPIRED.value
        )

    if expired:
        logger.info("Expiry sweep closed %d broadcasts", len(expired))
    return len(expired)
