"""
Offer Service
=============

Provider-side bidding against open broadcasts.

A provider may bid once per broadcast, only while its window is open and
before a technician has been selected.  The bid is stored together with
the provider's distance and ETA to the pickup point at bidding time, so
customers can compare offers by price or by arrival time.

The offer counter on the broadcast is bumped through the broadcast guard's
compare-and-set, which also re-checks the window inside the transaction:
an offer can never land on a broadcast that has already closed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from towline.core.errors import (
    BroadcastExpiredError,
    ConcurrentModificationError,
    DuplicateOfferError,
    ForbiddenError,
    InvalidRequestError,
    InvalidStatusError,
    NotFoundError,
    ProviderUnavailableError,
)
from towline.core.rounding import round_half_up, to_decimal
from towline.core.timeutils import ensure_utc, utcnow
from towline.events.dispatchEvents import emit_broadcast_expired, emit_offer_submitted
from towline.integrations.maps.distanceCalculator import resolve_route
from towline.models.broadcast import BroadcastStatus, JobBroadcast, JobOffer, OfferStatus
from towline.models.user import ProviderProfile, User, UserRole, UserStatus
from towline.schemas.dispatch import OfferRequest, parse_request
from towline.services.broadcastGuard import (
    atomic,
    broadcast_lock,
    compare_and_set,
    effective_status,
    expire_broadcast,
    is_past_window,
    load_broadcast,
)
from towline.services.geoService import Coordinate, haversine_distance

logger = logging.getLogger(__name__)

OFFER_SORT_KEYS = ("bid", "eta")


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OfferView:
    offer_id: uuid.UUID
    broadcast_id: uuid.UUID
    provider_id: uuid.UUID
    provider_name: Optional[str]
    bid_amount: Decimal
    message: Optional[str]
    estimated_arrival_minutes: Optional[int]
    distance_km: Optional[float]
    eta_minutes: Optional[int]
    routing_method: Optional[str]
    status: OfferStatus
    is_selected: bool
    created_at: datetime

    @classmethod
    def from_model(cls, offer: JobOffer, provider_name: str | None = None) -> "OfferView":
        return cls(
            offer_id=offer.id,
            broadcast_id=offer.broadcast_id,
            provider_id=offer.provider_id,
            provider_name=provider_name,
            bid_amount=offer.bid_amount,
            message=offer.message,
            estimated_arrival_minutes=offer.estimated_arrival_minutes,
            distance_km=offer.distance_km,
            eta_minutes=offer.eta_minutes,
            routing_method=offer.routing_method,
            status=offer.status,
            is_selected=offer.is_selected,
            created_at=ensure_utc(offer.created_at),
        )


@dataclass(frozen=True)
class OpenBroadcast:
    """A broadcast as listed in a provider's feed."""
    broadcast_id: uuid.UUID
    job_id: uuid.UUID
    job_type: str
    origin: Coordinate
    origin_address: Optional[str]
    destination_address: Optional[str]
    estimated_price: Optional[Decimal]
    estimated_distance_km: Optional[float]
    distance_to_pickup_km: float
    urgency: str
    broadcast_until: datetime
    offer_count: int
    details: dict[str, Any]
    my_offer: Optional[OfferView]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _require_bidding_provider(db: AsyncSession, provider_id: uuid.UUID) -> ProviderProfile:
    """Load the provider's profile, checking they may bid right now."""
    result = await db.execute(
        select(User)
        .options(selectinload(User.provider_profile))
        .where(User.id == provider_id)
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None or user.role != UserRole.PROVIDER or user.provider_profile is None:
        raise NotFoundError(f"Provider {provider_id} not found")
    if user.status != UserStatus.ACTIVE:
        raise ForbiddenError(f"Provider account is {user.status.value}")

    profile = user.provider_profile
    if not profile.is_available:
        raise ProviderUnavailableError("Provider is not accepting jobs")
    if not profile.has_location:
        raise ProviderUnavailableError("Provider has no known location")
    return profile


def _check_accepts_offers(broadcast: JobBroadcast, now: datetime) -> None:
    status = effective_status(broadcast, now)
    if status == BroadcastStatus.EXPIRED:
        raise BroadcastExpiredError(
            "Broadcast window has closed",
            details={"broadcast_id": str(broadcast.id)},
        )
    if status != BroadcastStatus.BROADCASTING:
        raise InvalidStatusError(
            f"Broadcast is {status.value} and no longer accepts offers",
            details={"broadcast_id": str(broadcast.id), "status": status.value},
        )


async def _close_expired(db: AsyncSession, broadcast_id: uuid.UUID, now: datetime) -> None:
    """Persist a lazily detected expiry, then report it as EXPIRED."""
    async with broadcast_lock(broadcast_id):
        async with atomic(db, "expire_broadcast"):
            broadcast = await load_broadcast(db, broadcast_id, for_update=True)
            expired = broadcast is not None and await expire_broadcast(db, broadcast, now)
    if expired:
        await emit_broadcast_expired(broadcast.job_id, broadcast_id)
    raise BroadcastExpiredError(
        "Broadcast window has closed",
        details={"broadcast_id": str(broadcast_id)},
    )


async def _existing_offer(
    db: AsyncSession, broadcast_id: uuid.UUID, provider_id: uuid.UUID
) -> JobOffer | None:
    result = await db.execute(
        select(JobOffer).where(
            JobOffer.broadcast_id == broadcast_id,
            JobOffer.provider_id == provider_id,
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------

async def submit_offer(
    db: AsyncSession,
    provider_id: uuid.UUID,
    broadcast_id: uuid.UUID,
    request: OfferRequest | dict[str, Any],
    *,
    now: datetime | None = None,
) -> OfferView:
    """Place a provider's bid on an open broadcast.

    Raises:
        InvalidRequestError: Malformed bid.
        NotFoundError: Unknown provider or broadcast.
        ForbiddenError: Provider account is not active.
        ProviderUnavailableError: Provider is offline or has no location.
        BroadcastExpiredError: The window has closed (expiry is persisted).
        InvalidStatusError: A technician was already selected, or the
            broadcast was cancelled.
        DuplicateOfferError: The provider already bid on this broadcast.
        ConcurrentModificationError: The broadcast changed mid-submit.
    """
    request = parse_request(OfferRequest, request)
    moment = now or utcnow()

    profile = await _require_bidding_provider(db, provider_id)

    broadcast = await load_broadcast(db, broadcast_id)
    if broadcast is None:
        raise NotFoundError(f"Broadcast {broadcast_id} not found")
    if broadcast.customer_id == provider_id:
        raise ForbiddenError("Cannot bid on your own request")
    if effective_status(broadcast, moment) == BroadcastStatus.EXPIRED:
        await _close_expired(db, broadcast_id, moment)
    _check_accepts_offers(broadcast, moment)
    if await _existing_offer(db, broadcast_id, provider_id) is not None:
        raise DuplicateOfferError("Provider already submitted an offer for this broadcast")

    provider_point = Coordinate.of(profile.current_latitude, profile.current_longitude)
    pickup = Coordinate.of(broadcast.origin_latitude, broadcast.origin_longitude)
    trip = await resolve_route(provider_point, pickup, at=moment)

    async with broadcast_lock(broadcast_id):
        async with atomic(db, "submit_offer"):
            broadcast = await load_broadcast(db, broadcast_id, for_update=True)
            if broadcast is None:
                raise NotFoundError(f"Broadcast {broadcast_id} not found")
            if effective_status(broadcast, moment) == BroadcastStatus.EXPIRED:
                if await expire_broadcast(db, broadcast, moment):
                    await db.commit()
                    await emit_broadcast_expired(broadcast.job_id, broadcast.id)
                raise BroadcastExpiredError(
                    "Broadcast window has closed",
                    details={"broadcast_id": str(broadcast_id)},
                )
            _check_accepts_offers(broadcast, moment)

            swapped = await compare_and_set(
                db,
                broadcast,
                BroadcastStatus.BROADCASTING,
                allowed_from=[BroadcastStatus.BROADCASTING],
                now=moment,
                require_open_window=True,
                increment_offers=True,
            )
            if not swapped:
                raise ConcurrentModificationError(
                    "Broadcast changed while submitting the offer; re-read and retry"
                )

            offer = JobOffer(
                broadcast_id=broadcast_id,
                provider_id=provider_id,
                bid_amount=request.bid_amount,
                message=request.message,
                estimated_arrival_minutes=request.estimated_arrival_minutes,
                provider_latitude=to_decimal(provider_point.latitude),
                provider_longitude=to_decimal(provider_point.longitude),
                distance_km=trip.distance_km,
                eta_minutes=trip.duration_minutes,
                routing_method=trip.method.value,
                status=OfferStatus.PENDING,
                is_selected=False,
                created_at=moment,
                updated_at=moment,
            )
            db.add(offer)
            try:
                await db.flush()
            except IntegrityError as exc:
                raise DuplicateOfferError(
                    "Provider already submitted an offer for this broadcast"
                ) from exc

    logger.info(
        "Offer %s on broadcast %s by provider %s: %s (eta %s min, %s)",
        offer.id,
        broadcast_id,
        provider_id,
        offer.bid_amount,
        offer.eta_minutes,
        offer.routing_method,
    )
    await emit_offer_submitted(
        broadcast.job_id,
        broadcast_id,
        offer.id,
        provider_id,
        str(offer.bid_amount),
        offer.eta_minutes,
    )
    return OfferView.from_model(offer)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

async def list_offers(
    db: AsyncSession,
    broadcast_id: uuid.UUID,
    *,
    customer_id: uuid.UUID | None = None,
    sort_by: str = "bid",
) -> list[OfferView]:
    """Offers on a broadcast, cheapest first (or fastest with ``sort_by="eta"``).

    Ties break on submission time.  Pass ``customer_id`` to restrict the
    read to the broadcast's owner.
    """
    if sort_by not in OFFER_SORT_KEYS:
        raise InvalidRequestError(f"sort_by must be one of {', '.join(OFFER_SORT_KEYS)}")

    broadcast = await db.get(JobBroadcast, broadcast_id)
    if broadcast is None:
        raise NotFoundError(f"Broadcast {broadcast_id} not found")
    if customer_id is not None and broadcast.customer_id != customer_id:
        raise ForbiddenError("Broadcast belongs to another customer")

    result = await db.execute(
        select(JobOffer, User)
        .join(User, User.id == JobOffer.provider_id)
        .where(JobOffer.broadcast_id == broadcast_id)
        .order_by(JobOffer.bid_amount.asc(), JobOffer.created_at.asc(), JobOffer.id.asc())
        .execution_options(populate_existing=True)
    )
    views = [OfferView.from_model(offer, user.full_name) for offer, user in result.all()]

    if sort_by == "eta":
        views.sort(
            key=lambda v: (v.eta_minutes is None, v.eta_minutes or 0, v.bid_amount, v.created_at)
        )
    return views


async def list_open_broadcasts(
    db: AsyncSession,
    provider_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> list[OpenBroadcast]:
    """Broadcasts a provider can still bid on, closest pickup first.

    Each entry carries the provider's own offer, if they already placed one.
    """
    moment = now or utcnow()
    profile = await _require_bidding_provider(db, provider_id)
    here_lat = float(profile.current_latitude)
    here_lng = float(profile.current_longitude)

    result = await db.execute(
        select(JobBroadcast).where(
            JobBroadcast.status == BroadcastStatus.BROADCASTING,
            JobBroadcast.broadcast_until > moment,
            JobBroadcast.customer_id != provider_id,
        )
    )
    nearby: list[tuple[JobBroadcast, float]] = []
    for broadcast in result.scalars().all():
        if is_past_window(broadcast, moment):
            continue
        if profile.service_types and broadcast.job_type.value not in profile.service_types:
            continue
        distance = haversine_distance(
            here_lat, here_lng, float(broadcast.origin_latitude), float(broadcast.origin_longitude)
        )
        if distance <= broadcast.search_radius_km:
            nearby.append((broadcast, distance))

    if not nearby:
        return []

    offers = await db.execute(
        select(JobOffer).where(
            JobOffer.provider_id == provider_id,
            JobOffer.broadcast_id.in_([b.id for b, _ in nearby]),
        )
    )
    mine = {offer.broadcast_id: OfferView.from_model(offer) for offer in offers.scalars().all()}

    nearby.sort(key=lambda pair: pair[1])
    return [
        OpenBroadcast(
            broadcast_id=broadcast.id,
            job_id=broadcast.job_id,
            job_type=broadcast.job_type.value,
            origin=Coordinate.of(broadcast.origin_latitude, broadcast.origin_longitude),
            origin_address=broadcast.origin_address,
            destination_address=broadcast.destination_address,
            estimated_price=broadcast.estimated_price,
            estimated_distance_km=broadcast.estimated_distance_km,
            distance_to_pickup_km=round_half_up(distance, 2),
            urgency=broadcast.urgency.value,
            broadcast_until=ensure_utc(broadcast.broadcast_until),
            offer_count=broadcast.offer_count,
            details=dict(broadcast.details_json or {}),
            my_offer=mine.get(broadcast.id),
        )
        for broadcast, distance in nearby
    ]
