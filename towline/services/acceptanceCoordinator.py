"""
Acceptance Coordinator
======================

Selects the winning offer for a broadcast.  Exactly one acceptance can
succeed per broadcast, however many customers' devices, retries or
replicas race for it.

Within one unit of work:

- the broadcast moves to TECHNICIAN_SELECTED through the guarded
  compare-and-set (a lost race surfaces as CONCURRENT_MODIFICATION),
- the chosen offer becomes ACCEPTED and every other pending offer
  REJECTED,
- the job is assigned to the winning provider with the agreed price and
  the settlement breakdown (tax, customer total, commission, earnings).

Notifications go out only after the commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from towline.core.errors import (
    BroadcastExpiredError,
    ConcurrentModificationError,
    ForbiddenError,
    InvalidStatusError,
    NotFoundError,
)
from towline.core.timeutils import utcnow
from towline.events.dispatchEvents import (
    emit_broadcast_expired,
    emit_job_status_changed,
    emit_offer_accepted,
    emit_offers_rejected,
)
from towline.models.broadcast import BroadcastStatus, JobOffer, OfferStatus
from towline.models.job import JobStatus
from towline.services.broadcastGuard import (
    atomic,
    broadcast_lock,
    compare_and_set,
    effective_status,
    expire_broadcast,
    load_broadcast,
)
from towline.services.jobStateManager import OPEN_BROADCAST_STATUSES, require_transition
from towline.services.pricingEngine import ServiceBreakdown, compute_service_breakdown
from towline.services.settingsProvider import (
    DatabaseSettingsProvider,
    SettingsProvider,
    load_settlement_rates,
)

logger = logging.getLogger(__name__)

REJECTION_REASON = "Customer selected another provider"


@dataclass(frozen=True)
class AcceptanceResult:
    broadcast_id: uuid.UUID
    job_id: uuid.UUID
    offer_id: uuid.UUID
    provider_id: uuid.UUID
    agreed_price: Decimal
    breakdown: ServiceBreakdown
    rejected_offer_ids: list[uuid.UUID]
    accepted_at: datetime


async def accept_offer(
    db: AsyncSession,
    customer_id: uuid.UUID,
    broadcast_id: uuid.UUID,
    offer_id: uuid.UUID,
    *,
    settings_provider: SettingsProvider | None = None,
    now: datetime | None = None,
) -> AcceptanceResult:
    """Accept one offer and assign its provider to the job.

    Raises:
        NotFoundError: Unknown broadcast, or the offer is not on it.
        ForbiddenError: The broadcast belongs to another customer.
        BroadcastExpiredError: The window has closed (expiry is persisted).
        InvalidStatusError: The broadcast is no longer open, or the offer
            is not pending.
        ConcurrentModificationError: Another writer changed the broadcast.
    """
    moment = now or utcnow()
    config = settings_provider or DatabaseSettingsProvider(db)

    async with broadcast_lock(broadcast_id):
        async with atomic(db, "accept_offer"):
            broadcast = await load_broadcast(db, broadcast_id, for_update=True)
            if broadcast is None:
                raise NotFoundError(f"Broadcast {broadcast_id} not found")
            if broadcast.customer_id != customer_id:
                raise ForbiddenError("Broadcast belongs to another customer")

            status = effective_status(broadcast, moment)
            if status == BroadcastStatus.EXPIRED:
                if await expire_broadcast(db, broadcast, moment):
                    await db.commit()
                    await emit_broadcast_expired(broadcast.job_id, broadcast.id)
                raise BroadcastExpiredError(
                    "Broadcast window has closed",
                    details={"broadcast_id": str(broadcast_id)},
                )
            if status not in OPEN_BROADCAST_STATUSES:
                raise InvalidStatusError(
                    f"Broadcast is {status.value}; an offer can no longer be accepted",
                    details={"broadcast_id": str(broadcast_id), "status": status.value},
                )

            result = await db.execute(
                select(JobOffer)
                .where(JobOffer.broadcast_id == broadcast_id)
                .execution_options(populate_existing=True)
            )
            offers = list(result.scalars().all())
            chosen = next((o for o in offers if o.id == offer_id), None)
            if chosen is None:
                raise NotFoundError(f"Offer {offer_id} not found on broadcast {broadcast_id}")
            if chosen.status != OfferStatus.PENDING:
                raise InvalidStatusError(
                    f"Offer is {chosen.status.value} and cannot be accepted",
                    details={"offer_id": str(offer_id), "status": chosen.status.value},
                )

            job = broadcast.job
            require_transition(job.status, JobStatus.PROVIDER_ASSIGNED)

            rates = await load_settlement_rates(config)
            breakdown = compute_service_breakdown(
                chosen.bid_amount,
                vat_rate=rates.vat_rate,
                commission_percent=rates.commission_percent,
            )

            swapped = await compare_and_set(
                db,
                broadcast,
                BroadcastStatus.TECHNICIAN_SELECTED,
                allowed_from=OPEN_BROADCAST_STATUSES,
                now=moment,
                require_open_window=True,
                values={"selected_offer_id": chosen.id, "closed_at": moment},
            )
            if not swapped:
                raise ConcurrentModificationError(
                    "Broadcast changed while accepting the offer; re-read and retry"
                )

            chosen.status = OfferStatus.ACCEPTED
            chosen.is_selected = True
            chosen.responded_at = moment

            rejected: list[tuple[uuid.UUID, uuid.UUID]] = []
            for offer in offers:
                if offer.id != chosen.id and offer.status == OfferStatus.PENDING:
                    offer.status = OfferStatus.REJECTED
                    offer.responded_at = moment
                    rejected.append((offer.id, offer.provider_id))

            previous_job_status = job.status
            job.status = JobStatus.PROVIDER_ASSIGNED
            job.provider_id = chosen.provider_id
            job.agreed_price = breakdown.subtotal
            job.tax_amount = breakdown.tax
            job.total_for_customer = breakdown.total_for_customer
            job.platform_commission = breakdown.platform_commission
            job.vendor_earnings = breakdown.vendor_earnings
            job.accepted_at = moment
            job.pricing_json = {**(job.pricing_json or {}), "settlement": breakdown.as_json()}
            await db.flush()

    logger.info(
        "Offer %s accepted on broadcast %s: provider %s at %s (%d rejected)",
        chosen.id,
        broadcast_id,
        chosen.provider_id,
        breakdown.subtotal,
        len(rejected),
    )

    await emit_offer_accepted(
        job.id,
        broadcast_id,
        chosen.id,
        chosen.provider_id,
        customer_id,
        str(breakdown.subtotal),
    )
    await emit_offers_rejected(job.id, broadcast_id, rejected, REJECTION_REASON)
    await emit_job_status_changed(
        job.id,
        previous_job_status.value,
        JobStatus.PROVIDER_ASSIGNED.value,
        actor_id=customer_id,
    )

    return AcceptanceResult(
        broadcast_id=broadcast_id,
        job_id=job.id,
        offer_id=chosen.id,
        provider_id=chosen.provider_id,
        agreed_price=breakdown.subtotal,
        breakdown=breakdown,
        rejected_offer_ids=[offer_id for offer_id, _ in rejected],
        accepted_at=moment,
    )
