"""
Dispatch Event Emission
=======================

Builds the event payloads for broadcast, offer and tracking changes and
pushes them onto the real-time fan-out channel.

Every emitter runs after the state change has been committed, so a
delivery failure is logged and swallowed: the durable state is already
correct and clients resync on their next read.

Events emitted:
  - broadcast.created        -> each eligible provider
  - broadcast.expired        -> job topic
  - broadcast.cancelled      -> job topic + each bidding provider
  - offer.submitted          -> job topic
  - offer.accepted           -> winning provider + job topic
  - offer.rejected           -> each losing provider
  - job.status_changed       -> job topic
  - location.provider_moved  -> job topic
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from towline.events.publisher import get_publisher, job_topic, provider_topic

logger = logging.getLogger(__name__)


def _build_event(
    event_type: str,
    job_id: uuid.UUID,
    *,
    data: dict[str, Any] | None = None,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Construct a standardised event payload."""
    return {
        "event_type": event_type,
        "job_id": str(job_id),
        "actor_id": str(actor_id) if actor_id else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data or {},
    }


async def _deliver(topics: Iterable[str], event: dict[str, Any]) -> None:
    publisher = get_publisher()
    for topic in topics:
        try:
            await publisher.publish(topic, event["event_type"], event)
        except Exception:
            logger.warning(
                "Failed to deliver %s to %s",
                event["event_type"],
                topic,
                exc_info=True,
            )


async def emit_broadcast_created(
    job_id: uuid.UUID,
    broadcast_id: uuid.UUID,
    provider_ids: Iterable[uuid.UUID],
    *,
    job_type: str,
    origin: dict[str, Any],
    estimated_price: str | None,
    broadcast_until: datetime,
) -> dict[str, Any]:
    """Tell every provider in the pool about a new broadcast."""
    recipients = list(provider_ids)
    event = _build_event(
        "broadcast.created",
        job_id,
        data={
            "broadcast_id": str(broadcast_id),
            "job_type": job_type,
            "origin": origin,
            "estimated_price": estimated_price,
            "broadcast_until": broadcast_until.isoformat(),
        },
    )
    await _deliver((provider_topic(pid) for pid in recipients), event)
    logger.info(
        "Event emitted: %s for job %s to %d providers",
        event["event_type"],
        job_id,
        len(recipients),
    )
    return event


async def emit_offer_submitted(
    job_id: uuid.UUID,
    broadcast_id: uuid.UUID,
    offer_id: uuid.UUID,
    provider_id: uuid.UUID,
    bid_amount: str,
    eta_minutes: int | None,
) -> dict[str, Any]:
    event = _build_event(
        "offer.submitted",
        job_id,
        actor_id=provider_id,
        data={
            "broadcast_id": str(broadcast_id),
            "offer_id": str(offer_id),
            "bid_amount": bid_amount,
            "eta_minutes": eta_minutes,
        },
    )
    await _deliver([job_topic(job_id)], event)
    logger.info("Event emitted: %s for job %s", event["event_type"], job_id)
    return event


async def emit_offer_accepted(
    job_id: uuid.UUID,
    broadcast_id: uuid.UUID,
    offer_id: uuid.UUID,
    provider_id: uuid.UUID,
    customer_id: uuid.UUID,
    agreed_price: str,
) -> dict[str, Any]:
    """Notify the winning provider and the job room."""
    event = _build_event(
        "offer.accepted",
        job_id,
        actor_id=customer_id,
        data={
            "broadcast_id": str(broadcast_id),
            "offer_id": str(offer_id),
            "provider_id": str(provider_id),
            "agreed_price": agreed_price,
        },
    )
    await _deliver([provider_topic(provider_id), job_topic(job_id)], event)
    logger.info(
        "Event emitted: %s for job %s -> provider %s",
        event["event_type"],
        job_id,
        provider_id,
    )
    return event


async def emit_offers_rejected(
    job_id: uuid.UUID,
    broadcast_id: uuid.UUID,
    rejected: Iterable[tuple[uuid.UUID, uuid.UUID]],
    reason: str,
) -> list[dict[str, Any]]:
    """Notify each losing bidder.  ``rejected`` yields (offer_id, provider_id)."""
    events: list[dict[str, Any]] = []
    for offer_id, provider_id in rejected:
        event = _build_event(
            "offer.rejected",
            job_id,
            data={
                "broadcast_id": str(broadcast_id),
                "offer_id": str(offer_id),
                "reason": reason,
            },
        )
        await _deliver([provider_topic(provider_id)], event)
        events.append(event)
    if events:
        logger.info("Event emitted: offer.rejected x%d for job %s", len(events), job_id)
    return events


async def emit_broadcast_expired(job_id: uuid.UUID, broadcast_id: uuid.UUID) -> dict[str, Any]:
    event = _build_event(
        "broadcast.expired",
        job_id,
        data={"broadcast_id": str(broadcast_id)},
    )
    await _deliver([job_topic(job_id)], event)
    logger.info("Event emitted: %s for job %s", event["event_type"], job_id)
    return event


async def emit_broadcast_cancelled(
    job_id: uuid.UUID,
    broadcast_id: uuid.UUID,
    customer_id: uuid.UUID,
    bidder_ids: Iterable[uuid.UUID],
    reason: str | None = None,
) -> dict[str, Any]:
    event = _build_event(
        "broadcast.cancelled",
        job_id,
        actor_id=customer_id,
        data={"broadcast_id": str(broadcast_id), "reason": reason},
    )
    topics = [job_topic(job_id)] + [provider_topic(pid) for pid in bidder_ids]
    await _deliver(topics, event)
    logger.info("Event emitted: %s for job %s", event["event_type"], job_id)
    return event


async def emit_job_status_changed(
    job_id: uuid.UUID,
    old_status: str,
    new_status: str,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Emit event when a job transitions between states."""
    event = _build_event(
        "job.status_changed",
        job_id,
        actor_id=actor_id,
        data={
            "old_status": old_status,
            "new_status": new_status,
        },
    )
    await _deliver([job_topic(job_id)], event)
    logger.info(
        "Event emitted: %s for job %s (%s -> %s)",
        event["event_type"],
        job_id,
        old_status,
        new_status,
    )
    return event


async def emit_provider_moved(
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    *,
    latitude: float,
    longitude: float,
    heading: float | None,
    speed: float | None,
    eta_minutes: int | None,
    distance_km: float | None,
    routing_method: str | None,
) -> dict[str, Any]:
    event = _build_event(
        "location.provider_moved",
        job_id,
        actor_id=provider_id,
        data={
            "latitude": latitude,
            "longitude": longitude,
            "heading": heading,
            "speed": speed,
            "eta_minutes": eta_minutes,
            "distance_km": distance_km,
            "routing_method": routing_method,
        },
    )
    await _deliver([job_topic(job_id)], event)
    logger.debug("Event emitted: %s for job %s", event["event_type"], job_id)
    return event
