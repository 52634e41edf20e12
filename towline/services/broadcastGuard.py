"""
Broadcast Guard
===============

The broadcast row is the mutual-exclusion boundary of the dispatch engine.
Every change to its status or offer counter goes through
``compare_and_set`` here:

1. ``broadcast_lock`` serializes writers for one broadcast inside this
   process, so in-process races resolve to a clean re-read instead of a
   store conflict.
2. ``load_broadcast(..., for_update=True)`` re-reads the row (and takes a
   row lock on PostgreSQL) once the lock is held.
3. ``compare_and_set`` issues a single guarded UPDATE: it only matches if
   the row still has the version that was read, one of the allowed prior
   statuses and (optionally) an unexpired window.  Zero matched rows means
   another replica got there first.

Expiry is lazy: a broadcast past ``broadcast_until`` that never reached
TECHNICIAN_SELECTED reads as EXPIRED through ``effective_status`` even
before the sweep persists it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from towline.core.errors import (
    ConcurrentModificationError,
    DispatchError,
    InvalidStatusError,
    TransientStoreError,
)
from towline.core.timeutils import ensure_utc, utcnow
from towline.models.broadcast import BroadcastStatus, JobBroadcast, JobOffer, OfferStatus
from towline.models.job import JobStatus
from towline.services.jobStateManager import OPEN_BROADCAST_STATUSES, validate_broadcast_transition

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure, deadlock_detected, lock_not_available
_CONFLICT_SQLSTATES: frozenset[str] = frozenset({"40001", "40P01", "55P03"})

# Columns compare_and_set may change; refreshed after a successful swap
_GUARDED_COLUMNS: tuple[str, ...] = (
    "status",
    "version",
    "offer_count",
    "closed_at",
    "selected_offer_id",
    "updated_at",
)

_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


# ---------------------------------------------------------------------------
# Locking and transactions
# ---------------------------------------------------------------------------

@asynccontextmanager
async def broadcast_lock(broadcast_id: uuid.UUID) -> AsyncIterator[None]:
    """Hold the in-process writer lock for one broadcast."""
    lock = _locks.get(broadcast_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[broadcast_id] = lock
    async with lock:
        yield


def is_write_conflict(exc: DBAPIError) -> bool:
    """True when the store rejected a write because of a concurrent writer."""
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


@asynccontextmanager
async def atomic(db: AsyncSession, operation: str) -> AsyncIterator[None]:
    """Run the block as one unit of work and commit it.

    Business errors roll back and propagate unchanged.  Store errors roll
    back and are reported as ``ConcurrentModificationError`` (write
    conflict) or ``TransientStoreError`` (anything else).
    """
    try:
        yield
        await db.commit()
    except DispatchError:
        await db.rollback()
        raise
    except DBAPIError as exc:
        await db.rollback()
        if is_write_conflict(exc):
            logger.info("%s lost a write conflict: %s", operation, exc.orig)
            raise ConcurrentModificationError(
                f"{operation} conflicted with a concurrent update; re-read and retry"
            ) from exc
        logger.error("%s failed on the store: %s", operation, exc, exc_info=True)
        raise TransientStoreError(f"{operation} failed: store unavailable", operation=operation) from exc


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def load_broadcast(
    db: AsyncSession,
    broadcast_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> JobBroadcast | None:
    """Load a broadcast with its job, always bypassing the identity map."""
    stmt = (
        select(JobBroadcast)
        .options(selectinload(JobBroadcast.job))
        .where(JobBroadcast.id == broadcast_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


def is_past_window(broadcast: JobBroadcast, now: datetime) -> bool:
    return ensure_utc(broadcast.broadcast_until) <= now


def effective_status(broadcast: JobBroadcast, now: datetime | None = None) -> BroadcastStatus:
    """Stored status with lazy expiry applied."""
    moment = now or utcnow()
    if broadcast.status in OPEN_BROADCAST_STATUSES and is_past_window(broadcast, moment):
        return BroadcastStatus.EXPIRED
    return broadcast.status


# ---------------------------------------------------------------------------
# Guarded writes
# ---------------------------------------------------------------------------

async def compare_and_set(
    db: AsyncSession,
    broadcast: JobBroadcast,
    new_status: BroadcastStatus,
    *,
    allowed_from: Iterable[BroadcastStatus],
    now: datetime | None = None,
    require_open_window: bool = False,
    increment_offers: bool = False,
    values: dict[str, Any] | None = None,
) -> bool:
    """Atomically move ``broadcast`` to ``new_status`` if nobody else did.

    The UPDATE matches only when the row still carries the version held by
    ``broadcast`` and a status in ``allowed_from``; with
    ``require_open_window`` it also needs ``broadcast_until > now``.  On
    success the version is bumped and ``broadcast`` is refreshed.  Keeping
    the status (an offer-counter bump) is always a legal move.

    Returns:
        False when the row changed underneath us (nothing was written).

    Raises:
        InvalidStatusError: ``new_status`` is not reachable from the
            status ``broadcast`` was read with.
    """
    moment = now or utcnow()
    if broadcast.status != new_status:
        check = validate_broadcast_transition(broadcast.status, new_status)
        if not check.allowed:
            raise InvalidStatusError(
                check.reason or "Broadcast transition not allowed",
                details={
                    "broadcast_id": str(broadcast.id),
                    "status": broadcast.status.value,
                    "requested_status": new_status.value,
                },
            )

    stmt = update(JobBroadcast).where(
        JobBroadcast.id == broadcast.id,
        JobBroadcast.version == broadcast.version,
        JobBroadcast.status.in_(list(allowed_from)),
    )
    if require_open_window:
        stmt = stmt.where(JobBroadcast.broadcast_until > moment)

    new_values: dict[str, Any] = {
        "status": new_status,
        "version": JobBroadcast.version + 1,
        "updated_at": moment,
    }
    if increment_offers:
        new_values["offer_count"] = JobBroadcast.offer_count + 1
    if values:
        new_values.update(values)

    result = await db.execute(
        stmt.values(**new_values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "Compare-and-set lost on broadcast %s (expected v%s, -> %s)",
            broadcast.id,
            broadcast.version,
            new_status.value,
        )
        return False

    await db.refresh(broadcast, attribute_names=list(_GUARDED_COLUMNS))
    return True


async def expire_broadcast(
    db: AsyncSession,
    broadcast: JobBroadcast,
    now: datetime | None = None,
) -> bool:
    """Persist expiry for an overdue open broadcast.  Caller holds the lock.

    Pending offers become EXPIRED and a still-broadcasting job becomes
    BROADCAST_EXPIRED.  Idempotent: returns False if the broadcast was no
    longer open or not yet due.
    """
    moment = now or utcnow()
    if broadcast.status not in OPEN_BROADCAST_STATUSES or not is_past_window(broadcast, moment):
        return False

    swapped = await compare_and_set(
        db,
        broadcast,
        BroadcastStatus.EXPIRED,
        allowed_from=OPEN_BROADCAST_STATUSES,
        now=moment,
        values={"closed_at": moment},
    )
    if not swapped:
        return False

    await db.execute(
        update(JobOffer)
        .where(JobOffer.broadcast_id == broadcast.id, JobOffer.status == OfferStatus.PENDING)
        .values(status=OfferStatus.EXPIRED, responded_at=moment)
        .execution_options(synchronize_session=False)
    )
    job = broadcast.job
    if job is not None and job.status == JobStatus.BROADCASTING:
        job.status = JobStatus.BROADCAST_EXPIRED
    await db.flush()

    logger.info("Broadcast %s expired (job %s)", broadcast.id, broadcast.job_id)
    return True
