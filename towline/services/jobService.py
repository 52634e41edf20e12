"""
Job Service
===========

Business logic for the job lifecycle after dispatch.  Creation and
cancellation before assignment live in ``broadcastManager``; acceptance
lives in ``acceptanceCoordinator``.

Key functions:
  - update_job_status -- the assigned provider moves the job forward
  - get_job           -- single job retrieval
  - get_jobs_by_customer / get_jobs_by_provider -- paginated lists
"""

from __future__ import annotations

import logging
import math
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from towline.core.errors import (
    ConcurrentModificationError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
)
from towline.core.timeutils import utcnow
from towline.events.dispatchEvents import emit_job_status_changed
from towline.models.broadcast import BroadcastStatus, JobBroadcast
from towline.models.job import Job, JobStatus
from towline.services.broadcastGuard import atomic, broadcast_lock, compare_and_set, load_broadcast
from towline.services.jobStateManager import ActorType, require_transition

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pagination helper
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaginatedResult:
    """Generic container for a page of results plus metadata."""

    items: Sequence
    total_items: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total_items == 0:
            return 0
        return math.ceil(self.total_items / self.page_size)


# ---------------------------------------------------------------------------
# Status updates
# ---------------------------------------------------------------------------

async def _selected_broadcast_id(db: AsyncSession, job_id: uuid.UUID) -> Optional[uuid.UUID]:
    result = await db.execute(
        select(JobBroadcast.id).where(
            JobBroadcast.job_id == job_id,
            JobBroadcast.status == BroadcastStatus.TECHNICIAN_SELECTED,
        )
    )
    return result.scalar_one_or_none()


async def update_job_status(
    db: AsyncSession,
    provider_id: uuid.UUID,
    job_id: uuid.UUID,
    new_status: JobStatus | str,
    *,
    now: datetime | None = None,
) -> Job:
    """Transition an assigned job to a new status using the state machine.

    Completing a job also closes its broadcast (TECHNICIAN_SELECTED ->
    COMPLETED) in the same unit of work.

    Args:
        db: Async database session.
        provider_id: The provider performing the transition; must be the
            one assigned to the job.
        job_id: UUID of the job to update.
        new_status: Target status.

    Returns:
        The updated Job ORM instance.

    Raises:
        NotFoundError: If the job does not exist.
        ForbiddenError: If the caller is not the assigned provider.
        InvalidRequestError: If ``new_status`` is not a job status.
        InvalidStatusError: If the transition is not allowed.
        ConcurrentModificationError: If the broadcast changed before it
            could be completed.
    """
    moment = now or utcnow()
    try:
        target_status = JobStatus(new_status)
    except ValueError as exc:
        raise InvalidRequestError(
            f"Unknown job status '{new_status}'",
            details={"requested_status": str(new_status)},
        ) from exc

    job = await db.get(Job, job_id, populate_existing=True)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    if job.provider_id is None or job.provider_id != provider_id:
        raise ForbiddenError("Only the assigned provider can update this job")

    require_transition(job.status, target_status, ActorType.PROVIDER)

    broadcast_id = None
    if target_status == JobStatus.COMPLETED:
        broadcast_id = await _selected_broadcast_id(db, job_id)
    lock = broadcast_lock(broadcast_id) if broadcast_id is not None else nullcontext()

    async with lock:
        async with atomic(db, "update_job_status"):
            job = await db.get(Job, job_id, populate_existing=True, with_for_update=True)
            old_status = job.status
            require_transition(old_status, target_status, ActorType.PROVIDER)

            if broadcast_id is not None:
                broadcast = await load_broadcast(db, broadcast_id, for_update=True)
                swapped = await compare_and_set(
                    db,
                    broadcast,
                    BroadcastStatus.COMPLETED,
                    allowed_from=[BroadcastStatus.TECHNICIAN_SELECTED],
                    now=moment,
                )
                if not swapped:
                    raise ConcurrentModificationError(
                        f"Broadcast {broadcast_id} changed before it could be completed"
                    )

            job.status = target_status

            # Set lifecycle timestamps based on the new status
            if target_status == JobStatus.IN_PROGRESS:
                job.started_at = moment
            elif target_status == JobStatus.COMPLETED:
                job.completed_at = moment

            await db.flush()

    await emit_job_status_changed(
        job.id,
        old_status.value,
        target_status.value,
        actor_id=provider_id,
    )

    logger.info(
        "Job %s transitioned: %s -> %s (provider=%s)",
        job.id,
        old_status.value,
        target_status.value,
        provider_id,
    )

    return job


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_job(
    db: AsyncSession,
    job_id: uuid.UUID,
) -> Job | None:
    """Fetch a single job by primary key with its broadcasts eagerly loaded.

    Returns None if the job is not found.
    """
    stmt = (
        select(Job)
        .options(selectinload(Job.broadcasts))
        .where(Job.id == job_id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _paginate(
    db: AsyncSession,
    where_clause,
    page: int,
    page_size: int,
    status: JobStatus | None,
) -> PaginatedResult:
    if page < 1 or page_size < 1:
        raise InvalidRequestError(
            "page and page_size must be positive",
            details={"page": page, "page_size": page_size},
        )
    filters = [where_clause]
    if status is not None:
        filters.append(Job.status == status)

    count_stmt = select(func.count(Job.id)).where(*filters)
    total = (await db.execute(count_stmt)).scalar_one()

    stmt = (
        select(Job)
        .where(*filters)
        .order_by(Job.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(stmt)
    return PaginatedResult(
        items=list(result.scalars().all()),
        total_items=total,
        page=page,
        page_size=page_size,
    )


async def get_jobs_by_customer(
    db: AsyncSession,
    customer_id: uuid.UUID,
    *,
    page: int = 1,
    page_size: int = 20,
    status: JobStatus | None = None,
) -> PaginatedResult:
    """Newest jobs first for one customer."""
    return await _paginate(db, Job.customer_id == customer_id, page, page_size, status)


async def get_jobs_by_provider(
    db: AsyncSession,
    provider_id: uuid.UUID,
    *,
    page: int = 1,
    page_size: int = 20,
    status: JobStatus | None = None,
) -> PaginatedResult:
    """Newest jobs first for one assigned provider."""
    return await _paginate(db, Job.provider_id == provider_id, page, page_size, status)
