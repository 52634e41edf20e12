"""
Job & Broadcast State Manager
=============================

Finite state machines for job and broadcast statuses.  Every status change
MUST go through ``validate_transition`` / ``validate_broadcast_transition``
before being persisted.

Job lifecycle::

    pending_broadcast --> broadcasting --> provider_assigned
        --> provider_en_route --> provider_arrived --> in_progress --> completed

    pending_broadcast --> no_providers_available
    broadcasting      --> broadcast_expired
    pending_broadcast | broadcasting --> cancelled   (customer or system)
    provider_assigned .. in_progress --> cancelled   (system only)

Broadcast lifecycle::

    broadcasting (--> offers_received) --> technician_selected --> completed
    broadcasting | offers_received --> expired | cancelled

Guards enforce which actor may trigger a transition.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from towline.core.errors import InvalidStatusError
from towline.models.broadcast import BroadcastStatus
from towline.models.job import JobStatus


# ---------------------------------------------------------------------------
# Actor types for guard enforcement
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING_BROADCAST: {
        JobStatus.BROADCASTING,
        JobStatus.NO_PROVIDERS_AVAILABLE,
        JobStatus.CANCELLED,
    },
    JobStatus.BROADCASTING: {
        JobStatus.PROVIDER_ASSIGNED,
        JobStatus.BROADCAST_EXPIRED,
        JobStatus.CANCELLED,
    },
    JobStatus.PROVIDER_ASSIGNED: {
        JobStatus.PROVIDER_EN_ROUTE,
        JobStatus.CANCELLED,
    },
    JobStatus.PROVIDER_EN_ROUTE: {
        JobStatus.PROVIDER_ARRIVED,
        JobStatus.CANCELLED,
    },
    JobStatus.PROVIDER_ARRIVED: {
        JobStatus.IN_PROGRESS,
        JobStatus.CANCELLED,
    },
    JobStatus.IN_PROGRESS: {
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    },
    # Terminal states
    JobStatus.NO_PROVIDERS_AVAILABLE: set(),
    JobStatus.BROADCAST_EXPIRED: set(),
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

BROADCAST_TRANSITIONS: dict[BroadcastStatus, set[BroadcastStatus]] = {
    BroadcastStatus.BROADCASTING: {
        BroadcastStatus.OFFERS_RECEIVED,
        BroadcastStatus.TECHNICIAN_SELECTED,
        BroadcastStatus.EXPIRED,
        BroadcastStatus.CANCELLED,
    },
    BroadcastStatus.OFFERS_RECEIVED: {
        BroadcastStatus.TECHNICIAN_SELECTED,
        BroadcastStatus.EXPIRED,
        BroadcastStatus.CANCELLED,
    },
    BroadcastStatus.TECHNICIAN_SELECTED: {
        BroadcastStatus.COMPLETED,
        BroadcastStatus.CANCELLED,
    },
    BroadcastStatus.COMPLETED: set(),
    BroadcastStatus.EXPIRED: set(),
    BroadcastStatus.CANCELLED: set(),
}

# Broadcast statuses that still take offers / count as "open" for a job
OPEN_BROADCAST_STATUSES: frozenset[BroadcastStatus] = frozenset({
    BroadcastStatus.BROADCASTING,
    BroadcastStatus.OFFERS_RECEIVED,
})

# Statuses in which the customer can still cancel
_CUSTOMER_CANCELLABLE: frozenset[JobStatus] = frozenset({
    JobStatus.PENDING_BROADCAST,
    JobStatus.BROADCASTING,
})

# Statuses the assigned provider moves the job through
PROVIDER_PROGRESS_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.PROVIDER_EN_ROUTE,
    JobStatus.PROVIDER_ARRIVED,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETED,
})


# ---------------------------------------------------------------------------
# Guard functions
# ---------------------------------------------------------------------------

def _guard_cancel(current: JobStatus, actor_type: ActorType) -> TransitionResult:
    """Customers may cancel only before assignment; the system at any time."""
    if actor_type == ActorType.PROVIDER:
        return TransitionResult(allowed=False, reason="Providers cannot cancel a job.")
    if actor_type == ActorType.SYSTEM or current in _CUSTOMER_CANCELLABLE:
        return TransitionResult(allowed=True)
    return TransitionResult(
        allowed=False,
        reason=(
            f"Job cannot be cancelled in '{current.value}' status. "
            f"Cancellation is only allowed in: "
            f"{', '.join(s.value for s in sorted(_CUSTOMER_CANCELLABLE, key=lambda s: s.value))}."
        ),
    )


def _guard_provider_progress(new_status: JobStatus, actor_type: ActorType) -> TransitionResult:
    """Only the provider (or the system on their behalf) moves work forward."""
    if actor_type not in (ActorType.PROVIDER, ActorType.SYSTEM):
        return TransitionResult(
            allowed=False,
            reason=f"Only the assigned provider can move a job to '{new_status.value}'.",
        )
    return TransitionResult(allowed=True)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_transition(
    current_status: JobStatus,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate whether a job status transition is allowed.

    Checks two layers:
    1. Is the transition structurally valid per the state machine?
    2. Does the actor have permission for this specific transition (guards)?
    """
    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{', '.join(s.value for s in sorted(allowed_targets, key=lambda s: s.value)) or 'none'}."
            ),
        )

    if new_status == JobStatus.CANCELLED:
        return _guard_cancel(current_status, actor_type)

    if new_status in PROVIDER_PROGRESS_STATUSES:
        return _guard_provider_progress(new_status, actor_type)

    return TransitionResult(allowed=True)


def validate_broadcast_transition(
    current_status: BroadcastStatus,
    new_status: BroadcastStatus,
) -> TransitionResult:
    allowed_targets = BROADCAST_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=f"Invalid broadcast transition: '{current_status.value}' -> '{new_status.value}'.",
        )
    return TransitionResult(allowed=True)


def require_transition(
    current_status: JobStatus,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> None:
    """Raise ``InvalidStatusError`` unless the job transition is allowed."""
    result = validate_transition(current_status, new_status, actor_type)
    if not result.allowed:
        raise InvalidStatusError(
            result.reason or "Transition not allowed",
            details={"current_status": current_status.value, "requested_status": new_status.value},
        )
