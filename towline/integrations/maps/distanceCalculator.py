"""
Route and ETA resolver
======================

Provides driving distance and duration between two points using the OSRM
routing provider, with automatic fallback to a haversine estimate when the
provider is slow, down, or has no route.

The fallback divides the great-circle distance by an average city speed
and scales the result by a time-of-day traffic factor.  The same factor
table is used for dispatch sizing and for live-tracking ETAs so both
always agree.

``resolve_route`` never raises for a failed lookup: callers always get a
best-effort result and can check ``accurate`` / ``method``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

import httpx

from towline.core.config import settings
from towline.core.rounding import round_half_up
from towline.core.timeutils import local_hour, utcnow
from towline.integrations.maps.osrmService import OSRMError, get_route
from towline.services.geoService import Coordinate, distance_km

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# (first hour, last hour inclusive, factor), checked in order
_TRAFFIC_WINDOWS: Final[tuple[tuple[int, int, float], ...]] = (
    (7, 9, 1.5),    # morning commute
    (12, 14, 1.3),  # midday
    (16, 19, 1.6),  # evening commute
    (0, 5, 0.8),    # late night
)
_BASELINE_TRAFFIC_FACTOR: Final[float] = 1.0

# Slack on top of the provider timeout for the retry backoff
_RESOLVE_BUDGET_SLACK_SECONDS: Final[float] = 1.0


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


class RoutingMethod(str, enum.Enum):
    ROUTED = "ROUTED"
    ESTIMATED = "ESTIMATED"


@dataclass(frozen=True)
class RouteResult:
    """Distance/duration between two points and how it was obtained."""

    distance_km: float
    duration_minutes: int
    method: RoutingMethod
    accurate: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "distance_km": self.distance_km,
            "duration_minutes": self.duration_minutes,
            "method": self.method.value,
            "accurate": self.accurate,
        }


ZERO_ROUTE = RouteResult(
    distance_km=0.0,
    duration_minutes=0,
    method=RoutingMethod.ESTIMATED,
    accurate=True,
)


# ---------------------------------------------------------------------------
# Traffic model and fallback
# ---------------------------------------------------------------------------


def traffic_factor(hour: int) -> float:
    """Return the congestion multiplier for a local hour of day (0-23)."""
    for start, end, factor in _TRAFFIC_WINDOWS:
        if start <= hour <= end:
            return factor
    return _BASELINE_TRAFFIC_FACTOR


def estimate_route(
    origin: Coordinate,
    destination: Coordinate,
    at: datetime | None = None,
    *,
    average_speed_kmh: float | None = None,
) -> RouteResult:
    """Straight-line estimate used when the routing provider is unavailable.

    ``duration = distance / average_speed * traffic_factor(hour)``, in
    minutes, where ``hour`` is the local hour of ``at``.
    """
    speed = average_speed_kmh or settings.routing_fallback_speed_kmh
    when = at or utcnow()
    straight_km = distance_km(origin, destination)
    duration = (straight_km / speed) * 60.0 * traffic_factor(local_hour(when))

    return RouteResult(
        distance_km=round_half_up(straight_km, 1),
        duration_minutes=int(round_half_up(duration)),
        method=RoutingMethod.ESTIMATED,
        accurate=False,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def resolve_route(
    origin: Coordinate,
    destination: Coordinate,
    *,
    at: datetime | None = None,
    client: httpx.AsyncClient | None = None,
) -> RouteResult:
    """Resolve driving distance and duration between two points.

    Tries OSRM first, bounded by the configured routing timeout.  Any
    failure (timeout, transport error, non-Ok answer) degrades to
    ``estimate_route`` for the same request time.
    """
    budget = settings.routing_timeout_seconds + _RESOLVE_BUDGET_SLACK_SECONDS
    try:
        route = await asyncio.wait_for(
            get_route(
                (origin.latitude, origin.longitude),
                (destination.latitude, destination.longitude),
                client=client,
            ),
            timeout=budget,
        )
        return RouteResult(
            distance_km=round_half_up(route.distance_meters / 1000.0, 1),
            duration_minutes=int(round_half_up(route.duration_seconds / 60.0)),
            method=RoutingMethod.ROUTED,
            accurate=True,
        )

    except (OSRMError, asyncio.TimeoutError) as exc:
        logger.warning(
            "Routing failed for (%.5f,%.5f)->(%.5f,%.5f): %s; falling back to estimate",
            origin.latitude,
            origin.longitude,
            destination.latitude,
            destination.longitude,
            exc,
        )
        return estimate_route(origin, destination, at)

    except Exception as exc:
        logger.error(
            "Unexpected error in resolve_route: %s",
            exc,
            exc_info=True,
        )
        return estimate_route(origin, destination, at)
