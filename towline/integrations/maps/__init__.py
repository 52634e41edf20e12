"""
Maps & routing integration package
==================================

Public API for route resolution and the OSRM client used by dispatch and
live tracking.

Typical usage::

    from towline.integrations.maps import resolve_route, RouteResult
"""

from towline.integrations.maps.distanceCalculator import (
    ZERO_ROUTE,
    RouteResult,
    RoutingMethod,
    estimate_route,
    resolve_route,
    traffic_factor,
)
from towline.integrations.maps.osrmService import OSRMError, OSRMRoute, get_route

__all__ = [
    # osrmService
    "OSRMError",
    "OSRMRoute",
    "get_route",
    # distanceCalculator
    "RouteResult",
    "RoutingMethod",
    "ZERO_ROUTE",
    "estimate_route",
    "resolve_route",
    "traffic_factor",
]
