"""
Geo Service
===========

Geographic utility functions for distance calculations, radius filtering
and operating-region validation.  Used by the broadcast manager to size the
provider pool and by the routing resolver for its straight-line fallback.

Uses the haversine formula for great-circle distance between two points
on Earth's surface. Accurate enough for search radius calculations
(error < 0.5% for distances under 100 km).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol, Sequence

from towline.core.config import settings
from towline.core.errors import InvalidCoordinatesError

# Earth's mean radius in kilometres
EARTH_RADIUS_KM: float = 6371.0


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 point in decimal degrees."""

    latitude: float
    longitude: float

    @classmethod
    def of(cls, latitude: float | Decimal, longitude: float | Decimal) -> "Coordinate":
        return cls(float(latitude), float(longitude))


@dataclass(frozen=True)
class OperatingBounds:
    """Bounding box of the region the service operates in."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_lat <= latitude <= self.max_lat
            and self.min_lng <= longitude <= self.max_lng
        )


def default_bounds() -> OperatingBounds:
    return OperatingBounds(
        min_lat=settings.operating_min_lat,
        max_lat=settings.operating_max_lat,
        min_lng=settings.operating_min_lng,
        max_lng=settings.operating_max_lng,
    )


def haversine_distance(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """Calculate the great-circle distance between two points using the
    haversine formula.

    Args:
        lat1: Latitude of point 1 in decimal degrees.
        lon1: Longitude of point 1 in decimal degrees.
        lat2: Latitude of point 2 in decimal degrees.
        lon2: Longitude of point 2 in decimal degrees.

    Returns:
        Distance in kilometres.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_km(a: Coordinate, b: Coordinate) -> float:
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def is_within_radius(center: Coordinate, point: Coordinate, radius_km: float) -> bool:
    return distance_km(center, point) <= radius_km


def validate_coordinate(
    latitude: float,
    longitude: float,
    bounds: OperatingBounds | None = None,
) -> Coordinate:
    """Return the coordinate if it lies inside the operating region.

    Raises:
        InvalidCoordinatesError: The point is not a finite number or falls
            outside ``bounds`` (the configured service-country box by default).
    """
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinatesError(latitude, longitude, "Coordinates must be numbers")

    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidCoordinatesError(lat, lng, "Coordinates must be finite numbers")

    region = bounds or default_bounds()
    if not region.contains(lat, lng):
        raise InvalidCoordinatesError(lat, lng)
    return Coordinate(lat, lng)


class HasLocation(Protocol):
    """Protocol for provider profiles carrying a last known position."""

    current_latitude: Decimal | None
    current_longitude: Decimal | None


@dataclass
class ProviderDistance:
    """A provider paired with their calculated distance from a reference point."""

    provider: Any
    distance_km: float


def filter_by_radius(
    providers: Sequence[HasLocation],
    center: Coordinate,
    radius_km: float,
) -> list[ProviderDistance]:
    """Keep the providers within ``radius_km`` of ``center``.

    Providers without a known position are skipped.

    Returns:
        List of ProviderDistance objects sorted by distance (closest first).
    """
    results: list[ProviderDistance] = []

    for provider in providers:
        if provider.current_latitude is None or provider.current_longitude is None:
            continue

        distance = haversine_distance(
            center.latitude,
            center.longitude,
            float(provider.current_latitude),
            float(provider.current_longitude),
        )
        if distance <= radius_km:
            results.append(ProviderDistance(provider=provider, distance_km=distance))

    results.sort(key=lambda pd: pd.distance_km)
    return results
