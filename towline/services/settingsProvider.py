"""
Settings Provider
=================

Single entry point for business tunables (fees, surge factors, broadcast
timeout, search radius, VAT, commission).  The pricing engine and the
broadcast manager receive a ``SettingsProvider`` instead of looking keys up
on their own, and every key has an explicit default in ``SETTING_DEFAULTS``.

Two implementations:

- ``StaticSettingsProvider`` -- an in-memory mapping (tests, tooling).
- ``DatabaseSettingsProvider`` -- reads the ``system_settings`` table.  A
  missing row or an unparsable value falls back to the default and logs a
  warning; a broken setting must never take dispatch down.

VAT is stored as a fraction in [0, 1] (``0.145`` means 14.5%).  Values
outside that range are rejected, not rescaled.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from towline.core.errors import InvalidRequestError
from towline.core.rounding import to_decimal
from towline.models.job import JobType
from towline.models.system_setting import SettingType, SystemSetting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Keys and defaults
# ---------------------------------------------------------------------------

SETTING_DEFAULTS: dict[str, float] = {
    "TOWING_BASE_PRICE": 50,
    "TOWING_PRICE_PER_KM": 5,
    "TOWING_NIGHT_SURGE": 1.3,
    "TOWING_URGENT_SURGE": 1.2,
    "TOWING_BROADCAST_TIMEOUT": 15,
    "TOWING_SEARCH_RADIUS": 10,
    "CARWASH_BASE_PRICE": 30,
    "CARWASH_PRICE_PER_KM": 0,
    "CARWASH_NIGHT_SURGE": 1.3,
    "CARWASH_URGENT_SURGE": 1.2,
    "CARWASH_BROADCAST_TIMEOUT": 15,
    "CARWASH_SEARCH_RADIUS": 10,
    "PROVIDER_LOCATION_MAX_AGE": 30,
    "VAT_RATE": 0.145,
    "PLATFORM_COMMISSION_PERCENT": 10,
}

_KEY_PREFIX: dict[JobType, str] = {
    JobType.TOWING: "TOWING",
    JobType.CAR_WASH: "CARWASH",
}


def _default_for(key: str, default: Any) -> Any:
    if default is not None:
        return default
    return SETTING_DEFAULTS.get(key)


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class SettingsProvider(Protocol):
    async def get_number(self, key: str, default: float | None = None) -> float: ...

    async def get_bool(self, key: str, default: bool = False) -> bool: ...

    async def get_json(self, key: str, default: Any = None) -> Any: ...


class StaticSettingsProvider:
    """Settings served from a plain mapping layered over the defaults."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(values or {})

    async def get_number(self, key: str, default: float | None = None) -> float:
        if key in self._values:
            return float(self._values[key])
        return float(_default_for(key, default))

    async def get_bool(self, key: str, default: bool = False) -> bool:
        return bool(self._values.get(key, default))

    async def get_json(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)


class DatabaseSettingsProvider:
    """Settings read from ``system_settings``, cached per instance.

    Build one per unit of work so edits made by admins are picked up on
    the next operation.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db
        self._cache: dict[str, SystemSetting | None] = {}

    async def _row(self, key: str) -> SystemSetting | None:
        if key not in self._cache:
            result = await self._db.execute(
                select(SystemSetting).where(SystemSetting.key == key)
            )
            self._cache[key] = result.scalar_one_or_none()
        return self._cache[key]

    async def get_number(self, key: str, default: float | None = None) -> float:
        fallback = float(_default_for(key, default))
        row = await self._row(key)
        if row is None:
            return fallback
        try:
            return float(row.value)
        except (TypeError, ValueError):
            logger.warning("Setting %s is not a number (%r); using default %s", key, row.value, fallback)
            return fallback

    async def get_bool(self, key: str, default: bool = False) -> bool:
        row = await self._row(key)
        if row is None:
            return default
        return row.value.strip().lower() in {"true", "1", "yes"}

    async def get_json(self, key: str, default: Any = None) -> Any:
        row = await self._row(key)
        if row is None:
            return default
        if row.value_type not in (SettingType.JSON, SettingType.STRING):
            return default
        try:
            return json.loads(row.value)
        except (TypeError, ValueError):
            logger.warning("Setting %s holds invalid JSON; using default", key)
            return default


# ---------------------------------------------------------------------------
# Typed views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricingRates:
    """Per-job-type fee schedule consumed by the pricing engine."""

    base_fee: Decimal = Decimal("50")
    per_km_rate: Decimal = Decimal("5")
    night_surge: Decimal = Decimal("1.3")
    urgent_surge: Decimal = Decimal("1.2")


@dataclass(frozen=True)
class DispatchPolicy:
    """Per-job-type broadcast sizing."""

    broadcast_timeout_minutes: float
    search_radius_km: float
    location_max_age_minutes: float


@dataclass(frozen=True)
class SettlementRates:
    vat_rate: Decimal
    commission_percent: Decimal


async def load_pricing_rates(provider: SettingsProvider, job_type: JobType) -> PricingRates:
    prefix = _KEY_PREFIX[job_type]
    return PricingRates(
        base_fee=to_decimal(await provider.get_number(f"{prefix}_BASE_PRICE")),
        per_km_rate=to_decimal(await provider.get_number(f"{prefix}_PRICE_PER_KM")),
        night_surge=to_decimal(await provider.get_number(f"{prefix}_NIGHT_SURGE")),
        urgent_surge=to_decimal(await provider.get_number(f"{prefix}_URGENT_SURGE")),
    )


async def load_dispatch_policy(provider: SettingsProvider, job_type: JobType) -> DispatchPolicy:
    prefix = _KEY_PREFIX[job_type]
    return DispatchPolicy(
        broadcast_timeout_minutes=await provider.get_number(f"{prefix}_BROADCAST_TIMEOUT"),
        search_radius_km=await provider.get_number(f"{prefix}_SEARCH_RADIUS"),
        location_max_age_minutes=await provider.get_number("PROVIDER_LOCATION_MAX_AGE"),
    )


async def load_settlement_rates(provider: SettingsProvider) -> SettlementRates:
    """Read VAT and commission, enforcing their canonical ranges.

    Raises:
        InvalidRequestError: VAT outside [0, 1] or commission outside [0, 100].
    """
    vat_rate = to_decimal(await provider.get_number("VAT_RATE"))
    commission = to_decimal(await provider.get_number("PLATFORM_COMMISSION_PERCENT"))
    if not Decimal("0") <= vat_rate <= Decimal("1"):
        raise InvalidRequestError(
            f"VAT_RATE must be a fraction between 0 and 1, got {vat_rate}",
            details={"key": "VAT_RATE"},
        )
    if not Decimal("0") <= commission <= Decimal("100"):
        raise InvalidRequestError(
            f"PLATFORM_COMMISSION_PERCENT must be between 0 and 100, got {commission}",
            details={"key": "PLATFORM_COMMISSION_PERCENT"},
        )
    return SettlementRates(vat_rate=vat_rate, commission_percent=commission)
