"""
Pricing Engine
==============

Two independent calculations:

``price_job`` -- dispatch-time quote::

    price       = base_fee + distance_km * per_km_rate
    surge       = night_surge (22:00-06:00 local) * urgent_surge (HIGH only)
    final_price = round(price * surge)

Each surge that applies records a human-readable reason so the customer
can see why the quote is higher.

``compute_service_breakdown`` -- acceptance/settlement-time split of an
agreed subtotal into tax, customer total, platform commission and vendor
earnings.  Every derived amount is rounded to 2 decimal places as it is
produced, never accumulated and rounded once at the end.

Rounding is half-up throughout.  Both functions are pure: rates come in
through ``PricingRates`` / explicit arguments, loaded by the caller from a
``SettingsProvider``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal
from typing import Any

from towline.core.errors import InvalidRequestError
from towline.core.rounding import round_half_up, round_money, round_whole, to_decimal
from towline.core.timeutils import local_hour
from towline.models.job import Urgency
from towline.services.settingsProvider import PricingRates

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NIGHT_START = time(22, 0)  # 10:00 PM
NIGHT_END = time(6, 0)     # 6:00 AM

NIGHT_SURGE_REASON = "Night time (10 PM - 6 AM)"
URGENT_SURGE_REASON = "Urgent request"


# ---------------------------------------------------------------------------
# Response DTOs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QuoteBreakdown:
    base_fee: Decimal
    distance_fee: Decimal
    distance_km: float


@dataclass(frozen=True)
class PriceQuote:
    """Dispatch-time price for a job."""
    base_price: Decimal
    surge_multiplier: Decimal
    surge_reasons: list[str]
    final_price: Decimal
    breakdown: QuoteBreakdown

    def as_json(self) -> dict[str, Any]:
        """JSON-safe form stored on the job and sent to clients."""
        return {
            "base_price": str(self.base_price),
            "surge_multiplier": str(self.surge_multiplier),
            "surge_reasons": list(self.surge_reasons),
            "final_price": str(self.final_price),
            "breakdown": {
                "base_fee": str(self.breakdown.base_fee),
                "distance_fee": str(self.breakdown.distance_fee),
                "distance_km": self.breakdown.distance_km,
            },
        }


@dataclass(frozen=True)
class ServiceBreakdown:
    """Settlement split of an agreed subtotal."""
    subtotal: Decimal
    discount: Decimal
    after_discount: Decimal
    flat_fee: Decimal
    tax: Decimal
    total_for_customer: Decimal
    platform_commission: Decimal
    vendor_earnings: Decimal
    vat_rate: Decimal
    commission_percent: Decimal

    def as_json(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "after_discount": str(self.after_discount),
            "flat_fee": str(self.flat_fee),
            "tax": str(self.tax),
            "total_for_customer": str(self.total_for_customer),
            "platform_commission": str(self.platform_commission),
            "vendor_earnings": str(self.vendor_earnings),
            "vat_rate": str(self.vat_rate),
            "commission_percent": str(self.commission_percent),
        }


# ---------------------------------------------------------------------------
# Dispatch-time quote
# ---------------------------------------------------------------------------

def is_night_hours(request_time: datetime) -> bool:
    """Check if a request falls within the night surge window (10pm-6am local)."""
    hour = local_hour(request_time)
    return hour >= NIGHT_START.hour or hour < NIGHT_END.hour


def price_job(
    distance_km: float,
    urgency: Urgency | str,
    request_time: datetime,
    rates: PricingRates | None = None,
) -> PriceQuote:
    """Quote a job from its trip distance, urgency and request time.

    Args:
        distance_km: Trip distance (pickup to destination); 0 for on-site work.
        urgency: ``Urgency.NORMAL`` or ``Urgency.HIGH`` (or their values).
        request_time: When the customer asked.  Aware datetimes are read in
            the service timezone; naive ones are taken as local time.
        rates: Fee schedule; the built-in towing defaults when omitted.

    Raises:
        InvalidRequestError: Negative distance or unknown urgency.
    """
    if distance_km < 0:
        raise InvalidRequestError(f"distance_km must be >= 0, got {distance_km}")
    try:
        urgency = Urgency(urgency)
    except ValueError:
        raise InvalidRequestError(f"Unknown urgency {urgency!r}")

    rates = rates or PricingRates()
    distance = to_decimal(distance_km)
    distance_fee = rates.per_km_rate * distance
    price = rates.base_fee + distance_fee

    surge = Decimal("1")
    reasons: list[str] = []
    if is_night_hours(request_time):
        surge *= rates.night_surge
        reasons.append(NIGHT_SURGE_REASON)
    if urgency is Urgency.HIGH:
        surge *= rates.urgent_surge
        reasons.append(URGENT_SURGE_REASON)

    quote = PriceQuote(
        base_price=round_whole(price),
        surge_multiplier=surge,
        surge_reasons=reasons,
        final_price=round_whole(price * surge),
        breakdown=QuoteBreakdown(
            base_fee=round_money(rates.base_fee),
            distance_fee=round_money(distance_fee),
            distance_km=round_half_up(distance_km, 1),
        ),
    )
    logger.debug(
        "Quoted %.1f km urgency=%s: base=%s surge=%s final=%s",
        distance_km,
        urgency.value,
        quote.base_price,
        quote.surge_multiplier,
        quote.final_price,
    )
    return quote


# ---------------------------------------------------------------------------
# Settlement breakdown
# ---------------------------------------------------------------------------

def compute_service_breakdown(
    subtotal: Decimal | float | str,
    *,
    vat_rate: Decimal | float | str,
    commission_percent: Decimal | float | str,
    discount: Decimal | float | str = 0,
    flat_fee: Decimal | float | str = 0,
) -> ServiceBreakdown:
    """Split an agreed subtotal into customer total and vendor earnings.

    ::

        after_discount      = max(0, subtotal - discount)
        tax                 = after_discount * vat_rate
        total_for_customer  = after_discount + flat_fee + tax
        platform_commission = after_discount * commission_percent / 100
        vendor_earnings     = after_discount - platform_commission

    Args:
        vat_rate: Fraction in [0, 1] (0.145 for 14.5%).
        commission_percent: Percentage in [0, 100].

    Raises:
        InvalidRequestError: Negative amounts or rates outside their range.
    """
    subtotal_d = round_money(subtotal)
    discount_d = round_money(discount)
    flat_fee_d = round_money(flat_fee)
    vat = to_decimal(vat_rate)
    commission_pct = to_decimal(commission_percent)

    if subtotal_d < 0 or discount_d < 0 or flat_fee_d < 0:
        raise InvalidRequestError("Amounts in a service breakdown must not be negative")
    if not Decimal("0") <= vat <= Decimal("1"):
        raise InvalidRequestError(f"vat_rate must be a fraction between 0 and 1, got {vat}")
    if not Decimal("0") <= commission_pct <= Decimal("100"):
        raise InvalidRequestError(
            f"commission_percent must be between 0 and 100, got {commission_pct}"
        )

    after_discount = round_money(max(Decimal("0"), subtotal_d - discount_d))
    tax = round_money(after_discount * vat)
    total_for_customer = round_money(after_discount + flat_fee_d + tax)
    platform_commission = round_money(after_discount * commission_pct / Decimal("100"))
    vendor_earnings = round_money(after_discount - platform_commission)

    return ServiceBreakdown(
        subtotal=subtotal_d,
        discount=discount_d,
        after_discount=after_discount,
        flat_fee=flat_fee_d,
        tax=tax,
        total_for_customer=total_for_customer,
        platform_commission=platform_commission,
        vendor_earnings=vendor_earnings,
        vat_rate=vat,
        commission_percent=commission_pct,
    )
