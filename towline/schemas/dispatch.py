"""
Pydantic v2 schemas for dispatch inputs.

Covers:
- Broadcast requests, with job-type details as a discriminated union
  (towing vs. car wash) so each type's required fields are checked when
  the request is built
- Offer (bid) submissions
- Provider location pushes

``parse_request`` turns raw payloads into these models and reports
pydantic validation failures as ``InvalidRequestError``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from towline.core.errors import InvalidRequestError
from towline.models.job import JobType, Urgency


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------

class GeoPoint(BaseModel):
    """A coordinate with an optional human-readable address.

    Range checks against the operating region happen in the services, which
    report them as INVALID_COORDINATES.
    """

    latitude: float
    longitude: float
    address: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Job-type details (tagged variant)
# ---------------------------------------------------------------------------

class VehicleCondition(str, enum.Enum):
    NOT_STARTING = "not_starting"
    ACCIDENT = "accident"
    FLAT_TIRE = "flat_tire"
    BREAKDOWN = "breakdown"
    OTHER = "other"


class TowingType(str, enum.Enum):
    FLATBED = "flatbed"
    WHEEL_LIFT = "wheel_lift"
    ANY = "any"


class CarWashServiceType(str, enum.Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    FULL = "full"


class TowingDetails(BaseModel):
    job_type: Literal["towing"] = "towing"
    vehicle_condition: VehicleCondition
    towing_type: TowingType = TowingType.ANY
    vehicle_rolls: bool = True


class CarWashDetails(BaseModel):
    """On-site service: the provider comes to the pickup point."""

    job_type: Literal["car_wash"] = "car_wash"
    service_type: CarWashServiceType
    water_available: bool = False
    power_available: bool = False


JobDetails = Annotated[Union[TowingDetails, CarWashDetails], Field(discriminator="job_type")]

ON_SITE_JOB_TYPES: frozenset[JobType] = frozenset({JobType.CAR_WASH})


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class BroadcastRequest(BaseModel):
    """A customer's request to dispatch a job to nearby providers."""

    vehicle_id: uuid.UUID
    pickup: GeoPoint
    destination: Optional[GeoPoint] = None
    urgency: Urgency = Urgency.NORMAL
    details: JobDetails
    notes: Optional[str] = Field(default=None, max_length=2000)

    @property
    def job_type(self) -> JobType:
        return JobType(self.details.job_type)

    @property
    def is_on_site(self) -> bool:
        return self.job_type in ON_SITE_JOB_TYPES

    @model_validator(mode="after")
    def _check_destination(self) -> "BroadcastRequest":
        if not self.is_on_site and self.destination is None:
            raise ValueError(f"{self.job_type.value} jobs require a destination")
        return self


class OfferRequest(BaseModel):
    """A provider's bid against an open broadcast."""

    bid_amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    message: Optional[str] = Field(default=None, max_length=1000)
    estimated_arrival_minutes: Optional[int] = Field(default=None, ge=0, le=1440)


class LocationUpdate(BaseModel):
    """One GPS sample pushed by a provider app."""

    latitude: float
    longitude: float
    heading: Optional[float] = Field(default=None, ge=0, le=360)
    speed: Optional[float] = Field(default=None, ge=0)
    accuracy: Optional[float] = Field(default=None, ge=0)
    job_id: Optional[uuid.UUID] = None
    recorded_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Parsing helper
# ---------------------------------------------------------------------------

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_request(model_cls: type[ModelT], payload: ModelT | dict[str, Any]) -> ModelT:
    """Validate ``payload`` into ``model_cls``.

    Raises:
        InvalidRequestError: The payload is malformed or misses a field.
    """
    if isinstance(payload, model_cls):
        return payload
    try:
        return model_cls.model_validate(payload)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise InvalidRequestError(
            f"Invalid {model_cls.__name__}: {errors[0]['field']}: {errors[0]['message']}",
            details={"errors": errors},
        ) from exc
