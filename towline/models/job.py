"""
SQLAlchemy model for jobs (customer bookings dispatched through broadcasts).

A job is never hard-deleted: terminal states are kept for history.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class JobType(str, enum.Enum):
    TOWING = "towing"
    CAR_WASH = "car_wash"


class JobStatus(str, enum.Enum):
    PENDING_BROADCAST = "pending_broadcast"
    BROADCASTING = "broadcasting"
    NO_PROVIDERS_AVAILABLE = "no_providers_available"
    BROADCAST_EXPIRED = "broadcast_expired"
    PROVIDER_ASSIGNED = "provider_assigned"
    PROVIDER_EN_ROUTE = "provider_en_route"
    PROVIDER_ARRIVED = "provider_arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Urgency(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"


class Job(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "jobs"

    job_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    job_type: Mapped[JobType] = mapped_column(Enum(JobType, name="job_type"), nullable=False)

    # Parties
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id"),
        nullable=True,
        index=True,
    )
    vehicle_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vehicles.id"),
        nullable=True,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status"),
        nullable=False,
        default=JobStatus.PENDING_BROADCAST,
    )
    urgency: Mapped[Urgency] = mapped_column(
        Enum(Urgency, name="job_urgency"),
        nullable=False,
        default=Urgency.NORMAL,
    )

    # Geo: destination equals pickup for on-site services
    pickup_latitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    pickup_longitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    pickup_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    destination_latitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    destination_longitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    destination_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Trip sizing
    estimated_distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    estimated_duration_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    routing_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Commercial
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SAR")
    estimated_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    agreed_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    pricing_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    total_for_customer: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    platform_commission: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    vendor_earnings: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Job-type specific attributes, validated by towline.schemas.dispatch
    details_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    broadcasts: Mapped[list["JobBroadcast"]] = relationship(
        "JobBroadcast", back_populates="job", order_by="JobBroadcast.created_at"
    )

    @property
    def has_destination(self) -> bool:
        return self.destination_latitude is not None and self.destination_longitude is not None

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, number={self.job_number}, status={self.status})>"
