"""
SQLAlchemy models for job_broadcasts and job_offers.

A broadcast is one dispatch round for a job.  Its ``version`` column is
bumped by every status or counter change so writers can compare-and-swap
against the row they read (see ``towline.services.broadcastGuard``).
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin
from .job import JobType, Urgency


class BroadcastStatus(str, enum.Enum):
    BROADCASTING = "broadcasting"
    OFFERS_RECEIVED = "offers_received"
    TECHNICIAN_SELECTED = "technician_selected"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


# Statuses stored by name; keep in sync with OPEN_BROADCAST_STATUSES
_OPEN_STATUS_SQL = "status IN ('BROADCASTING', 'OFFERS_RECEIVED')"


class JobBroadcast(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "job_broadcasts"
    __table_args__ = (
        Index(
            "uq_job_broadcasts_open_per_job",
            "job_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_SQL),
            sqlite_where=text(_OPEN_STATUS_SQL),
        ),
        Index("ix_job_broadcasts_status_until", "status", "broadcast_until"),
    )

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_type: Mapped[JobType] = mapped_column(Enum(JobType, name="job_type"), nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
    )

    # Geo
    origin_latitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    origin_longitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    origin_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    destination_latitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    destination_longitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    destination_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    search_radius_km: Mapped[float] = mapped_column(Float, nullable=False)

    urgency: Mapped[Urgency] = mapped_column(
        Enum(Urgency, name="job_urgency"), nullable=False, default=Urgency.NORMAL
    )
    estimated_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    estimated_distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    details_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # State
    status: Mapped[BroadcastStatus] = mapped_column(
        Enum(BroadcastStatus, name="broadcast_status"),
        nullable=False,
        default=BroadcastStatus.BROADCASTING,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    offer_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    eligible_provider_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timing
    broadcast_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    selected_offer_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    # Relationships
    job: Mapped["Job"] = relationship("Job", back_populates="broadcasts")
    offers: Mapped[list["JobOffer"]] = relationship(
        "JobOffer", back_populates="broadcast", order_by="JobOffer.created_at"
    )

    def __repr__(self) -> str:
        return (
            f"<JobBroadcast(id={self.id}, job={self.job_id}, "
            f"status={self.status}, v={self.version})>"
        )


class JobOffer(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "job_offers"
    __table_args__ = (
        UniqueConstraint("broadcast_id", "provider_id", name="uq_job_offers_broadcast_provider"),
    )

    broadcast_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("job_broadcasts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
    )

    bid_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    estimated_arrival_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Provider position and computed trip at bid time
    provider_latitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    provider_longitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    eta_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    routing_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    status: Mapped[OfferStatus] = mapped_column(
        Enum(OfferStatus, name="offer_status"),
        nullable=False,
        default=OfferStatus.PENDING,
    )
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    broadcast: Mapped["JobBroadcast"] = relationship("JobBroadcast", back_populates="offers")

    def __repr__(self) -> str:
        return (
            f"<JobOffer(id={self.id}, broadcast={self.broadcast_id}, "
            f"bid={self.bid_amount}, status={self.status})>"
        )
