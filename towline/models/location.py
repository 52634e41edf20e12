"""
SQLAlchemy model for provider_locations, the append-only time series of
provider GPS samples.  Rows are never updated; pruning is operational.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Index, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UUIDPrimaryKeyMixin, _utcnow


class LocationStatus(str, enum.Enum):
    ONLINE = "online"
    ON_JOB = "on_job"
    OFFLINE = "offline"


class ProviderLocation(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "provider_locations"
    __table_args__ = (
        Index("ix_provider_locations_provider_recorded", "provider_id", "recorded_at"),
        Index("ix_provider_locations_job_recorded", "job_id", "recorded_at"),
    )

    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("jobs.id", ondelete="SET NULL"),
        nullable=True,
    )
    latitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    longitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[LocationStatus] = mapped_column(
        Enum(LocationStatus, name="location_status"),
        nullable=False,
        default=LocationStatus.ONLINE,
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderLocation(provider={self.provider_id}, "
            f"lat={self.latitude}, lng={self.longitude}, at={self.recorded_at})>"
        )
