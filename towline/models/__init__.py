"""
Towline SQLAlchemy Models
=========================

Central import point for all ORM models. Import ``Base`` from here for
Alembic auto-generation and for the ``create_all`` convenience in tests.

Usage::

    from towline.models import Base, Job, JobBroadcast, JobOffer
"""

# -- Base & Mixins --
from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin

# -- Users & providers --
from .user import ProviderProfile, User, UserRole, UserStatus

# -- Vehicles --
from .vehicle import Vehicle

# -- Jobs --
from .job import Job, JobStatus, JobType, Urgency

# -- Broadcasts & offers --
from .broadcast import BroadcastStatus, JobBroadcast, JobOffer, OfferStatus

# -- Location samples --
from .location import LocationStatus, ProviderLocation

# -- Settings --
from .system_setting import SettingType, SystemSetting

__all__ = [
    "Base",
    "JSONType",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "User",
    "UserRole",
    "UserStatus",
    "ProviderProfile",
    "Vehicle",
    "Job",
    "JobStatus",
    "JobType",
    "Urgency",
    "JobBroadcast",
    "JobOffer",
    "BroadcastStatus",
    "OfferStatus",
    "ProviderLocation",
    "LocationStatus",
    "SystemSetting",
    "SettingType",
]
