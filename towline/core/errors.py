"""
Dispatch error taxonomy.

Every business-rule violation raised by a dispatch operation is a
``DispatchError`` carrying a stable machine-readable ``kind`` and a
human-readable message.  Store outages surface as ``TransientStoreError``,
which deliberately sits outside the ``DispatchError`` hierarchy so callers
can tell "retry later" apart from "you asked for something invalid".
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_STATUS = "INVALID_STATUS"
    EXPIRED = "EXPIRED"
    DUPLICATE_OFFER = "DUPLICATE_OFFER"
    NO_PROVIDERS = "NO_PROVIDERS"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    UNAVAILABLE = "UNAVAILABLE"
    INVALID_COORDINATES = "INVALID_COORDINATES"


class DispatchError(Exception):
    """Base class for typed dispatch failures."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidRequestError(DispatchError):
    kind = ErrorKind.VALIDATION_ERROR


class NotFoundError(DispatchError):
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(DispatchError):
    kind = ErrorKind.FORBIDDEN


class InvalidStatusError(DispatchError):
    kind = ErrorKind.INVALID_STATUS


class BroadcastExpiredError(DispatchError):
    kind = ErrorKind.EXPIRED


class DuplicateOfferError(DispatchError):
    kind = ErrorKind.DUPLICATE_OFFER


class NoProvidersError(DispatchError):
    """Raised when no eligible provider is in range.  The job stays on
    record (status NO_PROVIDERS_AVAILABLE); ``job_id`` identifies it."""

    kind = ErrorKind.NO_PROVIDERS

    def __init__(self, message: str, *, job_id: Any = None) -> None:
        self.job_id = job_id
        super().__init__(message, details={"job_id": str(job_id)} if job_id else None)


class ConcurrentModificationError(DispatchError):
    """Lost a race on the broadcast record.  Re-read and retry."""

    kind = ErrorKind.CONCURRENT_MODIFICATION


class ProviderUnavailableError(DispatchError):
    kind = ErrorKind.UNAVAILABLE


class InvalidCoordinatesError(DispatchError):
    kind = ErrorKind.INVALID_COORDINATES

    def __init__(self, latitude: float, longitude: float, message: str | None = None) -> None:
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(
            message or f"Coordinate ({latitude}, {longitude}) is outside the operating region",
            details={"latitude": latitude, "longitude": longitude},
        )


class TransientStoreError(Exception):
    """The durable store failed for a reason unrelated to business rules."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message)
