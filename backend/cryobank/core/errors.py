"""Domain error taxonomy.

Every error carries the HTTP status and machine-readable code used by the
API error handlers, so services raise them directly and routers stay thin.
"""

from fastapi import status


class CryobankError(Exception):
    """Base class for all domain errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"

    def __init__(self, message: str, details: list | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(CryobankError):
    """Malformed or out-of-range quality fields."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "QUALITY_VALIDATION_ERROR"


class TypeMismatchError(CryobankError):
    """Quality payload tag does not match the sample type."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "TYPE_MISMATCH"


class IllegalTransitionError(CryobankError):
    status_code = status.HTTP_409_CONFLICT
    code = "ILLEGAL_TRANSITION"


class NotASlotError(CryobankError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "NOT_A_SLOT"


class SlotOccupiedError(CryobankError):
    """The target slot already holds an active sample."""

    status_code = status.HTTP_409_CONFLICT
    code = "SLOT_OCCUPIED"


class WitnessConflictError(CryobankError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "WITNESS_CONFLICT"


class NotFoundError(CryobankError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class TransientIOError(CryobankError):
    """Network or backend failure. Safe to retry only for pure reads."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "TRANSIENT_IO_ERROR"


class LocationInactiveError(CryobankError):
    """The slot, or a node above it, has been deactivated."""

    status_code = status.HTTP_409_CONFLICT
    code = "LOCATION_INACTIVE"


class DirectoryError(CryobankError):
    """The directory service refused a request. Not retried."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "DIRECTORY_ERROR"
