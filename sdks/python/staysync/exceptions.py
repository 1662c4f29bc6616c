"""StaySync exception classes."""

from enum import Enum


class ErrorCategory(str, Enum):
    """How a failure should be handled by callers."""
    VALIDATION = "validation"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    FATAL = "fatal"


class StaySyncError(Exception):
    """Base exception for all StaySync errors."""
    category = ErrorCategory.FATAL

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT


class ValidationError(StaySyncError):
    """Raised when input validation fails."""
    category = ErrorCategory.VALIDATION


class NetworkError(StaySyncError):
    """Raised when network operations fail."""
    category = ErrorCategory.TRANSIENT


class PermissionDenied(StaySyncError):
    """Raised when the caller is not allowed to perform an operation."""
    category = ErrorCategory.FATAL


class AuthenticationError(PermissionDenied):
    """Raised when authentication fails."""
    pass


class ConflictError(StaySyncError):
    """Raised when an operation collides with another writer."""
    category = ErrorCategory.CONFLICT


class ResourceUnavailable(ConflictError):
    """Raised when a period overlaps an active hold, booking or block."""

    def __init__(self, message: str, resource_id: str = None):
        super().__init__(message)
        self.resource_id = resource_id


class HoldExpired(ConflictError):
    """Raised when committing a hold that is no longer active."""

    def __init__(self, message: str, hold_id: str = None):
        super().__init__(message)
        self.hold_id = hold_id


class AlreadyCommitted(ConflictError):
    """Raised when committing a hold that already produced a booking."""

    def __init__(self, message: str, hold_id: str = None, booking_id: str = None):
        super().__init__(message)
        self.hold_id = hold_id
        self.booking_id = booking_id


class LockHeldError(ConflictError):
    """Raised when trying to acquire a lock that's already held."""

    def __init__(self, message: str, holder_id: str = None, expires_at: str = None):
        super().__init__(message)
        self.holder_id = holder_id
        self.expires_at = expires_at


class VersionConflict(ConflictError):
    """Raised when a conditional write sees a different record version."""

    def __init__(self, message: str, expected: int = None, actual: int = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class RecordExists(ConflictError):
    """Raised when creating a record whose key is already taken."""
    pass


class RecordNotFound(ConflictError):
    """Raised when updating a record that does not exist."""
    pass


class ConflictPending(ConflictError):
    """Raised when an item is frozen awaiting manual conflict resolution."""

    def __init__(self, message: str, target_id: str = None, operation_id: str = None):
        super().__init__(message)
        self.target_id = target_id
        self.operation_id = operation_id


class BookingConfirmationUnknown(StaySyncError):
    """Payment may have gone through but the booking write outcome is unknown.

    ``reference_id`` identifies the attempt for manual recovery.
    """
    category = ErrorCategory.FATAL

    def __init__(self, message: str, reference_id: str, hold_id: str = None):
        super().__init__(message)
        self.reference_id = reference_id
        self.hold_id = hold_id


def classify(exc: BaseException) -> ErrorCategory:
    """Map any exception onto an error category."""
    if isinstance(exc, StaySyncError):
        return exc.category
    return ErrorCategory.FATAL


def is_retryable(exc: BaseException) -> bool:
    return classify(exc) is ErrorCategory.TRANSIENT
