"""StaySync - concurrency core for a booking site."""

from .client import HttpGateway
from .clock import Clock, LoopClock, TimerHandle, VirtualClock
from .config import Settings, configure_logging, settings
from .exceptions import (
    StaySyncError,
    ErrorCategory,
    ValidationError,
    NetworkError,
    PermissionDenied,
    AuthenticationError,
    ConflictError,
    ResourceUnavailable,
    HoldExpired,
    AlreadyCommitted,
    LockHeldError,
    VersionConflict,
    RecordExists,
    RecordNotFound,
    ConflictPending,
    BookingConfirmationUnknown,
)
from .gateway import StoreGateway, Subscription, TransactionCoordinator
from .holds import ReservationHoldManager, format_time_remaining
from .locks import AutoSaver, EditLockManager
from .memory import MemoryStore
from .models import (
    Period,
    HoldState,
    ReservationHold,
    Booking,
    LockState,
    EditLock,
    OperationKind,
    OperationState,
    PendingOperation,
    ConflictStrategy,
    Resolution,
    ConflictRecord,
    Record,
    ChangeType,
    ChangeEvent,
    ChangeSet,
    FieldChange,
    Presence,
    PresenceMode,
)
from .notifications import Notice, NoticeLevel, Notifier
from .offline import JsonFileQueueStorage, MemoryQueueStorage, OfflineOperationQueue, QueueStorage
from .optimistic import OptimisticUpdateEngine
from .reconciler import ChangeReconciler, PresenceRoster, diff_fields

__version__ = "1.0.0"
__all__ = [
    "HttpGateway",
    "MemoryStore",
    "StoreGateway",
    "TransactionCoordinator",
    "Subscription",
    "Clock",
    "LoopClock",
    "VirtualClock",
    "TimerHandle",
    "Settings",
    "settings",
    "configure_logging",
    "Notifier",
    "Notice",
    "NoticeLevel",
    "ReservationHoldManager",
    "format_time_remaining",
    "EditLockManager",
    "AutoSaver",
    "OptimisticUpdateEngine",
    "OfflineOperationQueue",
    "QueueStorage",
    "MemoryQueueStorage",
    "JsonFileQueueStorage",
    "ChangeReconciler",
    "PresenceRoster",
    "diff_fields",
    "StaySyncError",
    "ErrorCategory",
    "ValidationError",
    "NetworkError",
    "PermissionDenied",
    "AuthenticationError",
    "ConflictError",
    "ResourceUnavailable",
    "HoldExpired",
    "AlreadyCommitted",
    "LockHeldError",
    "VersionConflict",
    "RecordExists",
    "RecordNotFound",
    "ConflictPending",
    "BookingConfirmationUnknown",
    "Period",
    "HoldState",
    "ReservationHold",
    "Booking",
    "LockState",
    "EditLock",
    "OperationKind",
    "OperationState",
    "PendingOperation",
    "ConflictStrategy",
    "Resolution",
    "ConflictRecord",
    "Record",
    "ChangeType",
    "ChangeEvent",
    "ChangeSet",
    "FieldChange",
    "Presence",
    "PresenceMode",
]
