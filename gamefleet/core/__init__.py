"""Core functionality for gamefleet."""

from gamefleet.core.exceptions import (
    ConflictError,
    CreationFailedError,
    FleetError,
    NotFoundError,
    PermissionDeniedError,
    PlatformError,
    TransientPlatformError,
    ValidationError,
    VerificationTimeout,
)
from gamefleet.core.record_store import InMemoryRecordStore, RecordStore, get_record_store
from gamefleet.core.status_store import InMemoryStatusStore, StatusStore, get_status_store

__all__ = [
    "FleetError",
    "ValidationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "PlatformError",
    "TransientPlatformError",
    "VerificationTimeout",
    "CreationFailedError",
    "RecordStore",
    "InMemoryRecordStore",
    "get_record_store",
    "StatusStore",
    "InMemoryStatusStore",
    "get_status_store",
]
