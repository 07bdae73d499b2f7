# =============================================================================
# audit_core/errors/__init__.py
# Centralized Error Handling for the 5S Audit Core
# =============================================================================

from .exceptions import (
    AuditCoreError,
    StorageFull,
    NotAvailableOffline,
    RecordNotFound,
    RemoteTransientFailure,
    ReplayConflict,
    SyncQueueError,
    OfflineRoutingError,
    AuditIncompleteError,
    DataValidationError,
    ConfigurationError,
)

from .handlers import handle_error

__all__ = [
    # Exceptions
    "AuditCoreError",
    "StorageFull",
    "NotAvailableOffline",
    "RecordNotFound",
    "RemoteTransientFailure",
    "ReplayConflict",
    "SyncQueueError",
    "OfflineRoutingError",
    "AuditIncompleteError",
    "DataValidationError",
    "ConfigurationError",
    # Handlers
    "handle_error",
]
