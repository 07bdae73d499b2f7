# =============================================================================
# audit_core/errors/exceptions.py
# Custom Exception Hierarchy for the 5S Audit Core
# =============================================================================

from typing import Optional, Dict, Any


class AuditCoreError(Exception):
    """
    Base exception for all audit core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "STORE_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "AC_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# LOCAL STORE EXCEPTIONS
# =============================================================================

class StorageFull(AuditCoreError):
    """Raised when local persistence is exhausted ("cannot save locally")"""

    def __init__(
        self,
        message: str = "Cannot save locally: device storage is full",
        collection: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# READ PATH EXCEPTIONS
# =============================================================================

class NotAvailableOffline(AuditCoreError):
    """Raised when an entity is absent from both the live backend and the cache"""

    def __init__(
        self,
        message: Optional[str] = None,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection
        if record_id:
            details["record_id"] = record_id

        super().__init__(
            message=message or "Record is not available offline",
            code="READ_001",
            details=details,
            **kwargs,
        )


class RecordNotFound(AuditCoreError):
    """Raised when a direct remote write targets a row the backend does not have"""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection
        if record_id:
            details["record_id"] = record_id

        super().__init__(
            message=message,
            code="READ_002",
            details=details,
            **kwargs,
        )


# =============================================================================
# REMOTE BACKEND EXCEPTIONS
# =============================================================================

class RemoteTransientFailure(AuditCoreError):
    """Raised on network, timeout or server errors from the remote backend"""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        timed_out: bool = False,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        if timed_out:
            details["timed_out"] = True

        super().__init__(
            message=message,
            code="REMOTE_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# SYNC EXCEPTIONS
# =============================================================================

class ReplayConflict(AuditCoreError):
    """Raised when a queued operation's target no longer exists or was superseded"""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection
        if record_id:
            details["record_id"] = record_id
        if operation_id:
            details["operation_id"] = operation_id

        super().__init__(
            message=message,
            code="SYNC_001",
            details=details,
            **kwargs,
        )


class SyncQueueError(AuditCoreError):
    """Raised when a remote write failed and the local queue append failed too"""

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection
        if record_id:
            details["record_id"] = record_id

        super().__init__(
            message=message,
            code="SYNC_002",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# AUDIT WORKFLOW EXCEPTIONS
# =============================================================================

class OfflineRoutingError(AuditCoreError):
    """Raised when offline-only construction is requested while routing is online"""

    def __init__(self, message: str, status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if status:
            details["status"] = status

        super().__init__(
            message=message,
            code="ROUTE_001",
            details=details,
            **kwargs,
        )


class AuditIncompleteError(AuditCoreError):
    """Raised when an audit cannot be completed yet"""

    def __init__(
        self,
        message: str,
        unanswered: Optional[int] = None,
        incomplete_nonconformities: Optional[list] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if unanswered:
            details["unanswered"] = unanswered
        if incomplete_nonconformities:
            details["incomplete_nonconformities"] = incomplete_nonconformities

        super().__init__(
            message=message,
            code="AUDIT_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# DATA AND CONFIGURATION EXCEPTIONS
# =============================================================================

class DataValidationError(AuditCoreError):
    """Raised when input data fails validation checks"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if expected:
            details["expected"] = expected
        if actual:
            details["actual"] = actual

        super().__init__(
            message=message,
            code="DATA_001",
            details=details,
            **kwargs,
        )


class ConfigurationError(AuditCoreError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
