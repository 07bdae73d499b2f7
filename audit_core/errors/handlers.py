# =============================================================================
# audit_core/errors/handlers.py
# Error Handling Utilities for the 5S Audit Core
# =============================================================================

from __future__ import annotations
import traceback
from typing import Any, Dict, Optional
import logging

from .exceptions import AuditCoreError

logger = logging.getLogger(__name__)


def handle_error(
    error: Exception,
    log_error: bool = True,
    context: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Centralized error handling function.

    Logs the error with its code and details and returns the serialized
    form used by status indicators.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        context: Optional description of the operation that failed

    Returns:
        Dictionary describing the error
    """
    if isinstance(error, AuditCoreError):
        payload = error.to_dict()
    else:
        payload = {
            "error_type": error.__class__.__name__,
            "code": "UNKNOWN",
            "message": str(error),
            "details": {"traceback": traceback.format_exc()},
            "recoverable": True,
        }

    if context:
        payload["context"] = context

    if log_error:
        prefix = f"{context}: " if context else ""
        if payload["recoverable"]:
            logger.warning(
                f"{prefix}[{payload['code']}] {payload['message']}",
                extra={"details": payload["details"]},
            )
        else:
            logger.error(
                f"{prefix}[{payload['code']}] {payload['message']}",
                extra={"details": payload["details"]},
                exc_info=error,
            )

    return payload
