# =============================================================================
# audit_core/logging/config.py
# Logging Setup for Sync and Scoring Diagnostics
# =============================================================================

import logging
import sys
import time
from pathlib import Path
from typing import List, Optional, Union


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# supabase-py's HTTP stack logs every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "urllib3", "postgrest", "supabase")


def resolve_level(level: Union[int, str]) -> int:
    """Numeric level for a level or level name; unknown names mean INFO."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Path] = None,
) -> int:
    """
    Route audit_core logs to stdout and, optionally, a file.

    A device that audits offline for days keeps its replay history in
    ``log_file``; the HTTP libraries under the Supabase client are held
    at WARNING or above so drain logs stay readable.

    Args:
        level: Level or level name (AUDIT_LOG_LEVEL)
        log_file: Optional file to append to (AUDIT_LOG_FILE)

    Returns:
        The numeric level applied
    """
    resolved = resolve_level(level)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))

    logging.getLogger("audit_core").debug(
        f"Logging at {logging.getLevelName(resolved)}"
        + (f", copying to {log_file}" if log_file else "")
    )
    return resolved


class LogContext:
    """
    Times a drain, aggregation or service step.

    The start is logged at DEBUG and the outcome at INFO; a failure is
    logged with its traceback and always re-raised. ``elapsed`` holds the
    duration once the block exits.

    Usage:
        with LogContext(logger, "Aggregating senso scores") as step:
            rows = aggregate(nodes, audits, items)
        # step.elapsed -> 0.04
    """

    def __init__(self, logger: logging.Logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.elapsed: Optional[float] = None
        self._started = 0.0

    def __enter__(self) -> "LogContext":
        self._started = time.perf_counter()
        self.logger.debug(f"{self.operation}: started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed = time.perf_counter() - self._started
        if exc_type is None:
            self.logger.info(f"{self.operation}: done in {self.elapsed:.2f}s")
        else:
            self.logger.error(
                f"{self.operation}: failed after {self.elapsed:.2f}s: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )
        return False
