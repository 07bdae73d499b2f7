# =============================================================================
# audit_core/offline/connection_manager.py
# Connectivity State Machine
# =============================================================================
"""
ConnectionManager - Decides whether reads and writes route to the backend.

States:
- ONLINE:   backend reachable and answering
- OFFLINE:  network unreachable, or the user forced offline mode
- DEGRADED: network reachable but backend calls keep failing

The manager never probes on its own schedule; it is driven by injected
signals (network reachability, user override, outcome of remote calls).
"""

from __future__ import annotations
import inspect
import socket
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional
from urllib.parse import urlparse
import logging

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Backend reachable
    OFFLINE = "offline"         # No connectivity (or forced offline)
    DEGRADED = "degraded"       # Network OK but backend failing


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.ONLINE
    network_reachable: bool = True
    offline_mode: bool = False
    last_change: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


def probe_backend(url: Optional[str], timeout: float = 5.0) -> bool:
    """
    Check whether the backend host accepts TCP connections.

    Args:
        url: Backend base URL (e.g. the Supabase project URL)
        timeout: Socket timeout in seconds

    Returns:
        True if the host is reachable
    """
    if not url:
        return False
    parsed = urlparse(url)
    host = parsed.hostname
    if not host:
        return False
    port = parsed.port or (443 if parsed.scheme != "http" else 80)
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as e:
        logger.debug(f"Backend probe failed for {host}:{port}: {e}")
        return False


class ConnectionManager:
    """
    Connectivity state machine.

    Usage:
        manager = ConnectionManager()
        if manager.should_attempt_remote:
            # Call the backend
        else:
            # Use local store
    """

    def __init__(self, degraded_failure_threshold: int = 1):
        """
        Args:
            degraded_failure_threshold: Consecutive remote failures (while the
                network is reachable) before entering DEGRADED
        """
        self.degraded_failure_threshold = max(1, degraded_failure_threshold)
        self._state = ConnectionState(last_online=datetime.now())
        self._callbacks: List[Callable[[ConnectionState], Any]] = []

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        """Get current status."""
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    @property
    def should_attempt_remote(self) -> bool:
        """Remote calls are attempted unless OFFLINE."""
        return self._state.status != ConnectionStatus.OFFLINE

    @property
    def confirms_offline_routing(self) -> bool:
        """True when offline-only construction is allowed."""
        return self._state.status in (ConnectionStatus.OFFLINE, ConnectionStatus.DEGRADED)

    # =========================================================================
    # SIGNALS
    # =========================================================================

    async def set_network_reachable(self, reachable: bool) -> ConnectionStatus:
        """Network reachability signal from the platform."""
        if reachable and not self._state.network_reachable:
            # Fresh network, give the backend a clean slate
            self._state.consecutive_failures = 0
            self._state.error_message = None
        self._state.network_reachable = reachable
        return await self._transition(self._evaluate())

    async def set_offline_mode(self, enabled: bool) -> ConnectionStatus:
        """User override forcing offline routing."""
        self._state.offline_mode = enabled
        if not enabled:
            self._state.consecutive_failures = 0
        return await self._transition(self._evaluate())

    async def record_remote_failure(self, error: Optional[BaseException] = None) -> ConnectionStatus:
        """A remote call failed (network, timeout or server error)."""
        self._state.consecutive_failures += 1
        if error is not None:
            self._state.error_message = str(error)
        return await self._transition(self._evaluate())

    async def record_remote_success(self) -> ConnectionStatus:
        """A remote call succeeded."""
        self._state.consecutive_failures = 0
        self._state.error_message = None
        return await self._transition(self._evaluate())

    async def check_backend(self, url: Optional[str], timeout: float = 5.0) -> ConnectionStatus:
        """Run the socket probe and feed the result in as the reachable signal."""
        return await self.set_network_reachable(probe_backend(url, timeout))

    def _evaluate(self) -> ConnectionStatus:
        if self._state.offline_mode or not self._state.network_reachable:
            return ConnectionStatus.OFFLINE
        if self._state.consecutive_failures >= self.degraded_failure_threshold:
            return ConnectionStatus.DEGRADED
        return ConnectionStatus.ONLINE

    async def _transition(self, new_status: ConnectionStatus) -> ConnectionStatus:
        old_status = self._state.status
        if new_status == old_status:
            return new_status

        self._state.status = new_status
        self._state.last_change = datetime.now()
        if new_status == ConnectionStatus.ONLINE:
            self._state.last_online = self._state.last_change

        logger.info(f"Connection status changed: {old_status.value} -> {new_status.value}")
        await self._notify_callbacks()
        return new_status

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConnectionState], Any]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function (or coroutine function) called with
                ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], Any]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def _notify_callbacks(self) -> None:
        """Notify all registered callbacks of status change."""
        for callback in list(self._callbacks):
            try:
                result = callback(self._state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "network": self._state.network_reachable,
            "offline_mode": self._state.offline_mode,
            "last_change": self._state.last_change.isoformat() if self._state.last_change else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
