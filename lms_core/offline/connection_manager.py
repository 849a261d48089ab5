# =============================================================================
# lms_core/offline/connection_manager.py
# Network reachability signal for the sync engine
# =============================================================================
"""
ConnectionManager - Tracks whether the Supabase backend is reachable.

The status is fed either by a check (a TCP connect to the Supabase host by
default, run on demand or from a background thread) or pushed in from the
outside with set_online(). Registered callbacks fire on every status change;
the sync engine uses them to reconcile as soon as the connection comes back.
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse
import logging

from lms_core.offline.models import utc_now

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


def tcp_reachable(host: str, port: int, timeout: float = 5.0) -> bool:
    """True if a TCP connection to host:port succeeds within timeout."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def check_target(supabase_url: Optional[str]) -> Tuple[str, int]:
    """Host/port to check: the Supabase host, or a public DNS resolver."""
    if supabase_url:
        parsed = urlparse(supabase_url)
        if parsed.hostname:
            return parsed.hostname, parsed.port or 443
    return "1.1.1.1", 53


class ConnectionManager:
    """
    Reachability monitor with change callbacks.

    Usage:
        manager = ConnectionManager.get_instance()
        manager.register_callback(lambda state: print(state.status))
        if manager.is_online:
            ...
    """

    _instance: Optional[ConnectionManager] = None
    _lock = threading.Lock()

    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5

    def __init__(self, check: Optional[Callable[[], bool]] = None):
        """
        Args:
            check: Zero-argument reachability check (TCP check of the
                configured Supabase host if None)
        """
        self._check = check
        self._state = ConnectionState()
        self._state_lock = threading.Lock()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()

    @classmethod
    def get_instance(cls) -> ConnectionManager:
        """Get or create the singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = ConnectionManager()
        return cls._instance

    def _default_check(self) -> bool:
        from lms_core.settings import get_settings
        host, port = check_target(get_settings().supabase_url)
        return tcp_reachable(host, port, self.CONNECTION_TIMEOUT)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    # =========================================================================
    # STATUS UPDATES
    # =========================================================================

    def check_connection(self) -> ConnectionState:
        """Run the check once and update the state."""
        check = self._check or self._default_check
        error = None
        try:
            reachable = bool(check())
        except Exception as e:
            reachable = False
            error = str(e)
            logger.debug(f"Connection check failed: {e}")

        self._apply(reachable, error)
        return self._state

    def set_online(self, reachable: bool) -> None:
        """Push a reachability value from an external signal."""
        self._apply(bool(reachable), None)

    def _apply(self, reachable: bool, error: Optional[str]) -> None:
        now = utc_now()
        with self._state_lock:
            old_status = self._state.status
            self._state.last_check = now
            if reachable:
                self._state.status = ConnectionStatus.ONLINE
                self._state.last_online = now
                self._state.consecutive_failures = 0
                self._state.error_message = None
            else:
                self._state.status = ConnectionStatus.OFFLINE
                self._state.consecutive_failures += 1
                self._state.error_message = error
            changed = old_status != self._state.status

        if changed:
            logger.info(f"Connection status changed: {old_status.value} -> {self._state.status.value}")
            self._notify_callbacks()

    # =========================================================================
    # BACKGROUND MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start background connection monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectionMonitor",
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        """Stop background connection monitoring."""
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        while not self._stop_monitoring.is_set():
            self.check_connection()
            interval = self.CHECK_INTERVAL_ONLINE if self.is_online else self.CHECK_INTERVAL_OFFLINE
            if self._stop_monitoring.wait(timeout=interval):
                break

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """Register a callback for connection status changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }


# Singleton accessor
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the global ConnectionManager instance."""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager.get_instance()
    return _connection_manager
