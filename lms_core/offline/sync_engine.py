# =============================================================================
# lms_core/offline/sync_engine.py
# Decides when to reconcile the offline cache
# =============================================================================
"""
SyncEngine - Triggers reconciliation cycles.

Triggers:
- sync_now(), e.g. from a "Sync Now" button
- connection restored (ConnectionManager callback)
- background interval while online

Each trigger fetches a fresh server snapshot and hands it to the
ConflictResolutionService. Concurrent triggers share one cycle.
"""

from __future__ import annotations
import threading
from typing import Any, Dict, Optional
import logging

from lms_core.offline.connection_manager import ConnectionManager, ConnectionState, ConnectionStatus
from lms_core.offline.conflict_resolution import ConflictResolutionService
from lms_core.offline.models import SyncResult
from lms_core.offline.snapshot_fetcher import SupabaseSnapshotFetcher

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Usage:
        engine = get_sync_engine()
        engine.start()       # Background sync + reconnect trigger
        engine.sync_now()    # Immediate sync
    """

    def __init__(
        self,
        reconciler: ConflictResolutionService,
        fetcher: SupabaseSnapshotFetcher,
        connection_manager: ConnectionManager,
        sync_interval: float = 60.0,
    ):
        self.reconciler = reconciler
        self.fetcher = fetcher
        self.connection_manager = connection_manager
        self.sync_interval = sync_interval

        self._sync_thread: Optional[threading.Thread] = None
        self._stop_sync = threading.Event()
        self._attached = False

    def attach(self) -> None:
        """Listen for connection changes so reconnects trigger a sync."""
        if self._attached:
            return
        self.connection_manager.register_callback(self._on_connection_change)
        self._attached = True

    def detach(self) -> None:
        self.connection_manager.unregister_callback(self._on_connection_change)
        self._attached = False

    def start(self) -> None:
        """Start background sync thread."""
        if self._sync_thread is not None and self._sync_thread.is_alive():
            return

        self.attach()
        self._stop_sync.clear()
        self._sync_thread = threading.Thread(
            target=self._sync_loop,
            daemon=True,
            name="SyncEngine",
        )
        self._sync_thread.start()
        logger.info("Sync engine started")

    def stop(self) -> None:
        """Stop background sync thread."""
        self._stop_sync.set()
        if self._sync_thread:
            self._sync_thread.join(timeout=10)
        self.detach()
        logger.info("Sync engine stopped")

    def _sync_loop(self) -> None:
        while not self._stop_sync.wait(timeout=self.sync_interval):
            if self.connection_manager.is_online:
                self.sync_now()

    def _on_connection_change(self, state: ConnectionState) -> None:
        if state.status == ConnectionStatus.ONLINE:
            logger.info("Connection restored, triggering sync")
            self.sync_now()

    def sync_now(self, cancel_event: Optional[threading.Event] = None) -> Optional[SyncResult]:
        """
        Fetch a fresh snapshot and reconcile.

        Returns:
            SyncResult, or None when offline
        """
        if not self.connection_manager.is_online:
            logger.debug("Cannot sync: offline")
            return None

        snapshot = self.fetcher.fetch_snapshot(fresh=True)
        return self.reconciler.resolve_conflicts(snapshot, cancel_event=cancel_event)

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        status = self.reconciler.get_status_display()
        status["connection"] = self.connection_manager.status.value
        status["running"] = self._sync_thread is not None and self._sync_thread.is_alive()
        return status


# Singleton accessor
_sync_engine: Optional[SyncEngine] = None
_sync_engine_lock = threading.Lock()


def get_sync_engine() -> SyncEngine:
    """Get the global SyncEngine wired to the default collaborators."""
    global _sync_engine
    if _sync_engine is None:
        with _sync_engine_lock:
            if _sync_engine is None:
                from lms_core.cache import get_response_cache
                from lms_core.offline.connection_manager import get_connection_manager
                from lms_core.offline.conflict_resolution import get_conflict_resolution_service
                from lms_core.settings import get_settings

                _sync_engine = SyncEngine(
                    reconciler=get_conflict_resolution_service(),
                    fetcher=SupabaseSnapshotFetcher(cache=get_response_cache()),
                    connection_manager=get_connection_manager(),
                    sync_interval=get_settings().sync_interval,
                )
                _sync_engine.attach()
    return _sync_engine
