# =============================================================================
# lms_core/offline/conflict_resolution.py
# Server-wins reconciliation of the offline cache
# =============================================================================
"""
ConflictResolutionService - Reconciles locally modified cached entities with a
fresh server snapshot using a server-wins policy.

Each cycle:
1. Loads the cached metadata and checks every locally modified entity against
   the server copy (deleted on server, server newer, local newer).
2. Records every divergence as a SyncConflict resolved in the server's favor.
3. Overwrites the cached collections with the server snapshot and rebuilds
   metadata from it, in a single storage transaction.
4. Keeps a capped, most-recent-first conflict history for user review.

The server is the source of truth: teachers and admins own grades, assignment
definitions and conversations, so offline edits never overwrite them.
"""

from __future__ import annotations
import threading
from concurrent.futures import Future
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import uuid

from lms_core.errors import StoreUnavailableError, SyncCancelledError, handle_error
from lms_core.offline.entity_registry import DEFAULT_COLLECTIONS, EntityCollection
from lms_core.offline.models import (
    CachedItemMetadata,
    ConflictResolution,
    SyncConflict,
    SyncPhase,
    SyncResult,
    utc_now,
)
from lms_core.offline.snapshot import ServerSnapshot
from lms_core.offline.storage_protocol import PersistentStore
from lms_core.services.base_service import BaseService
from lms_core.settings import OfflineSettings, get_settings


class ConflictResolutionService(BaseService):
    """
    Offline-to-online conflict resolution with a server-wins strategy.

    Usage:
        service = ConflictResolutionService()
        service.configure(storage=get_offline_storage())
        result = service.resolve_conflicts(ServerSnapshot.from_lists(courses=...))
        for conflict in service.pending_conflicts:
            ...
    """

    def __init__(
        self,
        storage: Optional[PersistentStore] = None,
        connection_manager=None,
        settings: Optional[OfflineSettings] = None,
        collections: Sequence[EntityCollection] = DEFAULT_COLLECTIONS,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__()
        settings = settings or get_settings()
        self.max_history_items = settings.conflict_history_limit
        self.epsilon = timedelta(milliseconds=max(settings.timestamp_epsilon_ms, 1.0))
        self.collections: Tuple[EntityCollection, ...] = tuple(collections)
        self._clock = clock

        self._storage: Optional[PersistentStore] = None
        self._connection_manager = None

        # Observable state
        self.pending_conflicts: List[SyncConflict] = []
        self.conflict_history: List[SyncConflict] = []
        self.last_sync_result: Optional[SyncResult] = None
        self.sync_error: Optional[str] = None
        self.phase = SyncPhase.IDLE

        self._callbacks: List[Callable[[ConflictResolutionService], None]] = []
        self._flight_lock = threading.Lock()
        self._inflight: Optional[Future] = None
        # Held from load_metadata through commit; local edits wait on it
        self._store_lock = threading.RLock()

        if storage is not None:
            self.configure(storage, connection_manager)

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def configure(self, storage: PersistentStore, connection_manager=None) -> None:
        """Inject dependencies and load the persisted history and last result."""
        self._storage = storage
        self._connection_manager = connection_manager
        self.load_persisted_history()

    @property
    def storage(self) -> Optional[PersistentStore]:
        return self._storage

    @property
    def is_syncing(self) -> bool:
        return self.phase == SyncPhase.SYNCING

    def load_persisted_history(self) -> None:
        storage = self._storage
        if storage is None or not storage.is_available:
            return
        try:
            self.conflict_history = list(storage.load_conflict_history())
            self.last_sync_result = storage.load_sync_result()
        except Exception as e:
            handle_error(e, show_user_message=False, user_message="Could not load conflict history")

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def resolve_conflicts(
        self,
        snapshot: ServerSnapshot,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        """
        Run one reconciliation cycle.

        Only one cycle runs at a time; callers arriving while a cycle is in
        flight wait for it and receive its result.

        Args:
            snapshot: Freshly fetched server state
            cancel_event: If set before the commit, the cycle writes nothing

        Returns:
            SyncResult for the cycle (also stored in last_sync_result)
        """
        with self._flight_lock:
            inflight = self._inflight
            leader = inflight is None
            if leader:
                inflight = self._inflight = Future()

        if not leader:
            self.logger.info("Sync already in progress; waiting for the running cycle")
            return inflight.result()

        try:
            result = self._run_cycle(snapshot, cancel_event)
        except BaseException as e:
            inflight.set_exception(e)
            raise
        else:
            inflight.set_result(result)
            return result
        finally:
            with self._flight_lock:
                self._inflight = None

    def _run_cycle(
        self,
        snapshot: ServerSnapshot,
        cancel_event: Optional[threading.Event],
    ) -> SyncResult:
        storage = self._storage
        if storage is None or not storage.is_available:
            error = StoreUnavailableError(
                reason="not configured" if storage is None else "no signed-in user"
            )
            self.logger.warning(str(error))
            return self._finish_failed(error.message, items_synced=0)

        self._set_phase(SyncPhase.SYNCING)
        self.pending_conflicts = []

        try:
            with self._store_lock, self.log_operation("Reconciling offline cache"):
                metadata = storage.load_metadata()
                now = self._clock()

                conflicts: List[SyncConflict] = []
                errors: List[str] = []
                items_synced = 0

                for collection in self.collections:
                    entity_type = collection.entity_type
                    if entity_type in snapshot.failures:
                        message = f"Failed to fetch {collection.label.lower()}: {snapshot.failures[entity_type]}"
                        self.logger.warning(message)
                        errors.append(message)
                        continue
                    if not snapshot.has(entity_type):
                        continue

                    server_items = snapshot.items(entity_type)
                    conflicts.extend(
                        self.detect_conflicts(metadata, collection, server_items, now)
                    )
                    items_synced += len(server_items)

                if cancel_event is not None and cancel_event.is_set():
                    raise SyncCancelledError()

                fresh_metadata = self._merge_metadata(metadata, snapshot, now)
                with storage.transaction():
                    for collection in self.collections:
                        if snapshot.has(collection.entity_type):
                            storage.save_entities(
                                collection.entity_type,
                                snapshot.items(collection.entity_type),
                            )
                    storage.save_metadata(fresh_metadata)
                    storage.last_sync_date = now

        except SyncCancelledError as e:
            self.logger.info("Sync cancelled before commit; cache left unchanged")
            return self._finish_failed(e.message, items_synced=0)
        except Exception as e:
            handle_error(e, show_user_message=False)
            return self._finish_failed(f"Sync failed: {e}", items_synced=0)

        result = SyncResult(
            items_synced=items_synced,
            conflicts_found=len(conflicts),
            conflicts_resolved=len(conflicts),
            errors=tuple(errors),
            synced_at=now,
        )
        self.pending_conflicts = conflicts
        self.last_sync_result = result
        self.sync_error = "; ".join(errors) if errors else None

        self.conflict_history = (conflicts + self.conflict_history)[: self.max_history_items]
        self._persist_history()

        self.logger.info(
            f"Sync complete: {items_synced} items, {len(conflicts)} conflicts, {len(errors)} errors"
        )
        self._set_phase(SyncPhase.COMPLETED)
        self._set_phase(SyncPhase.IDLE)
        return result

    def _finish_failed(self, message: str, items_synced: int) -> SyncResult:
        result = SyncResult(items_synced=items_synced, errors=(message,), synced_at=self._clock())
        self.last_sync_result = result
        self.sync_error = message
        self._set_phase(SyncPhase.FAILED)
        return result

    # =========================================================================
    # CONFLICT DETECTION
    # =========================================================================

    def detect_conflicts(
        self,
        metadata: Iterable[CachedItemMetadata],
        collection: EntityCollection,
        server_items: Sequence[Any],
        now: Optional[datetime] = None,
    ) -> List[SyncConflict]:
        """
        Compare locally modified metadata of one entity type with the server list.

        Every divergence is resolved server-wins: a newer local edit is still
        discarded, but reported so the user knows it was not applied.
        """
        entity_type = collection.entity_type
        locally_modified = [
            meta for meta in metadata
            if meta.entity_type == entity_type and meta.is_locally_modified
        ]
        if not locally_modified:
            return []

        now = now or self._clock()
        server_lookup = {collection.entity_id(item): item for item in server_items}
        conflicts: List[SyncConflict] = []

        for meta in locally_modified:
            server_item = server_lookup.get(meta.id)

            if server_item is None:
                # Deleted on the server; the local copy is discarded
                conflicts.append(SyncConflict(
                    entity_type=entity_type,
                    entity_id=str(meta.id),
                    entity_name=meta.entity_name,
                    local_modified_at=meta.modified_at,
                    server_modified_at=now,
                    resolution=ConflictResolution.SERVER_WINS,
                    resolved_at=now,
                ))
                continue

            server_date = self.resolve_server_timestamp(collection, server_item, meta)
            local_date = meta.modified_at
            if abs(server_date - local_date) <= self.epsilon:
                continue

            conflicts.append(SyncConflict(
                entity_type=entity_type,
                entity_id=str(meta.id),
                entity_name=collection.entity_name(server_item) or meta.entity_name,
                local_modified_at=local_date,
                server_modified_at=server_date,
                resolution=ConflictResolution.SERVER_WINS,
                resolved_at=now,
            ))

        return conflicts

    @staticmethod
    def resolve_server_timestamp(
        collection: EntityCollection,
        server_item: Any,
        meta: CachedItemMetadata,
    ) -> datetime:
        """
        Server modification time used for comparison.

        Entity types without a reliable server timestamp fall back to the last
        server-confirmed instant cached for the entity, so an untouched entity
        never reads as changed.
        """
        server_date = collection.server_timestamp(server_item)
        if server_date is not None:
            return server_date
        if meta.server_modified_at is not None:
            return meta.server_modified_at
        return meta.modified_at

    # =========================================================================
    # METADATA
    # =========================================================================

    def build_metadata(
        self,
        snapshot: ServerSnapshot,
        now: Optional[datetime] = None,
    ) -> List[CachedItemMetadata]:
        """Fresh metadata for every entity in the snapshot; nothing locally modified."""
        now = now or self._clock()
        metadata: List[CachedItemMetadata] = []

        for collection in self.collections:
            for item in snapshot.items(collection.entity_type):
                modified_at = collection.server_timestamp(item) or now
                metadata.append(CachedItemMetadata(
                    id=collection.entity_id(item),
                    entity_type=collection.entity_type,
                    entity_name=collection.entity_name(item),
                    cached_at=now,
                    modified_at=modified_at,
                    is_locally_modified=False,
                    server_modified_at=modified_at,
                ))

        return metadata

    def _merge_metadata(
        self,
        existing: Sequence[CachedItemMetadata],
        snapshot: ServerSnapshot,
        now: datetime,
    ) -> List[CachedItemMetadata]:
        """Rebuilt rows for fetched types; rows of types not in the snapshot are kept."""
        fetched = {c.entity_type for c in self.collections if snapshot.has(c.entity_type)}
        kept = [meta for meta in existing if meta.entity_type not in fetched]
        return self.build_metadata(snapshot, now) + kept

    def mark_as_locally_modified(self, entity_id: uuid.UUID, entity_type: str) -> bool:
        """
        Flag a cached entity as edited offline so the next cycle checks it.

        Waits for a running cycle to commit first, so the flag lands on the
        rebuilt metadata instead of being overwritten by it.

        Returns:
            True if a metadata row was found and updated
        """
        storage = self._storage
        if storage is None or not storage.is_available:
            return False

        with self._store_lock, storage.transaction():
            metadata = storage.load_metadata()
            for index, existing in enumerate(metadata):
                if existing.id == entity_id and existing.entity_type == entity_type:
                    metadata[index] = replace(
                        existing,
                        modified_at=self._clock(),
                        is_locally_modified=True,
                    )
                    storage.save_metadata(metadata)
                    self.logger.debug(f"Marked {entity_type} {entity_id} as locally modified")
                    return True

        self.logger.debug(f"No cached metadata for {entity_type} {entity_id}")
        return False

    # =========================================================================
    # HISTORY
    # =========================================================================

    def clear_history(self) -> None:
        """Clear conflict history, pending conflicts and the last result."""
        self.conflict_history = []
        self.pending_conflicts = []
        self.last_sync_result = None
        self._persist_history()
        self._notify_callbacks()

    def dismiss_conflict(self, conflict: SyncConflict) -> None:
        """Remove one pending conflict notification."""
        self.pending_conflicts = [c for c in self.pending_conflicts if c.id != conflict.id]
        self._notify_callbacks()

    def _persist_history(self) -> None:
        storage = self._storage
        if storage is None or not storage.is_available:
            return
        try:
            storage.save_conflict_history(self.conflict_history)
            if self.last_sync_result is not None:
                storage.save_sync_result(self.last_sync_result)
        except Exception as e:
            handle_error(e, show_user_message=False, user_message="Could not persist conflict history")

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConflictResolutionService], None]) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConflictResolutionService], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _set_phase(self, phase: SyncPhase) -> None:
        self.phase = phase
        self._notify_callbacks()

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self)
            except Exception as e:
                self.logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        result = self.last_sync_result
        return {
            "phase": self.phase.value,
            "is_syncing": self.is_syncing,
            "last_sync": result.synced_at.isoformat() if result else None,
            "items_synced": result.items_synced if result else 0,
            "pending_conflicts": len(self.pending_conflicts),
            "history_size": len(self.conflict_history),
            "error": self.sync_error,
        }


# Singleton accessor
_conflict_service: Optional[ConflictResolutionService] = None
_conflict_service_lock = threading.Lock()


def get_conflict_resolution_service() -> ConflictResolutionService:
    """Get the global ConflictResolutionService wired to the offline storage."""
    global _conflict_service
    if _conflict_service is None:
        with _conflict_service_lock:
            if _conflict_service is None:
                from lms_core.offline.offline_storage import get_offline_storage
                service = ConflictResolutionService()
                service.configure(get_offline_storage())
                _conflict_service = service
    return _conflict_service
