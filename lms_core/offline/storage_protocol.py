# =============================================================================
# lms_core/offline/storage_protocol.py
# Interface the reconciler needs from a persistent offline store
# =============================================================================

from __future__ import annotations
from datetime import datetime
from typing import Any, ContextManager, List, Optional, Protocol, Sequence

from lms_core.offline.models import CachedItemMetadata, SyncConflict, SyncResult


class PersistentStore(Protocol):
    """
    Persistent key/value store for cached entities and sync bookkeeping.

    OfflineStorage is the SQLite implementation. Writes made inside
    transaction() must be committed together or not at all.
    """

    @property
    def is_available(self) -> bool: ...

    def load_metadata(self) -> List[CachedItemMetadata]: ...

    def save_metadata(self, metadata: Sequence[CachedItemMetadata]) -> None: ...

    def save_entities(self, entity_type: str, entities: Sequence[Any]) -> None: ...

    def load_entities(self, entity_type: str) -> List[Any]: ...

    def load_conflict_history(self) -> List[SyncConflict]: ...

    def save_conflict_history(self, conflicts: Sequence[SyncConflict]) -> None: ...

    def save_sync_result(self, result: SyncResult) -> None: ...

    def load_sync_result(self) -> Optional[SyncResult]: ...

    @property
    def last_sync_date(self) -> Optional[datetime]: ...

    @last_sync_date.setter
    def last_sync_date(self, value: Optional[datetime]) -> None: ...

    def transaction(self) -> ContextManager[Any]: ...
