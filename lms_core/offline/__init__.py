# =============================================================================
# lms_core/offline/__init__.py
# Offline cache and sync reconciliation
# =============================================================================
"""
Offline sync module.

Architecture:
------------
┌────────────────────────────────────────────────────────────────┐
│                      OFFLINE SYNC CORE                          │
├────────────────────────────────────────────────────────────────┤
│                                                                 │
│   ┌──────────────────┐   reconnect    ┌──────────────────┐      │
│   │ ConnectionMgr    │ ─────────────► │   SyncEngine     │      │
│   │ (reachability)   │                │ (when to sync)   │      │
│   └──────────────────┘                └──────────────────┘      │
│                                          │            │         │
│                               snapshot   ▼            ▼         │
│                    ┌──────────────────────┐  ┌──────────────┐   │
│                    │ SnapshotFetcher      │  │ ConflictRes. │   │
│                    │ (Supabase + TTLCache)│  │ (server wins)│   │
│                    └──────────────────────┘  └──────────────┘   │
│                                                     │           │
│                                                     ▼           │
│                                           ┌──────────────────┐  │
│                                           │  OfflineStorage  │  │
│                                           │  (SQLite/user)   │  │
│                                           └──────────────────┘  │
└────────────────────────────────────────────────────────────────┘

Usage:
------
from lms_core.offline import get_sync_engine, get_conflict_resolution_service

get_offline_storage().set_current_user(user_id)
result = get_sync_engine().sync_now()
for conflict in get_conflict_resolution_service().pending_conflicts:
    print(f"Your change to {conflict.entity_name} was not applied")
"""

from lms_core.offline.models import (
    CachedItemMetadata,
    ConflictResolution,
    SyncConflict,
    SyncPhase,
    SyncResult,
    Course,
    Assignment,
    GradeEntry,
    Conversation,
)

from lms_core.offline.entity_registry import (
    EntityCollection,
    DEFAULT_COLLECTIONS,
    get_collection,
)

from lms_core.offline.snapshot import ServerSnapshot

from lms_core.offline.storage_protocol import PersistentStore

from lms_core.offline.offline_storage import (
    OfflineStorage,
    get_offline_storage,
)

from lms_core.offline.conflict_resolution import (
    ConflictResolutionService,
    get_conflict_resolution_service,
)

from lms_core.offline.snapshot_fetcher import SupabaseSnapshotFetcher

from lms_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionStatus,
    get_connection_manager,
)

from lms_core.offline.sync_engine import (
    SyncEngine,
    get_sync_engine,
)

__all__ = [
    # Models
    "CachedItemMetadata",
    "ConflictResolution",
    "SyncConflict",
    "SyncPhase",
    "SyncResult",
    "Course",
    "Assignment",
    "GradeEntry",
    "Conversation",
    # Collections
    "EntityCollection",
    "DEFAULT_COLLECTIONS",
    "get_collection",
    "ServerSnapshot",
    # Storage
    "PersistentStore",
    "OfflineStorage",
    "get_offline_storage",
    # Reconciliation
    "ConflictResolutionService",
    "get_conflict_resolution_service",
    "SupabaseSnapshotFetcher",
    # Connectivity / triggering
    "ConnectionManager",
    "ConnectionStatus",
    "get_connection_manager",
    "SyncEngine",
    "get_sync_engine",
]
