# =============================================================================
# lms_core/offline/offline_storage.py
# Local SQLite store for offline entities and sync bookkeeping
# =============================================================================
"""
OfflineStorage - SQLite-backed persistent store used by the reconciler.

Features:
- Per-user scoping (rows are keyed by the signed-in user's id)
- Cached entity collections, per-entity metadata, conflict history,
  last sync result and last sync date
- Nested transactions (only the outermost block commits)
- DataFrame views for diagnostics (pandas)
- Thread-safe: one connection per thread
"""

from __future__ import annotations
import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd

from lms_core.errors import MetadataDecodeError, StorageError
from lms_core.offline.entity_registry import collections_by_type
from lms_core.offline.models import (
    CachedItemMetadata,
    SyncConflict,
    SyncResult,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class OfflineStorage:
    """
    Local SQLite database for the offline cache.

    Without a current user every load returns an empty value and every save is
    a no-op, so one user's cache can never leak into another's session.
    """

    SCHEMA = {
        "offline_entities": """
            CREATE TABLE IF NOT EXISTS offline_entities (
                user_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                entity_name TEXT,
                position INTEGER,
                payload_json TEXT,
                saved_at TEXT,
                PRIMARY KEY (user_id, entity_type, entity_id)
            )
        """,
        "cached_item_metadata": """
            CREATE TABLE IF NOT EXISTS cached_item_metadata (
                user_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                entity_name TEXT,
                cached_at TEXT,
                modified_at TEXT,
                is_locally_modified INTEGER DEFAULT 0,
                server_modified_at TEXT,
                PRIMARY KEY (user_id, entity_type, entity_id)
            )
        """,
        "conflict_history": """
            CREATE TABLE IF NOT EXISTS conflict_history (
                user_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                payload_json TEXT,
                PRIMARY KEY (user_id, position)
            )
        """,
        "sync_results": """
            CREATE TABLE IF NOT EXISTS sync_results (
                user_id TEXT PRIMARY KEY,
                payload_json TEXT,
                saved_at TEXT
            )
        """,
        "app_settings": """
            CREATE TABLE IF NOT EXISTS app_settings (
                user_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT,
                updated_at TEXT,
                PRIMARY KEY (user_id, key)
            )
        """,
    }

    LAST_SYNC_KEY = "last_sync_date"

    _instance: Optional[OfflineStorage] = None
    _lock = threading.Lock()

    def __init__(self, db_path: Optional[Path] = None):
        """
        Args:
            db_path: Path to the SQLite file (settings.db_path if None)
        """
        if db_path is None:
            from lms_core.settings import get_settings
            db_path = get_settings().db_path
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._current_user_id: Optional[str] = None
        self._collections = collections_by_type()
        self._initialized = False

    @classmethod
    def get_instance(cls, db_path: Optional[Path] = None) -> OfflineStorage:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = OfflineStorage(db_path)
        return cls._instance

    # =========================================================================
    # CONNECTION / TRANSACTIONS
    # =========================================================================

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            self._local.depth = 0
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Group writes into one commit.

        Nested blocks join the outermost one; an exception anywhere rolls back
        everything written since the outermost block began.
        """
        conn = self._get_connection()
        depth = self._local.depth
        self._local.depth = depth + 1
        try:
            yield conn
            if depth == 0:
                conn.commit()
        except sqlite3.Error as e:
            if depth == 0:
                conn.rollback()
            raise StorageError(f"Offline database write failed: {e}", operation="transaction") from e
        except BaseException:
            if depth == 0:
                conn.rollback()
            raise
        finally:
            self._local.depth = depth

    def initialize(self) -> None:
        """Create tables if needed."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")

        self._initialized = True
        logger.info(f"Offline database initialized at: {self.db_path}")

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        self.initialize()
        try:
            return self._get_connection().execute(sql, list(params)).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Offline database read failed: {e}", operation="query") from e

    # =========================================================================
    # USER SCOPE
    # =========================================================================

    def set_current_user(self, user_id: Union[str, uuid.UUID]) -> None:
        """Scope all reads and writes to this user. Call after sign-in."""
        user_id = str(user_id)
        if user_id != self._current_user_id:
            logger.info("Offline storage scoped to a new user")
        self._current_user_id = user_id
        self.initialize()

    def clear_current_user(self) -> None:
        """Drop the user scope (sign-out)."""
        self._current_user_id = None

    @property
    def current_user_id(self) -> Optional[str]:
        return self._current_user_id

    @property
    def is_available(self) -> bool:
        return self._current_user_id is not None

    # =========================================================================
    # ENTITIES
    # =========================================================================

    def save_entities(self, entity_type: str, entities: Sequence[Any]) -> None:
        """Replace the cached collection for entity_type."""
        if not self.is_available:
            return

        collection = self._collections.get(entity_type)
        now = format_timestamp(utc_now())
        rows = []
        for position, entity in enumerate(entities):
            payload = collection.encode(entity) if collection else dict(entity)
            name = collection.entity_name(entity) if collection else payload.get("name")
            rows.append([
                self._current_user_id,
                entity_type,
                str(payload["id"]),
                name,
                position,
                json.dumps(payload, default=str),
                now,
            ])

        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM offline_entities WHERE user_id = ? AND entity_type = ?",
                [self._current_user_id, entity_type],
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO offline_entities
                    (user_id, entity_type, entity_id, entity_name, position, payload_json, saved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

        logger.debug(f"Saved {len(rows)} {entity_type} entities offline")

    def _load_payloads(self, entity_type: str) -> List[Dict[str, Any]]:
        rows = self._query(
            """
            SELECT entity_id, payload_json FROM offline_entities
            WHERE user_id = ? AND entity_type = ?
            ORDER BY position ASC
            """,
            [self._current_user_id, entity_type],
        )
        payloads = []
        for row in rows:
            try:
                payloads.append(json.loads(row["payload_json"]))
            except (TypeError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable {entity_type} {row['entity_id']}: {e}")
        return payloads

    def load_entities(self, entity_type: str) -> List[Any]:
        """Load a cached collection as model objects (raw dicts for unknown types)."""
        if not self.is_available:
            return []

        collection = self._collections.get(entity_type)
        payloads = self._load_payloads(entity_type)
        if collection is None:
            return payloads

        entities = []
        for payload in payloads:
            try:
                entities.append(collection.decode(payload))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed cached {entity_type}: {e}")
        return entities

    def entities_frame(self, entity_type: str) -> pd.DataFrame:
        """Cached collection as a DataFrame (one row per entity)."""
        if not self.is_available:
            return pd.DataFrame()

        payloads = self._load_payloads(entity_type)
        if not payloads:
            return pd.DataFrame()
        return pd.DataFrame(payloads).replace({np.nan: None})

    # =========================================================================
    # METADATA
    # =========================================================================

    def load_metadata(self) -> List[CachedItemMetadata]:
        """Load metadata rows; malformed rows are skipped."""
        if not self.is_available:
            return []

        rows = self._query(
            "SELECT * FROM cached_item_metadata WHERE user_id = ?",
            [self._current_user_id],
        )
        metadata = []
        for row in rows:
            try:
                metadata.append(CachedItemMetadata.from_dict(dict(row)))
            except MetadataDecodeError as e:
                logger.warning(f"Ignoring metadata for {row['entity_type']} {row['entity_id']}: {e.message}")
        return metadata

    def save_metadata(self, metadata: Sequence[CachedItemMetadata]) -> None:
        """Replace all metadata rows for the current user."""
        if not self.is_available:
            return

        rows = [
            [
                self._current_user_id,
                item.entity_type,
                str(item.id),
                item.entity_name,
                format_timestamp(item.cached_at),
                format_timestamp(item.modified_at),
                int(item.is_locally_modified),
                format_timestamp(item.server_modified_at),
            ]
            for item in metadata
        ]
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM cached_item_metadata WHERE user_id = ?",
                [self._current_user_id],
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO cached_item_metadata
                    (user_id, entity_type, entity_id, entity_name, cached_at,
                     modified_at, is_locally_modified, server_modified_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    # =========================================================================
    # CONFLICT HISTORY / SYNC RESULT
    # =========================================================================

    def load_conflict_history(self) -> List[SyncConflict]:
        """Conflict history, most recent first."""
        if not self.is_available:
            return []

        rows = self._query(
            "SELECT payload_json FROM conflict_history WHERE user_id = ? ORDER BY position ASC",
            [self._current_user_id],
        )
        history = []
        for row in rows:
            try:
                history.append(SyncConflict.from_dict(json.loads(row["payload_json"])))
            except (TypeError, json.JSONDecodeError, MetadataDecodeError) as e:
                logger.warning(f"Ignoring unreadable conflict history entry: {e}")
        return history

    def save_conflict_history(self, conflicts: Sequence[SyncConflict]) -> None:
        if not self.is_available:
            return

        rows = [
            [self._current_user_id, position, json.dumps(conflict.to_dict())]
            for position, conflict in enumerate(conflicts)
        ]
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM conflict_history WHERE user_id = ?",
                [self._current_user_id],
            )
            conn.executemany(
                "INSERT INTO conflict_history (user_id, position, payload_json) VALUES (?, ?, ?)",
                rows,
            )

    def save_sync_result(self, result: SyncResult) -> None:
        if not self.is_available:
            return

        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_results (user_id, payload_json, saved_at)
                VALUES (?, ?, ?)
                """,
                [self._current_user_id, json.dumps(result.to_dict()), format_timestamp(utc_now())],
            )

    def load_sync_result(self) -> Optional[SyncResult]:
        if not self.is_available:
            return None

        rows = self._query(
            "SELECT payload_json FROM sync_results WHERE user_id = ?",
            [self._current_user_id],
        )
        if not rows:
            return None
        try:
            return SyncResult.from_dict(json.loads(rows[0]["payload_json"]))
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable last sync result: {e}")
            return None

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        if not self.is_available:
            return default

        rows = self._query(
            "SELECT value FROM app_settings WHERE user_id = ? AND key = ?",
            [self._current_user_id, key],
        )
        if not rows:
            return default
        try:
            return json.loads(rows[0]["value"])
        except (TypeError, json.JSONDecodeError):
            return rows[0]["value"]

    def set_setting(self, key: str, value: Any) -> None:
        if not self.is_available:
            return

        with self.transaction() as conn:
            if value is None:
                conn.execute(
                    "DELETE FROM app_settings WHERE user_id = ? AND key = ?",
                    [self._current_user_id, key],
                )
                return
            conn.execute(
                """
                INSERT OR REPLACE INTO app_settings (user_id, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                [self._current_user_id, key, json.dumps(value), format_timestamp(utc_now())],
            )

    @property
    def last_sync_date(self) -> Optional[datetime]:
        value = self.get_setting(self.LAST_SYNC_KEY)
        try:
            return parse_timestamp(value)
        except ValueError:
            return None

    @last_sync_date.setter
    def last_sync_date(self, value: Optional[datetime]) -> None:
        self.set_setting(self.LAST_SYNC_KEY, format_timestamp(value))

    # =========================================================================
    # HOUSEKEEPING
    # =========================================================================

    @property
    def has_offline_data(self) -> bool:
        if not self.is_available:
            return False
        rows = self._query(
            "SELECT COUNT(*) AS count FROM offline_entities WHERE user_id = ?",
            [self._current_user_id],
        )
        return bool(rows and rows[0]["count"])

    def storage_breakdown(self) -> pd.DataFrame:
        """Item count and approximate payload bytes per cached collection."""
        columns = ["entity_type", "label", "items", "size_bytes"]
        if not self.is_available:
            return pd.DataFrame(columns=columns)

        self.initialize()
        try:
            df = pd.read_sql_query(
                """
                SELECT entity_type, COUNT(*) AS items, SUM(LENGTH(payload_json)) AS size_bytes
                FROM offline_entities
                WHERE user_id = ?
                GROUP BY entity_type
                ORDER BY entity_type
                """,
                self._get_connection(),
                params=[self._current_user_id],
            )
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            raise StorageError(f"Offline database read failed: {e}", operation="storage_breakdown") from e

        df["label"] = df["entity_type"].map(
            lambda t: self._collections[t].label if t in self._collections else t
        )
        return df[columns]

    def clear_all_data(self) -> None:
        """Delete every cached row for the current user."""
        if not self.is_available:
            return

        with self.transaction() as conn:
            for table in self.SCHEMA:
                conn.execute(f"DELETE FROM {table} WHERE user_id = ?", [self._current_user_id])
        logger.info("Cleared offline data for current user")

    def close(self) -> None:
        """Close this thread's database connection."""
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None


# Singleton accessor
_offline_storage: Optional[OfflineStorage] = None


def get_offline_storage() -> OfflineStorage:
    """Get the global OfflineStorage instance."""
    global _offline_storage
    if _offline_storage is None:
        _offline_storage = OfflineStorage.get_instance()
        _offline_storage.initialize()
    return _offline_storage
