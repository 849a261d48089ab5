# =============================================================================
# lms_core/offline/snapshot_fetcher.py
# Fetch authoritative entity collections from Supabase
# =============================================================================
"""
SupabaseSnapshotFetcher - Pulls the synchronized collections from Supabase and
assembles a ServerSnapshot for reconciliation.

A failure on one table is recorded in snapshot.failures and does not stop the
other tables from being fetched.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

from lms_core.cache import TTLCache
from lms_core.errors import ConfigurationError, EntityFetchError
from lms_core.offline.entity_registry import DEFAULT_COLLECTIONS, EntityCollection
from lms_core.offline.snapshot import ServerSnapshot
from lms_core.services.base_service import BaseService, ServiceResult
from lms_core.settings import OfflineSettings, get_settings


class SupabaseSnapshotFetcher(BaseService):
    """
    Reads entity tables through the supabase client with pagination.

    Usage:
        fetcher = SupabaseSnapshotFetcher(cache=get_response_cache())
        snapshot = fetcher.fetch_snapshot()
    """

    CACHE_PREFIX = "remote"

    def __init__(
        self,
        client: Any = None,
        settings: Optional[OfflineSettings] = None,
        cache: Optional[TTLCache] = None,
        collections: Sequence[EntityCollection] = DEFAULT_COLLECTIONS,
    ):
        super().__init__()
        self.settings = settings or get_settings()
        self.cache = cache
        self.collections = tuple(collections)
        self._client = client

    def _get_client(self) -> Any:
        """Lazy create the Supabase client from settings."""
        if self._client is None:
            if not self.settings.has_supabase:
                raise ConfigurationError(
                    "Supabase credentials not configured",
                    config_key="supabase.url",
                )
            from supabase import create_client
            self._client = create_client(self.settings.supabase_url, self.settings.supabase_key)
        return self._client

    def table_for(self, collection: EntityCollection) -> str:
        return self.settings.tables.get(collection.entity_type) or collection.default_table

    def cache_key(self, entity_type: str) -> str:
        return f"{self.CACHE_PREFIX}:{entity_type}:all"

    # =========================================================================
    # FETCHING
    # =========================================================================

    def _fetch_rows(self, table: str) -> List[Dict[str, Any]]:
        """Fetch ALL rows of a table (handles the Supabase 1000 row limit)."""
        client = self._get_client()
        batch_size = self.settings.page_size
        all_rows: List[Dict[str, Any]] = []
        offset = 0

        while True:
            response = (
                client.table(table)
                .select("*")
                .order("id")
                .range(offset, offset + batch_size - 1)
                .execute()
            )
            rows = response.data or []
            all_rows.extend(rows)
            if len(rows) < batch_size:
                break
            offset += batch_size

        return all_rows

    def _load_collection(self, collection: EntityCollection) -> List[Any]:
        table = self.table_for(collection)
        try:
            rows = self._fetch_rows(table)
        except ConfigurationError:
            raise
        except Exception as e:
            raise EntityFetchError(
                f"Could not read table '{table}': {e}",
                entity_type=collection.entity_type,
                table=table,
            ) from e

        try:
            return [collection.decode(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise EntityFetchError(
                f"Unexpected row shape in '{table}': {e}",
                entity_type=collection.entity_type,
                table=table,
            ) from e

    def fetch_collection(self, entity_type: str, fresh: bool = False) -> ServiceResult:
        """
        Fetch one collection.

        Args:
            entity_type: Registered entity type (e.g. "course")
            fresh: Bypass the cache and refresh it with the server copy

        Returns:
            ServiceResult whose data is the list of entities
        """
        collection = next((c for c in self.collections if c.entity_type == entity_type), None)
        if collection is None:
            return ServiceResult.fail(f"Unknown entity type '{entity_type}'", error_code="SYNC_002")

        def load() -> List[Any]:
            return self._load_collection(collection)

        def load_and_cache() -> List[Any]:
            if self.cache is None:
                return load()
            if fresh:
                items = load()
                self.cache.set(self.cache_key(entity_type), items)
                return items
            return self.cache.get_or_load(self.cache_key(entity_type), load)

        return self.safe_execute(f"Fetching {collection.label.lower()}", load_and_cache)

    def fetch_snapshot(self, fresh: bool = True) -> ServerSnapshot:
        """Fetch every registered collection; failed types land in snapshot.failures."""
        snapshot = ServerSnapshot()
        for collection in self.collections:
            result = self.fetch_collection(collection.entity_type, fresh=fresh)
            if result.success:
                snapshot.add(collection.entity_type, result.data)
            else:
                snapshot.fail(collection.entity_type, result.error or "unknown error")

        if snapshot.failures:
            self.logger.warning(f"Snapshot incomplete; failed types: {sorted(snapshot.failures)}")
        return snapshot

    def invalidate(self, entity_type: Optional[str] = None) -> int:
        """Drop cached server collections (one type, or all)."""
        if self.cache is None:
            return 0
        prefix = f"{self.CACHE_PREFIX}:{entity_type}:" if entity_type else f"{self.CACHE_PREFIX}:"
        return self.cache.invalidate_by_prefix(prefix)
