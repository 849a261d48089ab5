# =============================================================================
# lms_core/settings.py
# Offline cache / sync configuration
# =============================================================================
"""
Settings for the offline cache and sync reconciler.

Values are resolved in this order:
1. Streamlit secrets (`.streamlit/secrets.toml`)
2. Environment variables
3. Built-in defaults

Expected secrets.toml format:
    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"

    [offline]
    db_path = "local_data/offline.db"
    cache_max_entries = 200
    cache_default_ttl = 300
    sync_interval = 60
    conflict_history_limit = 50
    timestamp_epsilon_ms = 1
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging

import streamlit as st

from lms_core.errors import ConfigurationError

logger = logging.getLogger(__name__)


DEFAULT_DB_PATH = Path("local_data") / "offline.db"

# Supabase table per synchronized entity type
DEFAULT_TABLES = {
    "course": "courses",
    "assignment": "assignments",
    "grade": "grades",
    "conversation": "conversations",
}

ENV_KEYS = {
    "db_path": "LMS_OFFLINE_DB_PATH",
    "cache_max_entries": "LMS_CACHE_MAX_ENTRIES",
    "cache_default_ttl": "LMS_CACHE_DEFAULT_TTL",
    "sync_interval": "LMS_SYNC_INTERVAL",
    "conflict_history_limit": "LMS_CONFLICT_HISTORY_LIMIT",
    "timestamp_epsilon_ms": "LMS_TIMESTAMP_EPSILON_MS",
}


@dataclass
class OfflineSettings:
    """Resolved configuration for the offline subsystem."""
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    db_path: Path = DEFAULT_DB_PATH
    cache_max_entries: int = 200
    cache_default_ttl: float = 300.0     # Seconds
    sync_interval: float = 60.0          # Seconds between background sync attempts
    conflict_history_limit: int = 50
    timestamp_epsilon_ms: float = 1.0
    page_size: int = 1000                # Supabase row limit per request
    tables: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TABLES))

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def _read_secrets() -> Dict[str, Mapping[str, Any]]:
    """Read the [supabase] and [offline] sections, if a secrets file exists."""
    sections: Dict[str, Mapping[str, Any]] = {}
    try:
        for name in ("supabase", "offline"):
            if name in st.secrets:
                sections[name] = dict(st.secrets[name])
    except Exception as e:
        # No secrets.toml outside a configured Streamlit deployment
        logger.debug(f"Streamlit secrets not available: {e}")
    return sections


def _coerce(key: str, value: Any, kind: type) -> Any:
    try:
        coerced = kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid value for '{key}': {value!r}",
            config_key=key,
            expected_type=kind.__name__,
        )
    if kind in (int, float) and coerced < 0:
        raise ConfigurationError(
            f"'{key}' must not be negative (got {value!r})",
            config_key=key,
            expected_type=kind.__name__,
        )
    return coerced


def load_settings(overrides: Optional[Mapping[str, Any]] = None) -> OfflineSettings:
    """
    Build OfflineSettings from secrets, environment and defaults.

    Args:
        overrides: Explicit values that win over every other source

    Raises:
        ConfigurationError: If a numeric setting cannot be parsed
    """
    secrets = _read_secrets()
    supabase = secrets.get("supabase", {})
    offline = secrets.get("offline", {})
    overrides = dict(overrides or {})

    settings = OfflineSettings(
        supabase_url=supabase.get("url") or os.getenv("SUPABASE_URL"),
        supabase_key=supabase.get("key") or os.getenv("SUPABASE_KEY"),
    )

    kinds = {
        "db_path": Path,
        "cache_max_entries": int,
        "cache_default_ttl": float,
        "sync_interval": float,
        "conflict_history_limit": int,
        "timestamp_epsilon_ms": float,
    }
    for key, kind in kinds.items():
        raw = overrides.get(key, offline.get(key, os.getenv(ENV_KEYS[key])))
        if raw is not None and raw != "":
            setattr(settings, key, _coerce(key, raw, kind))

    for key in ("supabase_url", "supabase_key", "page_size"):
        if key in overrides:
            setattr(settings, key, overrides[key])

    if "tables" in offline:
        settings.tables.update(dict(offline["tables"]))
    if "tables" in overrides:
        settings.tables.update(overrides["tables"])

    return settings


_settings: Optional[OfflineSettings] = None


def get_settings() -> OfflineSettings:
    """Get the process-wide OfflineSettings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
