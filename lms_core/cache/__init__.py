# =============================================================================
# lms_core/cache/__init__.py
# In-memory response cache
# =============================================================================

from .ttl_cache import CacheEntry, TTLCache, get_response_cache

__all__ = ["CacheEntry", "TTLCache", "get_response_cache"]
