# =============================================================================
# lms_core/errors/__init__.py
# Centralized Error Handling for the offline sync core
# =============================================================================

from .exceptions import (
    LMSCoreError,
    StoreUnavailableError,
    EntityFetchError,
    SyncCancelledError,
    StorageError,
    MetadataDecodeError,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    safe_execute,
    ErrorContext,
    error_boundary,
)

__all__ = [
    # Exceptions
    "LMSCoreError",
    "StoreUnavailableError",
    "EntityFetchError",
    "SyncCancelledError",
    "StorageError",
    "MetadataDecodeError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "safe_execute",
    "ErrorContext",
    "error_boundary",
]
