# =============================================================================
# lms_core/errors/exceptions.py
# Custom Exception Hierarchy for the offline sync core
# =============================================================================

from typing import Optional, Dict, Any


class LMSCoreError(Exception):
    """
    Base exception for all offline cache / sync errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "SYNC_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "LMS_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# SYNC EXCEPTIONS
# =============================================================================

class StoreUnavailableError(LMSCoreError):
    """Raised when the persistent offline store is not configured or has no user"""

    def __init__(
        self,
        message: str = "Offline storage not available.",
        reason: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reason:
            details["reason"] = reason

        super().__init__(
            message=message,
            code="SYNC_001",
            details=details,
            **kwargs,
        )


class EntityFetchError(LMSCoreError):
    """Raised when one entity collection cannot be fetched from the server"""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if entity_type:
            details["entity_type"] = entity_type
        if table:
            details["table"] = table

        super().__init__(
            message=message,
            code="SYNC_002",
            details=details,
            **kwargs,
        )
        self.entity_type = entity_type


class SyncCancelledError(LMSCoreError):
    """Raised when a reconciliation cycle is cancelled before its commit"""

    def __init__(self, message: str = "Sync cancelled before commit.", **kwargs):
        super().__init__(message=message, code="SYNC_003", **kwargs)


# =============================================================================
# STORAGE EXCEPTIONS
# =============================================================================

class StorageError(LMSCoreError):
    """Raised when the local offline database fails a read or write"""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            **kwargs,
        )


class MetadataDecodeError(LMSCoreError):
    """Raised when a persisted metadata or conflict row has the wrong shape"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field

        super().__init__(
            message=message,
            code="STORE_002",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(LMSCoreError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
