# =============================================================================
# lms_core/services/base_service.py
# Shared logging and failure handling for the sync services
# =============================================================================

from __future__ import annotations
from abc import ABC
from typing import Optional, Dict, Any, Callable
from dataclasses import dataclass, field

from lms_core.logging import get_logger, LogContext
from lms_core.errors import handle_error, LMSCoreError


@dataclass
class ServiceResult:
    """
    Outcome of a service call that must not raise.

    The snapshot fetcher returns one per collection; a failed result carries
    the error message and code that end up in ServerSnapshot.failures.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, data: Any = None) -> ServiceResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: str = "UNKNOWN") -> ServiceResult:
        return cls(success=False, error=error, error_code=error_code)

    @classmethod
    def from_exception(cls, e: Exception) -> ServiceResult:
        """Core errors keep their code and details; anything else is EXCEPTION."""
        if isinstance(e, LMSCoreError):
            return cls(success=False, error=e.message, error_code=e.code, details=dict(e.details))
        return cls.fail(str(e), error_code="EXCEPTION")


class BaseService(ABC):
    """
    Base for the fetcher and the reconciler: a per-class logger, timed
    operation blocks and a non-raising call wrapper.
    """

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def log_operation(self, operation: str) -> LogContext:
        return LogContext(self.logger, operation)

    def safe_execute(
        self,
        operation: str,
        func: Callable[..., Any],
        *args,
        **kwargs
    ) -> ServiceResult:
        """
        Run func inside a timed block and wrap its outcome.

        LMSCoreError goes through handle_error (logged, never shown to the
        user); other exceptions are logged with traceback.
        """
        with self.log_operation(operation):
            try:
                return ServiceResult.ok(func(*args, **kwargs))
            except LMSCoreError as e:
                handle_error(e, show_user_message=False)
                return ServiceResult.from_exception(e)
            except Exception as e:
                self.logger.error(f"{operation} failed: {e}", exc_info=True)
                return ServiceResult.from_exception(e)
