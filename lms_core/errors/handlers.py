# =============================================================================
# lms_core/errors/handlers.py
# Error Handling Utilities for the offline sync core
# =============================================================================

from __future__ import annotations
import functools
import traceback
from typing import Optional, Callable, TypeVar, Any
import streamlit as st

from lms_core.logging import get_logger
from .exceptions import LMSCoreError

logger = get_logger(__name__)

T = TypeVar("T")


def handle_error(
    error: Exception,
    show_user_message: bool = True,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> None:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        show_user_message: Whether to display error to user via st.error
        log_error: Whether to log the error
        user_message: Custom message to show user (uses error message if None)
    """
    if isinstance(error, LMSCoreError):
        message = user_message or error.message
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        logger.error(
            f"[{code}] {message}",
            extra={"details": details},
            exc_info=error,
        )

    if show_user_message:
        if recoverable:
            st.error(f"Error: {message}")
        else:
            st.error(f"Critical Error: {message}. Please contact support.")


def safe_execute(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    error_message: Optional[str] = None,
    reraise: bool = False,
    show_user_message: bool = False,
    **kwargs,
) -> Optional[T]:
    """
    Execute a function with automatic error handling.

    Usage:
        history = safe_execute(
            storage.load_conflict_history,
            default=[],
            error_message="Could not read conflict history"
        )
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        handle_error(e, show_user_message=show_user_message, user_message=error_message)
        if reraise:
            raise
        return default


class ErrorContext:
    """
    Context manager for error handling with automatic logging and user feedback.

    Usage:
        with ErrorContext("Syncing offline data", recoverable=True):
            engine.sync_now()
    """

    def __init__(
        self,
        operation: str,
        recoverable: bool = True,
        show_user_message: bool = True,
    ):
        self.operation = operation
        self.recoverable = recoverable
        self.show_user_message = show_user_message
        self.error: Optional[BaseException] = None

    def __enter__(self) -> ErrorContext:
        logger.info(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.info(f"Completed: {self.operation}")
            return False

        if not isinstance(exc_val, Exception):
            return False

        self.error = exc_val
        if isinstance(exc_val, LMSCoreError):
            handle_error(exc_val, show_user_message=self.show_user_message)
        else:
            handle_error(
                exc_val,
                show_user_message=self.show_user_message,
                user_message=f"Error during: {self.operation}",
            )

        # Suppress exception if recoverable
        return self.recoverable


def error_boundary(
    default_return: Any = None,
    log: bool = True,
):
    """
    Decorator to wrap functions with error handling.

    Usage:
        @error_boundary(default_return=[])
        def load_rows() -> List[dict]:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., Optional[T]]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Optional[T]:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if log:
                    logger.error(
                        f"Error in {func.__name__}: {e}",
                        exc_info=True,
                    )
                return default_return

        return wrapper

    return decorator
