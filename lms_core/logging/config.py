# =============================================================================
# lms_core/logging/config.py
# Logging Configuration for the offline sync core
# =============================================================================

import logging
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Optional


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_DIR = Path("logs")

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "hpack", "supabase", "postgrest")


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (default: INFO)
        log_to_file: Whether to also log to a file
        log_filename: Custom log filename (default: offline_sync_YYYY-MM-DD.log)
        log_dir: Directory for the log file (default: ./logs)
    """
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        target_dir = log_dir or LOG_DIR
        target_dir.mkdir(parents=True, exist_ok=True)
        if log_filename is None:
            log_filename = f"offline_sync_{datetime.now().strftime('%Y-%m-%d')}.log"
        handlers.append(logging.FileHandler(target_dir / log_filename))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("lms_core").info("Logging initialized")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Usage:
        from lms_core.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Sync started")
    """
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for logging operation timing and status.

    Usage:
        with LogContext(logger, "Reconciling offline cache"):
            service.resolve_conflicts(snapshot)
        # Logs: "Reconciling offline cache... started"
        # Logs: "Reconciling offline cache... completed (0.12s)"
    """

    def __init__(self, logger: logging.Logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info(f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.perf_counter() - self.start_time

        if exc_type is None:
            self.logger.info(f"{self.operation}... completed ({elapsed:.2f}s)")
        else:
            self.logger.error(
                f"{self.operation}... failed ({elapsed:.2f}s): {exc_val}",
                exc_info=True,
            )

        return False
