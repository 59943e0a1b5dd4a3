"""
Database Utilities

Retry logic and connection setup for SQLite. The refresh task writes while
API handlers read, so every connection runs in WAL mode with a busy timeout.
"""

import functools
import logging
import sqlite3
import time
from typing import Any, Callable

log = logging.getLogger("PNodeMonitor.DbUtils")

_RETRYABLE_MESSAGES = ("locked", "busy", "unable to open")


def retry_on_db_lock(max_attempts: int = 3, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator to retry database operations on lock/busy errors with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    error_msg = str(e).lower()
                    if not any(msg in error_msg for msg in _RETRYABLE_MESSAGES):
                        raise
                    if attempt == max_attempts:
                        log.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise
                    log.warning(
                        f"{func.__name__} hit a locked database (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    delay = min(delay * 2 + (time.time() % 0.1), max_delay)

        return wrapper

    return decorator


def get_optimized_connection(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """
    Create a SQLite connection tuned for one writer and many concurrent readers.

    Rows are returned as sqlite3.Row so callers can address columns by name.
    """
    conn = sqlite3.connect(db_path, timeout=timeout, detect_types=0)
    conn.row_factory = sqlite3.Row

    cursor = conn.cursor()
    # WAL lets API reads proceed while the refresher is writing (persistent setting)
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA temp_store=MEMORY;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")

    log.debug(f"Opened SQLite connection to {db_path} (timeout={timeout}s)")
    return conn
