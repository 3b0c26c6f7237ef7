"""
Error types and error logging for smriti.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class SmritiError(Exception):
    """Base class for errors raised by the index engine."""


class InvalidURLError(SmritiError, ValueError):
    """A URL could not be parsed (malformed input, never fatal to a batch)."""


class IndexStoreError(SmritiError):
    """The index store could not be read or written."""


class HistorySourceError(SmritiError):
    """The history source failed to answer a query."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting SMRITI_STORE_PATH."""
    store = os.environ.get("SMRITI_STORE_PATH")
    if store:
        return Path(store) / "smriti-errors.log"
    return Path.home() / ".smriti" / "smriti-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
