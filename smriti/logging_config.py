"""
Logging configuration for smriti.

Quiet by default: only warnings reach stderr unless debug mode is enabled.
Ingestion runs on timer and consumer threads, so debug and ops records
carry the thread name.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "smriti-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

_DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
_OPS_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(message)s"


def _package_logger() -> logging.Logger:
    return logging.getLogger("smriti")


def configure_quiet_mode(quiet: bool = True):
    """
    Keep the terminal clean.

    Args:
        quiet: If True, only warnings and errors from smriti are shown.
            If False, info-level messages are shown as well.
    """
    if quiet:
        warnings.filterwarnings("ignore")
    _package_logger().setLevel(logging.WARNING if quiet else logging.INFO)


def enable_debug_mode():
    """Send smriti's debug-level records to stderr."""
    warnings.filterwarnings("default")

    logger = _package_logger()
    logger.setLevel(logging.DEBUG)
    for h in logger.handlers:
        if getattr(h, "_smriti_debug", False):
            return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_DEBUG_FORMAT, datefmt="%H:%M:%S"))
    handler._smriti_debug = True
    logger.addHandler(handler)
    # Records are handled here; the root logger would print them twice
    logger.propagate = False


def configure_ops_log(store_path):
    """Attach the persistent operations log for a store.

    Writes {store_path}/smriti-ops.log through a rotating handler, at INFO
    regardless of --verbose. Returns the handler for remove_ops_log().
    """
    log_path = Path(store_path) / OPS_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(_OPS_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logger = _package_logger()
    logger.addHandler(handler)
    # Quiet mode sets WARNING; the ops log still needs INFO records
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    _package_logger().removeHandler(handler)
    handler.close()
