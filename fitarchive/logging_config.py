"""
Logging configuration for fitarchive.

Quiet by default: only warnings reach the terminal. --verbose switches to
debug output on stderr. Every open archive also keeps an operations log.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "fitarchive-ops.log"


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose output.

    Library warnings (fitparse emits some for unusual device data) are
    silenced and the package logger only passes warnings to the console.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        logging.getLogger("fitparse").setLevel(logging.ERROR)

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.WARNING if quiet else logging.INFO)
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root_logger.addHandler(handler)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    stderr_handlers = [
        h for h in root_logger.handlers
        if isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
    ]
    if not stderr_handlers:
        handler = logging.StreamHandler(sys.stderr)
        root_logger.addHandler(handler)
        stderr_handlers = [handler]
    for handler in stderr_handlers:
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))

    for name in ("fitarchive", "fitparse"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(archive_dir):
    """Configure a persistent operations log for an archive.

    Writes to {archive_dir}/fitarchive-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(archive_dir) / OPS_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    pkg_logger = logging.getLogger("fitarchive")
    pkg_logger.addHandler(handler)
    # Let INFO through to the file even in quiet mode
    if pkg_logger.level == logging.NOTSET or pkg_logger.level > logging.INFO:
        pkg_logger.setLevel(logging.INFO)

    return handler
