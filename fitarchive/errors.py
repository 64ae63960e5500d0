"""
Error types and error logging for fitarchive.

Every error has a one-line message suitable for the terminal. Full stack
traces go to an error log file in the archive directory.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class FitArchiveError(Exception):
    """Base class for all archive errors."""


class InvalidReference(FitArchiveError):
    """An activity reference has bad syntax or an out-of-range index."""

    def __init__(self, reference: str, reason: str = "invalid activity reference"):
        self.reference = reference
        self.reason = reason
        super().__init__(f"{reason}: ':{reference}'")


class AlreadyImported(FitArchiveError):
    """The file content is already known to the archive."""

    def __init__(self, fingerprint: str, source: str = ""):
        self.fingerprint = fingerprint
        self.source = source
        label = source or fingerprint
        super().__init__(f"{label} has already been imported (use --force to re-import)")


class DecodeError(FitArchiveError):
    """The decoder rejected the file bytes."""


class UnrecognizedContent(FitArchiveError):
    """The file decoded, but holds neither activity nor monitoring data."""

    def __init__(self, source: str, file_type: str = ""):
        self.source = source
        self.file_type = file_type
        kind = f" (type {file_type})" if file_type else ""
        super().__init__(f"{source} is not a recognized activity or monitoring file{kind}")


class NotFound(FitArchiveError):
    """A reference or identity matched no stored activity."""


class UnknownAttribute(FitArchiveError):
    """An attribute name outside the settable set."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f"Unknown attribute '{key}' (supported: name, type, subtype, note, norecord)"
        )


class MigrationFailure(FitArchiveError):
    """A migration step failed; no command may run against the archive."""


class StorageCorruption(FitArchiveError):
    """A structural check found damaged data."""

    def __init__(self, message: str, problems: Optional[list[str]] = None):
        self.problems = problems or []
        super().__init__(message)


def _error_log_path(archive_dir: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting FITARCHIVE_DIR."""
    if archive_dir is not None:
        return Path(archive_dir) / "fitarchive-errors.log"
    store = os.environ.get("FITARCHIVE_DIR")
    if store:
        return Path(store) / "fitarchive-errors.log"
    return Path.home() / ".fitarchive" / "fitarchive-errors.log"


def log_exception(exc: Exception, context: str = "", archive_dir: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        archive_dir: Archive directory; defaults to the environment/home location

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(archive_dir)
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
        pass  # Can't write error log, don't crash over it
    return log_path
