"""
FIT Archive

A personal archive of sport activities and all-day monitoring data recorded
by GPS and fitness devices.

Quick Start:
    from fitarchive import load_or_create_config, open_archive, Ingestor

    archive = open_archive(load_or_create_config(Path("~/.fitarchive").expanduser()))
    Ingestor(archive).ingest_paths([Path("~/garmin/Activity")])
    for activity in archive.find(":1-5"):
        print(activity)

CLI Usage:
    fitarchive import ~/garmin/Activity/
    fitarchive list
    fitarchive set :1 norecord true
    fitarchive records

Default Archive:
    ~/.fitarchive/ (created automatically).
    Override with FITARCHIVE_DIR or the --store option.

Environment Variables:
    FITARCHIVE_DIR      - Override default archive location
    FITARCHIVE_VERBOSE  - Set to 1 for debug logging
"""

from .archive import Archive, open_archive
from .config import ArchiveConfig, load_or_create_config
from .errors import (
    AlreadyImported,
    DecodeError,
    FitArchiveError,
    InvalidReference,
    MigrationFailure,
    NotFound,
    StorageCorruption,
    UnknownAttribute,
    UnrecognizedContent,
)
from .ingest import Ingestor, fingerprint
from .records import PersonalRecords
from .types import Activity, MonitoringEntry, RecordEntry

__version__ = "0.4.0"
__all__ = [
    "Activity",
    "AlreadyImported",
    "Archive",
    "ArchiveConfig",
    "DecodeError",
    "FitArchiveError",
    "Ingestor",
    "InvalidReference",
    "MigrationFailure",
    "MonitoringEntry",
    "NotFound",
    "PersonalRecords",
    "RecordEntry",
    "StorageCorruption",
    "UnknownAttribute",
    "UnrecognizedContent",
    "fingerprint",
    "load_or_create_config",
    "open_archive",
]
