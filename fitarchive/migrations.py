"""
Archive migrations.

Three independent steps run when an archive is opened, before any command
sees it:

1. Storage engine: a ``jsondir`` store is copied into a new ``sqlite``
   store, verified, and swapped in by renaming directories. The old store
   is kept as ``database-old``.
2. Schema: the version in the store's ``meta`` object is brought up to
   SCHEMA_VERSION one step at a time, each step in its own transaction.
3. Legacy archive: activities listed in ``archive.yml`` are imported in
   timestamp order and their source files moved to ``old_fit_dir``.

Every step can be interrupted and simply run again.
"""

import logging
import os
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

import yaml

from .errors import AlreadyImported, FitArchiveError, MigrationFailure
from .object_store import (
    ENGINE_JSONDIR,
    ENGINE_SQLITE,
    ObjectStore,
    detect_engine,
    open_store,
)
from .records import PersonalRecords
from .types import Activity, format_utc, utc_now

if TYPE_CHECKING:
    from .archive import Archive

logger = logging.getLogger(__name__)

# Bump when stored data changes shape, and add a step to UPGRADE_STEPS
SCHEMA_VERSION = 4

LEGACY_ARCHIVE_FILENAME = "archive.yml"
LEGACY_BACKUP_SUFFIX = ".bak"
IMPORTED_FIT_DIRNAME = "old_fit_dir"


# -----------------------------------------------------------------------------
# Storage engine
# -----------------------------------------------------------------------------

def _sibling(database_dir: Path, suffix: str) -> Path:
    return database_dir.with_name(f"{database_dir.name}-{suffix}")


def _retired_dir(database_dir: Path) -> Path:
    """Name for the retired store; never overwrites an earlier one."""
    candidate = _sibling(database_dir, "old")
    n = 2
    while candidate.exists():
        candidate = _sibling(database_dir, f"old{n}")
        n += 1
    return candidate


def _verify_store(path: Path, expected: Optional[int] = None) -> None:
    """Open a store, run its structural check and compare the object count."""
    store = open_store(path, ENGINE_SQLITE)
    try:
        count = store.check()
    finally:
        store.close()
    if expected is not None and count != expected:
        raise MigrationFailure(
            f"{path}: copy holds {count} objects, source holds {expected}"
        )


def ensure_current_engine(database_dir: Path) -> bool:
    """
    Convert a legacy-engine store to the current engine.

    Returns:
        True if anything was migrated or completed

    Raises:
        MigrationFailure: If the copy cannot be made or verified. The legacy
            store is untouched in that case.
    """
    database_dir = Path(database_dir)
    new_dir = _sibling(database_dir, "new")

    # Interrupted between the two renames: the verified copy is complete
    if not database_dir.exists() and new_dir.exists():
        logger.warning("Completing interrupted storage migration in %s", database_dir.parent)
        try:
            _verify_store(new_dir)
            new_dir.rename(database_dir)
        except (FitArchiveError, OSError, sqlite3.Error) as e:
            raise MigrationFailure(f"Cannot complete storage migration: {e}") from e
        return True

    if detect_engine(database_dir) != ENGINE_JSONDIR:
        if new_dir.exists():
            logger.warning("Ignoring leftover directory %s", new_dir)
        return False

    logger.warning("Migrating %s to the %s storage engine", database_dir, ENGINE_SQLITE)
    try:
        if new_dir.exists():
            # Interrupted copy; the legacy store is still authoritative
            logger.info("Removing incomplete copy %s", new_dir)
            shutil.rmtree(new_dir)

        legacy = open_store(database_dir, ENGINE_JSONDIR)
        try:
            expected = len(legacy.keys())
            legacy.copy(new_dir, ENGINE_SQLITE)
        finally:
            legacy.close()
        _verify_store(new_dir, expected)
    except MigrationFailure:
        raise
    except (FitArchiveError, OSError, sqlite3.Error, ValueError) as e:
        raise MigrationFailure(f"Storage migration failed: {e}") from e

    retired = _retired_dir(database_dir)
    try:
        database_dir.rename(retired)
        new_dir.rename(database_dir)
    except OSError as e:
        raise MigrationFailure(f"Cannot swap in migrated store: {e}") from e
    logger.warning(
        "Storage migration complete; the old store is kept in %s", retired
    )
    return True


# -----------------------------------------------------------------------------
# Schema
# -----------------------------------------------------------------------------

def _activity_keys(store: ObjectStore) -> list[str]:
    from .archive import ACTIVITY_PREFIX
    return [k for k in store.keys() if k.startswith(ACTIVITY_PREFIX)]


def _upgrade_1_to_2(store: ObjectStore) -> None:
    """Activities gain note and norecord."""
    for key in _activity_keys(store):
        data = store.get(key)
        data.setdefault("note", "")
        data.setdefault("norecord", False)
        store.set(key, data)


def _upgrade_2_to_3(store: ObjectStore) -> None:
    """Fingerprint index entries become records instead of bare status strings."""
    from .archive import (
        ACTIVITY_PREFIX,
        FINGERPRINT_PREFIX,
        KIND_ACTIVITY,
        KIND_MONITORING,
        MONITORING_PREFIX,
    )
    monitoring_ids = {
        (store.get(k) or {}).get("id")
        for k in store.keys() if k.startswith(MONITORING_PREFIX)
    }
    for key in store.keys():
        if not key.startswith(FINGERPRINT_PREFIX):
            continue
        value = store.get(key)
        if isinstance(value, dict):
            continue
        fp = key[len(FINGERPRINT_PREFIX):]
        if fp in monitoring_ids:
            kind = KIND_MONITORING
        elif store.get(ACTIVITY_PREFIX + fp) is not None:
            kind = KIND_ACTIVITY
        else:
            # Deleted before this version; kind no longer known
            kind = KIND_ACTIVITY
        store.set(key, {"status": str(value), "kind": kind, "id": fp, "updated_at": utc_now()})


def _upgrade_3_to_4(store: ObjectStore) -> None:
    """Rebuild the index and records in (timestamp, id) order."""
    from .archive import INDEX_KEY, RECORDS_KEY
    activities = [Activity.from_dict(store.get(k)) for k in _activity_keys(store)]
    activities.sort(key=lambda a: a.sort_key)
    store.set(INDEX_KEY, [a.id for a in activities])
    records = PersonalRecords()
    records.recompute(activities)
    store.set(RECORDS_KEY, records.to_dict())


# from_version -> step producing from_version + 1
UPGRADE_STEPS: dict[int, Callable[[ObjectStore], None]] = {
    1: _upgrade_1_to_2,
    2: _upgrade_2_to_3,
    3: _upgrade_3_to_4,
}


def read_schema_version(store: ObjectStore) -> Optional[int]:
    """
    Stored schema version.

    Returns None for an empty store. Data written before the meta object
    existed is version 1.
    """
    from .archive import META_KEY
    meta = store.get(META_KEY)
    if meta is not None:
        return int(meta.get("schema_version", 1))
    return 1 if store.keys() else None


def upgrade_schema(store: ObjectStore) -> int:
    """
    Bring the store up to SCHEMA_VERSION.

    A newer or equal version is left alone. Each step commits together with
    the version bump, so an interrupted upgrade resumes at the failed step.

    Returns:
        Number of steps run

    Raises:
        MigrationFailure: If a step fails
    """
    from .archive import META_KEY

    version = read_schema_version(store)
    if version is None:
        with store.transaction():
            store.set(META_KEY, {"schema_version": SCHEMA_VERSION, "created": utc_now()})
        logger.info("Initialized new archive at schema version %d", SCHEMA_VERSION)
        return 0
    if version > SCHEMA_VERSION:
        logger.warning(
            "Archive schema version %d is newer than this program (%d)",
            version, SCHEMA_VERSION,
        )
        return 0

    steps = 0
    while version < SCHEMA_VERSION:
        step = UPGRADE_STEPS.get(version)
        if step is None:
            raise MigrationFailure(f"No upgrade path from schema version {version}")
        logger.warning("Upgrading archive schema from version %d to %d", version, version + 1)
        try:
            with store.transaction():
                step(store)
                meta = store.get(META_KEY) or {"created": utc_now()}
                meta["schema_version"] = version + 1
                store.set(META_KEY, meta)
        except (FitArchiveError, KeyError, TypeError, ValueError, sqlite3.Error, OSError) as e:
            raise MigrationFailure(
                f"Schema upgrade from version {version} to {version + 1} failed: {e}"
            ) from e
        version += 1
        steps += 1
    if steps:
        store.compact()
        logger.info("Archive schema is now at version %d", version)
    return steps


# -----------------------------------------------------------------------------
# Legacy archive
# -----------------------------------------------------------------------------

def _legacy_timestamp(entry: dict) -> str:
    value = entry.get("timestamp")
    if isinstance(value, datetime):
        return format_utc(value)
    return str(value or "")


def _legacy_attributes(entry: dict) -> dict:
    """Mutable attributes carried over from a legacy entry."""
    attributes = {}
    for legacy_key, key in (("sport", "type"), ("sub_sport", "subtype"),
                            ("name", "name"), ("norecord", "norecord")):
        value = entry.get(legacy_key)
        if value is not None and value != "":
            attributes[key] = value
    return attributes


def load_legacy_entries(path: Path) -> list[dict]:
    """Read archive.yml, sorted oldest first."""
    try:
        with open(path, encoding="utf-8") as f:
            entries = yaml.safe_load(f) or []
    except (OSError, yaml.YAMLError) as e:
        raise MigrationFailure(f"Cannot read legacy archive {path}: {e}") from e
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise MigrationFailure(f"{path}: expected a list of activity entries")
    return sorted(entries, key=_legacy_timestamp)


def import_legacy_archive(archive: "Archive") -> dict:
    """
    Import activities from a legacy archive.yml.

    Each activity is ingested with its legacy attributes in one transaction;
    its source file is moved to old_fit_dir only after that commits.
    Already-imported files are just moved, so a restarted import continues
    where it stopped. Missing source files are skipped with a warning.

    archive.yml is renamed to archive.yml.bak once no entry failed; on
    failures it stays so the next start retries them.

    Returns:
        Counts: imported, already, missing, failed
    """
    from .ingest import Ingestor

    config = archive.config
    legacy_path = config.path / LEGACY_ARCHIVE_FILENAME
    if not legacy_path.exists():
        return {}

    entries = load_legacy_entries(legacy_path)
    logger.warning("Importing %d activities from legacy archive %s", len(entries), legacy_path)

    ingestor = Ingestor(archive)
    fit_dir = config.fit_dir
    moved_dir = config.path / IMPORTED_FIT_DIRNAME
    stats = {"imported": 0, "already": 0, "missing": 0, "failed": 0}

    for entry in entries:
        fit_file = entry.get("fit_file")
        if not fit_file:
            logger.warning("Legacy entry %r has no fit_file, skipped", entry.get("name"))
            stats["missing"] += 1
            continue
        source = fit_dir / str(fit_file)
        if not source.is_file():
            logger.warning("Legacy activity %s: source file %s is missing, skipped",
                           entry.get("name") or fit_file, source)
            stats["missing"] += 1
            continue

        try:
            ingestor.ingest_file(source, attributes=_legacy_attributes(entry))
            stats["imported"] += 1
        except AlreadyImported:
            logger.info("Legacy activity %s was already imported", fit_file)
            stats["already"] += 1
        except (FitArchiveError, ValueError, OSError, sqlite3.Error) as e:
            logger.warning("Legacy activity %s could not be imported: %s", fit_file, e)
            stats["failed"] += 1
            continue

        try:
            moved_dir.mkdir(parents=True, exist_ok=True)
            os.replace(source, moved_dir / source.name)
        except OSError as e:
            logger.warning("Could not move %s out of %s: %s", source, fit_dir, e)
            stats["failed"] += 1

    if stats["failed"]:
        logger.warning(
            "Legacy import: %d of %d entries failed; %s is kept and will be retried",
            stats["failed"], len(entries), legacy_path.name,
        )
    else:
        try:
            legacy_path.rename(legacy_path.with_name(legacy_path.name + LEGACY_BACKUP_SUFFIX))
        except OSError as e:
            raise MigrationFailure(f"Cannot retire legacy archive {legacy_path}: {e}") from e
        logger.warning(
            "Legacy import finished: %d imported, %d already present, %d missing",
            stats["imported"], stats["already"], stats["missing"],
        )
    return stats
