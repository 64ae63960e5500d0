"""
The activity archive.

This is the single owner of stored activities, monitoring days, the
fingerprint index and the personal record set. Every mutation runs inside
one object store transaction, so a crash leaves either the old or the new
state on disk, never a mix.

Object store layout (all values are JSON):

    meta                    {"schema_version": N, "created": "..."}
    activity_index          [activity ids in (timestamp, id) order]
    activity:<id>           Activity
    monitoring:<YYYY-MM-DD> MonitoringEntry
    fp:<fingerprint>        {"status", "kind", "id", "updated_at"}
    records                 [RecordEntry, ...]
"""

import bisect
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from .config import ArchiveConfig, update_config
from .errors import AlreadyImported, DecodeError, NotFound, StorageCorruption
from .object_store import ObjectStore
from .providers.base import Decoder, NullRenderer, Renderer
from .records import PersonalRecords
from .references import resolve
from .types import (
    Activity,
    ActivityContent,
    MonitoringEntry,
    coerce_attribute,
    utc_now,
)

logger = logging.getLogger(__name__)

META_KEY = "meta"
INDEX_KEY = "activity_index"
RECORDS_KEY = "records"
ACTIVITY_PREFIX = "activity:"
MONITORING_PREFIX = "monitoring:"
FINGERPRINT_PREFIX = "fp:"

# Fingerprint index statuses
STATUS_IMPORTED = "imported"
STATUS_DELETED = "deleted"
STATUS_SUPERSEDED = "superseded"

KIND_ACTIVITY = "activity"
KIND_MONITORING = "monitoring"


@dataclass
class CheckResult:
    """Outcome of a structural check. Problems are reported, never repaired."""
    checked: int = 0
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


class Archive:
    """
    Ordered collection of activities and monitoring days.

    Example:
        archive = open_archive(load_or_create_config(path))
        latest = archive.find(":1")
        archive.rename(":1", "Morning run")
        archive.close()
    """

    def __init__(
        self,
        config: ArchiveConfig,
        store: ObjectStore,
        *,
        decoder: Optional[Decoder] = None,
        renderer: Optional[Renderer] = None,
    ) -> None:
        """
        Args:
            config: Archive configuration (not modified during a command)
            store: Open object store at the current schema version
            decoder: File decoder; needed for check()
            renderer: Receives regeneration signals after mutations
        """
        self._config = config
        self._store = store
        self._decoder = decoder
        self._renderer: Renderer = renderer if renderer is not None else NullRenderer()
        self._ops_log_handler = None
        self._activities: dict[str, Activity] = {}
        self._order: list[tuple[str, str]] = []
        self._records = PersonalRecords()
        self._load()

    def _load(self) -> None:
        """(Re)load in-memory state from the store."""
        activities: dict[str, Activity] = {}
        for activity_id in self._store.get(INDEX_KEY, []):
            data = self._store.get(ACTIVITY_PREFIX + activity_id)
            if data is None:
                logger.warning("Activity index lists missing activity %s", activity_id)
                continue
            activities[activity_id] = Activity.from_dict(data)
        self._activities = activities
        self._order = sorted(a.sort_key for a in activities.values())
        self._records = PersonalRecords.from_dict(self._store.get(RECORDS_KEY))

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ArchiveConfig:
        return self._config

    @property
    def store(self) -> ObjectStore:
        return self._store

    @property
    def decoder(self) -> Optional[Decoder]:
        return self._decoder

    @property
    def records(self) -> PersonalRecords:
        return self._records

    def __len__(self) -> int:
        return len(self._activities)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["Archive"]:
        """
        Store transaction that keeps in-memory state consistent.

        If the outermost transaction rolls back, state is reloaded from the
        store so that work committed by nested operations is forgotten too.
        """
        try:
            with self._store.transaction():
                yield self
        except BaseException:
            if not self._store.in_transaction:
                self._load()
            raise

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def activities(self) -> list[Activity]:
        """All activities, oldest first."""
        return [self._activities[activity_id] for _, activity_id in self._order]

    def newest_first(self) -> list[Activity]:
        """All activities, newest first. This is the order references count in."""
        return [self._activities[activity_id] for _, activity_id in reversed(self._order)]

    def get(self, activity_id: str) -> Optional[Activity]:
        return self._activities.get(activity_id)

    def find(self, reference: str) -> list[Activity]:
        """Resolve an activity reference (':1', ':-1', ':2-5', ':1--1')."""
        return resolve(reference, self.newest_first())

    def _find_required(self, reference: str) -> list[Activity]:
        found = self.find(reference)
        if not found:
            raise NotFound(f"No matching activities found for '{reference}'")
        return found

    def fingerprint_status(self, fingerprint: str) -> Optional[dict]:
        """Fingerprint index entry, or None for content never seen."""
        return self._store.get(FINGERPRINT_PREFIX + fingerprint)

    def monitoring(self, day: Union[str, date]) -> Optional[MonitoringEntry]:
        key = day.isoformat() if isinstance(day, date) else day
        data = self._store.get(MONITORING_PREFIX + key)
        return MonitoringEntry.from_dict(data) if data else None

    def monitoring_entries(self) -> list[MonitoringEntry]:
        entries = [
            MonitoringEntry.from_dict(self._store.get(key))
            for key in self._store.keys() if key.startswith(MONITORING_PREFIX)
        ]
        return sorted(entries, key=lambda e: e.date)

    def content_path(self, relative: str) -> Path:
        """Absolute path of a stored source file copy."""
        return self._config.path / relative

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def _write_content(self, fingerprint: str, data: bytes) -> str:
        """Store a copy of the source file, named by fingerprint.

        Written before the transaction that references it; an unreferenced
        copy left by a crash is harmless and overwritten on re-import.
        """
        path = self._config.fit_dir / fingerprint[:2] / f"{fingerprint}.fit"
        relative = path.relative_to(self._config.path)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        return relative.as_posix()

    def _next_duplicate_id(self, fingerprint: str) -> str:
        n = 2
        while f"{fingerprint}-{n}" in self._activities:
            n += 1
        return f"{fingerprint}-{n}"

    def _save_index(self, order: list[tuple[str, str]]) -> None:
        self._store.set(INDEX_KEY, [activity_id for _, activity_id in order])

    def _set_fingerprint(self, fingerprint: str, status: str, kind: str, entity_id: str) -> None:
        self._store.set(FINGERPRINT_PREFIX + fingerprint, {
            "status": status,
            "kind": kind,
            "id": entity_id,
            "updated_at": utc_now(),
        })

    def add(
        self,
        entity: Union[Activity, MonitoringEntry],
        data: bytes,
        *,
        force: bool = False,
    ) -> Union[Activity, MonitoringEntry]:
        """
        Insert a freshly decoded activity or monitoring day.

        The entity, its fingerprint index entry and (for activities) the
        index and record updates are committed together.

        Args:
            entity: Activity or MonitoringEntry; its id is its fingerprint
            data: Raw file bytes, stored as the content copy
            force: Accept content the fingerprint index already knows

        Returns:
            The stored entity (its id may differ under the append policy)

        Raises:
            AlreadyImported: If the fingerprint is known and force is not set
        """
        if isinstance(entity, MonitoringEntry):
            return self._add_monitoring(entity, data, force=force)

        fingerprint = entity.fingerprint
        status = self.fingerprint_status(fingerprint)
        if status is not None and not force:
            raise AlreadyImported(fingerprint, entity.source_file)

        # The index entry points at the newest copy; the original may outlive it
        existing: Optional[Activity] = None
        if status is not None and status.get("status") == STATUS_IMPORTED:
            existing = self._activities.get(status.get("id", ""))
        if existing is None:
            existing = self._activities.get(fingerprint)

        replaced: Optional[Activity] = None
        activity_id = fingerprint
        if existing is not None:
            if self._config.reimport_policy == "append":
                activity_id = self._next_duplicate_id(fingerprint)
            else:
                replaced = existing
                activity_id = existing.id

        activity = replace(
            entity,
            id=activity_id,
            content_path=self._write_content(fingerprint, data),
            imported_at=entity.imported_at or utc_now(),
        )

        activities = dict(self._activities)
        order = list(self._order)
        records = PersonalRecords(self._records.entries())
        if replaced is not None:
            order.remove(replaced.sort_key)
            del activities[replaced.id]
        activities[activity.id] = activity
        bisect.insort(order, activity.sort_key)

        with self.transaction():
            self._store.set(ACTIVITY_PREFIX + activity.id, activity.to_dict())
            self._save_index(order)
            self._set_fingerprint(fingerprint, STATUS_IMPORTED, KIND_ACTIVITY, activity.id)
            if replaced is not None and records.holds_record(replaced.id):
                records.recompute(activities.values())
            else:
                records.update_on_insert(activity)
            self._store.set(RECORDS_KEY, records.to_dict())

        self._activities, self._order, self._records = activities, order, records
        if replaced is not None:
            logger.info("Replaced activity %s (%s)", activity.id, activity.name)
        else:
            logger.info("Added activity %s (%s)", activity.id, activity.name)

        self._renderer.regenerate(activity)
        self._renderer.regenerate_index(self.activities())
        return activity

    def _add_monitoring(self, entry: MonitoringEntry, data: bytes, *, force: bool) -> MonitoringEntry:
        status = self.fingerprint_status(entry.id)
        if status is not None and not force:
            raise AlreadyImported(entry.id, entry.source_file)

        previous = self.monitoring(entry.date)
        stored = replace(
            entry,
            content_path=self._write_content(entry.id, data),
            imported_at=entry.imported_at or utc_now(),
        )
        with self.transaction():
            if previous is not None and previous.id != stored.id:
                self._set_fingerprint(previous.id, STATUS_SUPERSEDED, KIND_MONITORING, previous.id)
            self._store.set(MONITORING_PREFIX + stored.date, stored.to_dict())
            self._set_fingerprint(stored.id, STATUS_IMPORTED, KIND_MONITORING, stored.id)

        if previous is not None and previous.id != stored.id:
            logger.info("Monitoring data for %s replaced by newer file", stored.date)
        else:
            logger.info("Added monitoring data for %s", stored.date)
        return stored

    def delete(self, reference: str) -> list[Activity]:
        """
        Delete the referenced activities.

        Their fingerprints stay known (status 'deleted'), so the same files
        are only imported again with force.

        Raises:
            NotFound: If the reference matches nothing
        """
        return self.delete_activities(self._find_required(reference))

    def delete_activities(self, doomed: list[Activity]) -> list[Activity]:
        activities = dict(self._activities)
        order = list(self._order)
        records = PersonalRecords(self._records.entries())

        with self.transaction():
            for activity in doomed:
                del activities[activity.id]
                order.remove(activity.sort_key)
                self._store.delete(ACTIVITY_PREFIX + activity.id)
                status = self.fingerprint_status(activity.fingerprint)
                if status is not None and status.get("id") == activity.id:
                    self._set_fingerprint(
                        activity.fingerprint, STATUS_DELETED, KIND_ACTIVITY, activity.id
                    )
                records.update_on_delete(activity, activities.values())
            self._save_index(order)
            self._store.set(RECORDS_KEY, records.to_dict())

        self._activities, self._order, self._records = activities, order, records

        for activity in doomed:
            logger.info("Deleted activity %s (%s)", activity.id, activity.name)
            still_referenced = any(
                a.content_path == activity.content_path for a in activities.values()
            )
            if not still_referenced:
                self.content_path(activity.content_path).unlink(missing_ok=True)
            self._renderer.discard(activity)
        self._renderer.regenerate_index(self.activities())
        return doomed

    def rename(self, reference: str, name: str) -> list[Activity]:
        """Give the referenced activities a new display name."""
        return self.set_attribute(reference, "name", name)

    def set_attribute(self, reference: str, key: str, value: Any) -> list[Activity]:
        """
        Change one attribute of the referenced activities.

        Raises:
            UnknownAttribute: If key is not name, type, subtype, note or norecord
            ValueError: If the value is invalid for the key
            NotFound: If the reference matches nothing
        """
        value = coerce_attribute(key, value)
        targets = self._find_required(reference)
        return self.update_activities(targets, {key: value})

    def update_activities(self, targets: list[Activity], changes: dict[str, Any]) -> list[Activity]:
        """Apply validated attribute changes to the given activities."""
        changes = {key: coerce_attribute(key, value) for key, value in changes.items()}
        activities = dict(self._activities)
        updated = [replace(activities[a.id], **changes) for a in targets]
        for activity in updated:
            activities[activity.id] = activity

        records = self._records
        records_affected = bool({"type", "norecord"} & changes.keys())
        if records_affected:
            records = PersonalRecords()
            records.recompute(activities.values())

        with self.transaction():
            for activity in updated:
                self._store.set(ACTIVITY_PREFIX + activity.id, activity.to_dict())
            if records_affected:
                self._store.set(RECORDS_KEY, records.to_dict())

        self._activities, self._records = activities, records
        for activity in updated:
            logger.info("Updated %s of %s: %s", ", ".join(changes), activity.id, changes)
            self._renderer.regenerate(activity)
        if "name" in changes:
            # Activity names appear in the list document
            self._renderer.regenerate_index(self.activities())
        return updated

    def change_config(self, **changes: Any) -> ArchiveConfig:
        """
        Persist configuration changes.

        Unit system and output directory changes invalidate every generated
        document.
        """
        self._config = update_config(self._config, **changes)
        if {"unit_system", "html_dir"} & changes.keys():
            self._renderer.regenerate_all(self.activities())
        return self._config

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def check_activity(self, activity: Activity) -> Optional[str]:
        """Re-decode an activity's stored file. Returns a problem or None."""
        if self._decoder is None:
            raise RuntimeError("No decoder configured")
        path = self.content_path(activity.content_path)
        try:
            content = self._decoder.decode(path.read_bytes(), path.name)
        except OSError as e:
            return f"{activity.id} ({activity.name}): cannot read {path}: {e.strerror}"
        except DecodeError as e:
            return f"{activity.id} ({activity.name}): {e}"
        if not isinstance(content, ActivityContent):
            return f"{activity.id} ({activity.name}): stored file is no longer an activity"
        return None

    def check(self, activities: Optional[list[Activity]] = None) -> CheckResult:
        """
        Verify stored data without repairing anything.

        With no argument this runs the object store's structural check,
        verifies index consistency and re-decodes every activity.
        """
        result = CheckResult()
        full = activities is None
        if full:
            try:
                self._store.check()
            except StorageCorruption as e:
                result.problems.append(str(e))
                result.problems.extend(e.problems)
            activities = self.activities()
            indexed = set(self._store.get(INDEX_KEY, []))
            stored = {
                key[len(ACTIVITY_PREFIX):] for key in self._store.keys()
                if key.startswith(ACTIVITY_PREFIX)
            }
            for missing in sorted(indexed - stored):
                result.problems.append(f"{missing}: listed in index but not stored")
            for orphan in sorted(stored - indexed):
                result.problems.append(f"{orphan}: stored but missing from index")

        for activity in activities:
            result.checked += 1
            if full:
                status = self.fingerprint_status(activity.fingerprint)
                if status is None:
                    result.problems.append(f"{activity.id}: fingerprint not indexed")
            problem = self.check_activity(activity)
            if problem:
                result.problems.append(problem)

        for problem in result.problems:
            logger.warning("Check: %s", problem)
        return result

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    def daily_report(self, day: date):
        from .reports import daily_report
        return daily_report(self, day)

    def weekly_report(self, day: date):
        from .reports import weekly_report
        return weekly_report(self, day, self._config.week_start_day)

    def monthly_report(self, day: date):
        from .reports import monthly_report
        return monthly_report(self, day)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def sync(self) -> None:
        """Flush all committed changes to disk."""
        self._store.sync()

    def close(self) -> None:
        """Flush and close the store. Safe to call more than once."""
        if self._store is not None:
            try:
                self._store.sync()
            finally:
                self._store.close()
                self._store = None
        if self._ops_log_handler is not None:
            logging.getLogger("fitarchive").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def open_archive(
    config: ArchiveConfig,
    *,
    decoder: Optional[Decoder] = None,
    renderer: Optional[Renderer] = None,
    migrate: bool = True,
) -> Archive:
    """
    Open an archive, running every pending migration first.

    Order: storage engine conversion, schema upgrade, then the legacy
    archive import. No command sees the archive before all three are done.

    Raises:
        MigrationFailure: If any migration step fails
    """
    from .logging_config import configure_ops_log
    from .migrations import ensure_current_engine, import_legacy_archive, upgrade_schema
    from .object_store import ENGINE_SQLITE, open_store
    from .providers.base import get_registry

    config.path.mkdir(parents=True, exist_ok=True)
    ops_handler = configure_ops_log(config.path)
    try:
        if decoder is None:
            decoder = get_registry().create_decoder(config.decoder.name, config.decoder.params)

        if migrate:
            ensure_current_engine(config.database_dir)
        store = open_store(config.database_dir, ENGINE_SQLITE)
        try:
            if migrate:
                upgrade_schema(store)
            archive = Archive(config, store, decoder=decoder, renderer=renderer)
        except BaseException:
            store.close()
            raise
    except BaseException:
        logging.getLogger("fitarchive").removeHandler(ops_handler)
        ops_handler.close()
        raise

    archive._ops_log_handler = ops_handler
    if migrate:
        try:
            import_legacy_archive(archive)
        except BaseException:
            archive.close()
            raise
    return archive
