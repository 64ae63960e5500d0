"""
Migration tests.

Covers the storage engine conversion (including recovery from interrupted
runs), schema upgrades from every older version, and the import of a
legacy archive.yml. Old stores are built with raw object store writes.
"""

import errno
import logging
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from fitarchive.archive import Archive, open_archive
from fitarchive.errors import MigrationFailure
from fitarchive.ingest import Ingestor, fingerprint
from fitarchive.migrations import (
    SCHEMA_VERSION,
    UPGRADE_STEPS,
    ensure_current_engine,
    import_legacy_archive,
    read_schema_version,
    upgrade_schema,
)
from fitarchive.object_store import (
    ENGINE_JSONDIR,
    ENGINE_SQLITE,
    LEGACY_MARKER,
    detect_engine,
    open_store,
)
from tests.conftest import activity_bytes


def _v1_activity(activity_id: str, timestamp: str, distance: float) -> dict:
    """An activity as version 1 stored it: no note, no norecord."""
    return {
        "id": activity_id,
        "fingerprint": activity_id,
        "name": f"{activity_id}.fit",
        "timestamp": timestamp,
        "type": "running",
        "subtype": "generic",
        "content_path": "",
        "distance": distance,
        "duration": 1800.0,
        "best_times": {},
    }


def _fill_v1(store) -> None:
    """Version 1 data: no meta object, bare fingerprint statuses, no index."""
    with store.transaction():
        store.set("activity:bbb", _v1_activity("bbb", "2020-01-02T10:00:00", 20_000))
        store.set("activity:aaa", _v1_activity("aaa", "2020-01-01T10:00:00", 10_000))
        store.set("fp:aaa", "imported")
        store.set("fp:bbb", "imported")
        store.set("fp:ccc", "deleted")
        store.set("monitoring:2020-01-01", {
            "id": "mmm", "date": "2020-01-01", "content_path": "", "steps": 5000,
        })
        store.set("fp:mmm", "imported")


def _snapshot(store) -> dict:
    return {key: store.get(key) for key in store.keys()}


# -----------------------------------------------------------------------------
# Schema
# -----------------------------------------------------------------------------

class TestSchemaUpgrade:

    @pytest.fixture
    def store(self, tmp_path):
        s = open_store(tmp_path / "database", ENGINE_SQLITE)
        yield s
        s.close()

    def test_fresh_store_is_initialized_at_current_version(self, store):
        assert read_schema_version(store) is None
        assert upgrade_schema(store) == 0
        assert read_schema_version(store) == SCHEMA_VERSION

    def test_data_without_meta_is_version_1(self, store):
        _fill_v1(store)
        assert read_schema_version(store) == 1

    def test_v1_to_current(self, store):
        _fill_v1(store)
        assert upgrade_schema(store) == SCHEMA_VERSION - 1
        assert read_schema_version(store) == SCHEMA_VERSION

        activity = store.get("activity:aaa")
        assert activity["note"] == ""
        assert activity["norecord"] is False

        assert store.get("fp:aaa")["status"] == "imported"
        assert store.get("fp:aaa")["kind"] == "activity"
        assert store.get("fp:ccc")["status"] == "deleted"
        assert store.get("fp:mmm")["kind"] == "monitoring"

        assert store.get("activity_index") == ["aaa", "bbb"]
        records = store.get("records")
        assert [(r["metric"], r["activity_id"]) for r in records] == [
            ("longest_distance", "bbb"), ("longest_duration", "aaa"),
        ]

    def test_second_run_is_a_no_op(self, store):
        _fill_v1(store)
        upgrade_schema(store)
        once = _snapshot(store)
        assert upgrade_schema(store) == 0
        assert _snapshot(store) == once

    def test_newer_version_is_left_alone(self, store):
        store.set("meta", {"schema_version": SCHEMA_VERSION + 5})
        store.set("activity:x", {"weird": True})
        before = _snapshot(store)
        assert upgrade_schema(store) == 0
        assert _snapshot(store) == before

    def test_failed_step_stops_at_last_good_version(self, store):
        _fill_v1(store)

        def broken(s):
            s.set("activity:aaa", {"half": "written"})
            raise KeyError("timestamp")

        with patch.dict(UPGRADE_STEPS, {2: broken}):
            with pytest.raises(MigrationFailure, match="version 2 to 3"):
                upgrade_schema(store)

        # Step 1 committed, the broken step left nothing behind
        assert read_schema_version(store) == 2
        assert store.get("activity:aaa")["note"] == ""

        # A later run resumes from version 2
        assert upgrade_schema(store) == SCHEMA_VERSION - 2
        assert read_schema_version(store) == SCHEMA_VERSION

    def test_missing_step_is_a_failure(self, store):
        store.set("meta", {"schema_version": 0})
        with pytest.raises(MigrationFailure, match="No upgrade path"):
            upgrade_schema(store)


# -----------------------------------------------------------------------------
# Storage engine
# -----------------------------------------------------------------------------

class TestEngineMigration:

    @pytest.fixture
    def database_dir(self, tmp_path) -> Path:
        legacy = open_store(tmp_path / "database", ENGINE_JSONDIR)
        _fill_v1(legacy)
        legacy.close()
        return tmp_path / "database"

    def test_legacy_store_is_converted(self, database_dir):
        expected = _snapshot(open_store(database_dir, ENGINE_JSONDIR))

        assert ensure_current_engine(database_dir)
        assert detect_engine(database_dir) == ENGINE_SQLITE
        with open_store(database_dir, ENGINE_SQLITE) as store:
            assert _snapshot(store) == expected

        old = database_dir.with_name("database-old")
        assert (old / LEGACY_MARKER).is_dir()
        assert not database_dir.with_name("database-new").exists()

    def test_current_engine_is_a_no_op(self, tmp_path):
        open_store(tmp_path / "database", ENGINE_SQLITE).close()
        assert not ensure_current_engine(tmp_path / "database")
        assert not ensure_current_engine(tmp_path / "nothing-yet")

    def test_second_run_is_a_no_op(self, database_dir):
        ensure_current_engine(database_dir)
        assert not ensure_current_engine(database_dir)

    def test_interrupted_copy_is_redone(self, database_dir):
        """Crash during the copy: a partial database-new exists."""
        partial = open_store(database_dir.with_name("database-new"), ENGINE_SQLITE)
        partial.set("activity:aaa", {"partial": True})
        partial.close()

        assert ensure_current_engine(database_dir)
        with open_store(database_dir, ENGINE_SQLITE) as store:
            assert store.get("activity:aaa")["timestamp"] == "2020-01-01T10:00:00"
            assert store.get("fp:ccc") == "deleted"

    def test_interrupted_after_copy_before_swap(self, database_dir):
        """Crash after a complete copy, before any rename."""
        legacy = open_store(database_dir, ENGINE_JSONDIR)
        legacy.copy(database_dir.with_name("database-new"), ENGINE_SQLITE)
        expected = _snapshot(legacy)
        legacy.close()

        assert ensure_current_engine(database_dir)
        with open_store(database_dir, ENGINE_SQLITE) as store:
            assert _snapshot(store) == expected

    def test_interrupted_between_renames(self, database_dir):
        """Crash after the legacy store was renamed away."""
        legacy = open_store(database_dir, ENGINE_JSONDIR)
        legacy.copy(database_dir.with_name("database-new"), ENGINE_SQLITE)
        expected = _snapshot(legacy)
        legacy.close()
        database_dir.rename(database_dir.with_name("database-old"))

        assert ensure_current_engine(database_dir)
        assert detect_engine(database_dir) == ENGINE_SQLITE
        with open_store(database_dir, ENGINE_SQLITE) as store:
            assert _snapshot(store) == expected

    def test_failed_verification_leaves_legacy_store_intact(self, database_dir):
        expected = _snapshot(open_store(database_dir, ENGINE_JSONDIR))
        with patch("fitarchive.migrations._verify_store",
                   side_effect=MigrationFailure("copy holds 0 objects")):
            with pytest.raises(MigrationFailure):
                ensure_current_engine(database_dir)

        assert detect_engine(database_dir) == ENGINE_JSONDIR
        assert _snapshot(open_store(database_dir, ENGINE_JSONDIR)) == expected
        assert not database_dir.with_name("database-old").exists()

    def test_earlier_retired_store_is_not_overwritten(self, database_dir):
        retired = database_dir.with_name("database-old")
        retired.mkdir()
        (retired / "keep-me").write_text("x")

        ensure_current_engine(database_dir)
        assert (retired / "keep-me").exists()
        assert (database_dir.with_name("database-old2") / LEGACY_MARKER).is_dir()

    def test_full_open_of_legacy_archive(self, config, mock_decoder):
        """Engine conversion and schema upgrade both run on open."""
        legacy = open_store(config.database_dir, ENGINE_JSONDIR)
        _fill_v1(legacy)
        legacy.close()

        with open_archive(config, decoder=mock_decoder) as archive:
            assert [a.id for a in archive.newest_first()] == ["bbb", "aaa"]
            assert archive.records.get("running", "longest_distance").activity_id == "bbb"
            assert archive.fingerprint_status("ccc")["status"] == "deleted"
            assert archive.monitoring("2020-01-01").steps == 5000
        assert detect_engine(config.database_dir) == ENGINE_SQLITE


# -----------------------------------------------------------------------------
# Legacy archive
# -----------------------------------------------------------------------------

def _write_legacy(config, entries: list[dict], files: dict[str, bytes]) -> None:
    fit_dir = config.fit_dir
    fit_dir.mkdir(parents=True, exist_ok=True)
    for name, data in files.items():
        (fit_dir / name).write_bytes(data)
    (config.path / "archive.yml").write_text(yaml.safe_dump(entries), encoding="utf-8")


LEGACY_ENTRIES = [
    {
        "fit_file": "second.fit",
        "name": "Hill repeats",
        "sport": "running",
        "sub_sport": "track",
        "norecord": True,
        "timestamp": "2020-01-02T09:00:00",
    },
    {
        "fit_file": "first.fit",
        "name": "New year ride",
        "sport": "cycling",
        "sub_sport": "road",
        "norecord": False,
        "timestamp": "2020-01-01T09:00:00",
    },
]

LEGACY_FILES = {
    "first.fit": activity_bytes("2020-01-01T09:00:00", sport="generic", distance=30_000),
    "second.fit": activity_bytes("2020-01-02T09:00:00", distance=8_000),
}


class TestLegacyImport:

    def test_imports_both_activities(self, config, mock_decoder):
        _write_legacy(config, LEGACY_ENTRIES, LEGACY_FILES)

        with open_archive(config, decoder=mock_decoder) as archive:
            assert len(archive) == 2
            newest, oldest = archive.newest_first()
            assert (oldest.name, oldest.type, oldest.subtype) == ("New year ride", "cycling", "road")
            assert (newest.name, newest.type, newest.norecord) == ("Hill repeats", "running", True)
            # norecord copied before records were computed
            assert archive.records.get("running", "longest_distance") is None
            assert archive.records.get("cycling", "longest_distance").activity_id == oldest.id

        for name in LEGACY_FILES:
            assert not (config.path / "fit" / name).exists()
            assert (config.path / "old_fit_dir" / name).exists()
        assert not (config.path / "archive.yml").exists()
        assert (config.path / "archive.yml.bak").exists()

    def test_processed_in_timestamp_order(self, config, mock_decoder):
        _write_legacy(config, LEGACY_ENTRIES, LEGACY_FILES)
        open_archive(config, decoder=mock_decoder).close()
        assert mock_decoder.calls == ["first.fit", "second.fit"]

    def test_yaml_timestamps_are_sorted_too(self, config, mock_decoder):
        entries = [dict(e) for e in LEGACY_ENTRIES]
        text = yaml.safe_dump(entries).replace(
            "'2020-01-02T09:00:00'", "2020-01-02 09:00:00"
        ).replace("'2020-01-01T09:00:00'", "2020-01-01 09:00:00")
        _write_legacy(config, entries, LEGACY_FILES)
        (config.path / "archive.yml").write_text(text, encoding="utf-8")

        open_archive(config, decoder=mock_decoder).close()
        assert mock_decoder.calls == ["first.fit", "second.fit"]

    def test_missing_files_are_skipped_with_warning(self, config, mock_decoder, caplog):
        _write_legacy(config, LEGACY_ENTRIES, {})

        with caplog.at_level(logging.WARNING, logger="fitarchive"):
            with open_archive(config, decoder=mock_decoder) as archive:
                assert len(archive) == 0

        missing = [r for r in caplog.records if "is missing" in r.getMessage()]
        assert len(missing) == 2
        assert mock_decoder.calls == []

    def test_restart_after_commit_before_move(self, config, mock_decoder):
        """A crash after an activity committed but before its file moved."""
        _write_legacy(config, LEGACY_ENTRIES, LEGACY_FILES)
        (config.path / "archive.yml").rename(config.path / "hold.yml")
        with open_archive(config, decoder=mock_decoder) as archive:
            Ingestor(archive).ingest_file(config.path / "fit" / "first.fit")
        (config.path / "hold.yml").rename(config.path / "archive.yml")

        with open_archive(config, decoder=mock_decoder) as archive:
            assert len(archive) == 2
            assert archive.get(fingerprint(LEGACY_FILES["first.fit"])) is not None
        assert (config.path / "old_fit_dir" / "first.fit").exists()
        assert (config.path / "archive.yml.bak").exists()

    def test_failed_entry_is_reported_and_retried(self, config, mock_decoder, caplog):
        files = dict(LEGACY_FILES)
        files["second.fit"] = b"truncated \x00"
        _write_legacy(config, LEGACY_ENTRIES, files)

        with caplog.at_level(logging.WARNING, logger="fitarchive"):
            with open_archive(config, decoder=mock_decoder) as archive:
                stats_len = len(archive)
        assert stats_len == 1
        assert any("could not be imported" in r.getMessage() for r in caplog.records)
        # Kept for the next start, the good file is out of the way
        assert (config.path / "archive.yml").exists()
        assert (config.path / "fit" / "second.fit").exists()
        assert (config.path / "old_fit_dir" / "first.fit").exists()

        (config.path / "fit" / "second.fit").write_bytes(LEGACY_FILES["second.fit"])
        with open_archive(config, decoder=mock_decoder) as archive:
            assert len(archive) == 2
        assert (config.path / "archive.yml.bak").exists()

    def test_io_error_on_one_entry_does_not_stop_the_rest(self, config, mock_decoder, caplog):
        _write_legacy(config, LEGACY_ENTRIES, LEGACY_FILES)
        original = Archive._write_content
        calls = []

        def disk_full_once(self, fp, data):
            calls.append(fp)
            if len(calls) == 1:
                raise OSError(errno.ENOSPC, "No space left on device")
            return original(self, fp, data)

        with caplog.at_level(logging.WARNING, logger="fitarchive"):
            with patch.object(Archive, "_write_content", disk_full_once):
                with open_archive(config, decoder=mock_decoder) as archive:
                    assert len(archive) == 1
                    assert archive.get(fingerprint(LEGACY_FILES["second.fit"])) is not None

        assert any("first.fit could not be imported" in r.getMessage() for r in caplog.records)
        assert (config.path / "archive.yml").exists()
        assert (config.path / "fit" / "first.fit").exists()
        assert (config.path / "old_fit_dir" / "second.fit").exists()

        with open_archive(config, decoder=mock_decoder) as archive:
            assert len(archive) == 2
        assert (config.path / "archive.yml.bak").exists()

    def test_unretirable_legacy_file_is_a_migration_failure(self, config, mock_decoder):
        _write_legacy(config, LEGACY_ENTRIES, LEGACY_FILES)
        original = Path.rename

        def refuse_legacy(self, target):
            if self.name == "archive.yml":
                raise PermissionError(errno.EACCES, "Permission denied")
            return original(self, target)

        with patch.object(Path, "rename", refuse_legacy):
            with pytest.raises(MigrationFailure, match="archive.yml"):
                open_archive(config, decoder=mock_decoder)

    def test_stats(self, archive):
        _write_legacy(archive.config, LEGACY_ENTRIES[:1] + [
            {"fit_file": "gone.fit", "timestamp": "2019-12-31T09:00:00"},
        ], {"second.fit": LEGACY_FILES["second.fit"]})
        stats = import_legacy_archive(archive)
        assert stats == {"imported": 1, "already": 0, "missing": 1, "failed": 0}

    def test_no_legacy_file(self, archive):
        assert import_legacy_archive(archive) == {}

    def test_malformed_legacy_file_is_a_migration_failure(self, config, mock_decoder):
        (config.path / "archive.yml").write_text("- fit_file: [unclosed\n", encoding="utf-8")
        with pytest.raises(MigrationFailure):
            open_archive(config, decoder=mock_decoder)

    def test_wrong_shape_is_a_migration_failure(self, config, mock_decoder):
        (config.path / "archive.yml").write_text("fit_file: a.fit\n", encoding="utf-8")
        with pytest.raises(MigrationFailure, match="list"):
            open_archive(config, decoder=mock_decoder)
