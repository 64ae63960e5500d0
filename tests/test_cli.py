"""Tests for the command line interface."""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from fitarchive.cli import EXIT_MIGRATION_FAILURE, app
from fitarchive.config import load_config
from tests.conftest import activity_bytes

runner = CliRunner()


@pytest.fixture(autouse=True)
def close_archives():
    """Close archives opened by commands instead of waiting for interpreter exit."""
    opened = []
    with patch("atexit.register", side_effect=opened.append):
        yield
    for close in opened:
        close()


@pytest.fixture
def invoke(config):
    """Run a command against the test archive."""
    def _invoke(*args: str):
        return runner.invoke(app, ["--store", str(config.path), *args])
    return _invoke


@pytest.fixture
def two_runs(invoke, write_file):
    first = write_file("morning.fit", activity_bytes("2024-05-01T12:00:00", distance=8000))
    second = write_file("evening.fit", activity_bytes("2024-05-02T12:00:00", distance=12000))
    result = invoke("import", str(first), str(second))
    assert result.exit_code == 0, result.output
    return first, second


class TestImport:

    def test_import_and_list(self, invoke, two_runs):
        result = invoke("list")
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert lines[0].startswith(":1")
        assert "evening.fit" in lines[0]
        assert "12.00 km" in lines[0]
        assert "morning.fit" in lines[1]

    def test_reimport_is_reported_not_failed(self, invoke, two_runs):
        first, _ = two_runs
        result = invoke("import", str(first))
        assert result.exit_code == 0
        assert "1 already imported" in result.output

    def test_bad_file_fails_command_but_imports_rest(self, invoke, write_file):
        bad = write_file("bad.fit", b"garbage")
        good = write_file("good.fit", activity_bytes("2024-05-03T12:00:00"))
        result = invoke("import", str(bad), str(good))
        assert result.exit_code == 1
        assert "1 imported" in result.output
        assert "1 failed" in result.output

    def test_name_option(self, invoke, write_file):
        path = write_file("x.fit", activity_bytes("2024-05-03T12:00:00"))
        invoke("import", "--name", "Race day", str(path))
        assert "Race day" in invoke("list").output

    def test_directory_is_remembered(self, invoke, config, write_file):
        path = write_file("x.fit", activity_bytes("2024-05-03T12:00:00"))
        result = invoke("import", str(path.parent))
        assert result.exit_code == 0
        assert load_config(config.path).import_dir == path.parent.resolve()

        write_file("y.fit", activity_bytes("2024-05-04T12:00:00"))
        result = invoke("import")
        assert result.exit_code == 0
        assert "1 imported, 1 already imported" in result.output

    def test_no_arguments_without_history(self, invoke):
        result = invoke("import")
        assert result.exit_code == 1
        assert "no previous import directory" in result.output


class TestActivityCommands:

    def test_rename(self, invoke, two_runs):
        result = invoke("rename", "Sunrise", ":-1")
        assert result.exit_code == 0
        assert "Sunrise" in invoke("list", ":-1").output

    def test_set(self, invoke, two_runs):
        result = invoke("set", "norecord", "true", ":1")
        assert result.exit_code == 0
        assert "norecord = True" in result.output

    def test_set_unknown_attribute(self, invoke, two_runs):
        result = invoke("set", "colour", "red", ":1")
        assert result.exit_code == 1
        assert "Unknown attribute 'colour'" in result.output

    def test_delete(self, invoke, two_runs):
        result = invoke("delete", ":1")
        assert result.exit_code == 0
        assert "evening.fit" in result.output
        assert len(invoke("list").output.strip().splitlines()) == 1

    def test_delete_several_references(self, invoke, two_runs, write_file):
        third = write_file("noon.fit", activity_bytes("2024-05-03T12:00:00"))
        invoke("import", str(third))

        # Positions are those listed before anything is deleted
        result = invoke("delete", ":1", ":3")
        assert result.exit_code == 0
        remaining = invoke("list").output.strip().splitlines()
        assert len(remaining) == 1
        assert "evening.fit" in remaining[0]

    def test_rename_several_references(self, invoke, two_runs):
        result = invoke("rename", "Commute", ":1", ":2")
        assert result.exit_code == 0
        assert invoke("list").output.count("Commute") == 2

    def test_bad_later_reference_changes_nothing(self, invoke, two_runs):
        result = invoke("set", "note", "hilly", ":1", ":7")
        assert result.exit_code == 1
        assert "note:" not in invoke("summary", ":1").output

    def test_summary_several_references(self, invoke, two_runs):
        result = invoke("summary", ":1", ":-1")
        assert result.exit_code == 0
        assert "name:      evening.fit" in result.output
        assert "name:      morning.fit" in result.output

    def test_out_of_range_reference(self, invoke, two_runs):
        result = invoke("delete", ":5")
        assert result.exit_code == 1
        assert "out of range" in result.output

    def test_not_found_on_empty_archive(self, invoke):
        result = invoke("delete", ":1")
        assert result.exit_code == 1
        assert "No matching activities" in result.output

    def test_summary(self, invoke, two_runs):
        result = invoke("summary", ":1")
        assert result.exit_code == 0
        assert "name:      evening.fit" in result.output
        assert "records:   longest_distance" in result.output

    def test_records(self, invoke, two_runs):
        result = invoke("records")
        assert result.exit_code == 0
        assert "longest_distance" in result.output
        assert ":1 evening.fit" in result.output


class TestCheck:

    def test_clean(self, invoke, two_runs):
        result = invoke("check")
        assert result.exit_code == 0
        assert "2 checked, 0 problem(s)" in result.output

    def test_files_without_importing(self, invoke, write_file):
        good = write_file("good.fit", activity_bytes("2024-05-03T12:00:00"))
        bad = write_file("bad.fit", b"garbage")
        result = invoke("check", str(good), str(bad))
        assert result.exit_code == 1
        assert "2 checked, 1 problem(s)" in result.output
        assert invoke("list").output == ""


class TestSettingsAndReports:

    def test_units(self, invoke, config, two_runs):
        assert invoke("units").output.strip() == "metric"
        result = invoke("units", "statute")
        assert result.exit_code == 0
        assert load_config(config.path).unit_system == "statute"
        assert "mi" in invoke("list").output

    def test_bad_units(self, invoke):
        result = invoke("units", "cubits")
        assert result.exit_code == 1

    def test_htmldir(self, invoke, config, tmp_path):
        result = invoke("htmldir", str(tmp_path / "site"))
        assert result.exit_code == 0
        assert load_config(config.path).html_dir == (tmp_path / "site").resolve()

    def test_daily(self, invoke, two_runs):
        result = invoke("daily", "2024-05-02")
        assert result.exit_code == 0
        assert "evening.fit" in result.output
        assert "morning.fit" not in result.output

    def test_weekly(self, invoke, two_runs):
        result = invoke("weekly", "2024-05-01")
        assert result.exit_code == 0
        assert "total: 2 activities, 20.00 km" in result.output

    def test_bad_date(self, invoke):
        result = invoke("monthly", "May 2024")
        assert result.exit_code == 1
        assert "YYYY-MM-DD" in result.output


class TestMigrationFailure:

    def test_no_command_runs(self, invoke, config, write_file):
        (config.path / "archive.yml").write_text("- fit_file: [unclosed\n", encoding="utf-8")
        path = write_file("x.fit", activity_bytes("2024-05-03T12:00:00"))

        result = invoke("import", str(path))
        assert result.exit_code == EXIT_MIGRATION_FAILURE
        assert "legacy archive" in result.output
        assert (config.path / "fitarchive-errors.log").exists()

        (config.path / "archive.yml").unlink()
        assert invoke("list").output == ""
