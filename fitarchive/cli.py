"""
CLI interface for the activity archive.

Usage:
    fitarchive import ~/garmin/Activity/
    fitarchive list
    fitarchive rename :1 "Morning run"
    fitarchive delete :2-3
"""

import os
from datetime import date, timedelta
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .archive import Archive, open_archive
from .config import UNIT_SYSTEMS, get_archive_dir, load_or_create_config
from .errors import DecodeError, FitArchiveError, MigrationFailure, NotFound, log_exception
from .ingest import Ingestor, expand_paths
from .logging_config import configure_quiet_mode, enable_debug_mode
from .references import is_reference
from .reports import format_distance, format_duration
from .types import Activity, ActivityContent, MonitoringContent, coerce_attribute, local_date

# Exit codes
EXIT_FAILURE = 1
EXIT_MIGRATION_FAILURE = 2
EXIT_INTERRUPTED = 130

# Set FITARCHIVE_VERBOSE=1 to enable debug mode via environment
if os.environ.get("FITARCHIVE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"fitarchive {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_store_override: Optional[Path] = None


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="fitarchive",
    help="Archive of sport activities from fitness devices.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "--dbdir", "-s",
        envvar="FITARCHIVE_DIR",
        help="Path to the archive directory (default: ~/.fitarchive/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Archive of sport activities from fitness devices."""


def _get_archive() -> Archive:
    """Open the archive, running migrations first.

    A failed migration stops here with exit code 2; no command runs.
    """
    import atexit

    archive_dir = get_archive_dir(_get_store_override())
    try:
        config = load_or_create_config(archive_dir)
        archive = open_archive(config)
    except MigrationFailure as e:
        log_path = log_exception(e, context="fitarchive migration", archive_dir=archive_dir)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(EXIT_MIGRATION_FAILURE)
    except (FitArchiveError, ValueError, RuntimeError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_FAILURE)
    # Flush and close even when the process is interrupted
    atexit.register(archive.close)
    return archive


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(EXIT_FAILURE)


def _parse_day(value: Optional[str]) -> date:
    """YYYY-MM-DD, defaulting to yesterday."""
    if value is None:
        return date.today() - timedelta(days=1)
    try:
        return date.fromisoformat(value)
    except ValueError:
        _fail(f"Invalid date '{value}' (use YYYY-MM-DD)")


def _format_activity_line(position: int, activity: Activity, unit_system: str) -> str:
    return (
        f":{position:<4} {local_date(activity.timestamp)}  {activity.name:<30}  "
        f"{activity.type:<12} {format_distance(activity.distance, unit_system):>10}  "
        f"{format_duration(activity.duration):>8}"
    )


def _positions(archive: Archive) -> dict[str, int]:
    """Activity id -> current reference number."""
    return {a.id: i for i, a in enumerate(archive.newest_first(), start=1)}


def _find_all(archive: Archive, references: list[str]) -> list[Activity]:
    """
    Resolve every reference before anything changes.

    Positions refer to the archive as listed, so `delete :1 :3` removes the
    first and third activity. Each activity appears once.
    """
    found: dict[str, Activity] = {}
    for reference in references:
        activities = archive.find(reference)
        if not activities:
            raise NotFound(f"No matching activities found for '{reference}'")
        for activity in activities:
            found.setdefault(activity.id, activity)
    return list(found.values())


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

ReferencesArgument = Annotated[
    list[str],
    typer.Argument(
        help="Activity references: :1 newest, :-1 oldest, :2-4 range, :1--1 all"
    )
]


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command("import")
def import_files(
    paths: Annotated[Optional[list[Path]], typer.Argument(
        help="FIT files or directories (default: last imported directory)"
    )] = None,
    force: Annotated[bool, typer.Option(
        "--force", "-f",
        help="Import files even if they have been imported or deleted before",
    )] = False,
    name: Annotated[Optional[str], typer.Option(
        "--name", "-n",
        help="Name for the imported activity",
    )] = None,
):
    """Import activity and monitoring files."""
    archive = _get_archive()
    if not paths:
        if archive.config.import_dir is None:
            _fail("No files given and no previous import directory known")
        paths = [archive.config.import_dir]
    elif len(paths) == 1 and paths[0].is_dir():
        directory = paths[0].expanduser().resolve()
        if directory != archive.config.import_dir:
            archive.change_config(import_dir=directory)

    result = Ingestor(archive).ingest_paths(paths, force=force, name=name)
    for entity in result.imported:
        if isinstance(entity, Activity):
            typer.echo(f"Imported {entity}")
        else:
            typer.echo(f"Imported monitoring data for {entity.date}")
    typer.echo(
        f"{len(result.imported)} imported, {len(result.skipped)} already imported, "
        f"{len(result.failed)} failed"
    )
    if not result.ok:
        raise typer.Exit(EXIT_FAILURE)


@app.command("list")
def list_activities(
    reference: Annotated[Optional[str], typer.Argument(
        help="Activity reference (default: all activities)"
    )] = None,
):
    """List activities, newest first."""
    archive = _get_archive()
    try:
        activities = archive.find(reference) if reference else archive.newest_first()
    except FitArchiveError as e:
        _fail(str(e))
    positions = _positions(archive)
    for activity in activities:
        typer.echo(_format_activity_line(positions[activity.id], activity, archive.config.unit_system))


@app.command()
def delete(references: ReferencesArgument):
    """Delete activities. The files stay known; re-import needs --force."""
    archive = _get_archive()
    try:
        deleted = archive.delete_activities(_find_all(archive, references))
    except FitArchiveError as e:
        _fail(str(e))
    for activity in deleted:
        typer.echo(f"Deleted {activity}")


@app.command()
def rename(
    name: Annotated[str, typer.Argument(help="New activity name")],
    references: ReferencesArgument,
):
    """Rename activities."""
    archive = _get_archive()
    try:
        renamed = archive.update_activities(_find_all(archive, references), {"name": name})
    except (FitArchiveError, ValueError) as e:
        _fail(str(e))
    for activity in renamed:
        typer.echo(f"Renamed {activity.id[:12]} to '{activity.name}'")


@app.command("set")
def set_attribute(
    key: Annotated[str, typer.Argument(help="name, type, subtype, note or norecord")],
    value: Annotated[str, typer.Argument(help="New value (true/false for norecord)")],
    references: ReferencesArgument,
):
    """Set an attribute of activities."""
    archive = _get_archive()
    try:
        value = coerce_attribute(key, value)
        updated = archive.update_activities(_find_all(archive, references), {key: value})
    except (FitArchiveError, ValueError) as e:
        _fail(str(e))
    for activity in updated:
        typer.echo(f"{activity}: {key} = {getattr(activity, key)}")


@app.command()
def records(
    activity_type: Annotated[Optional[str], typer.Argument(
        help="Only show records for this activity type"
    )] = None,
):
    """Show personal records."""
    archive = _get_archive()
    unit_system = archive.config.unit_system
    positions = _positions(archive)
    for entry in archive.records.entries():
        if activity_type and entry.type != activity_type:
            continue
        activity = archive.get(entry.activity_id)
        if entry.metric == "longest_distance":
            value = format_distance(entry.value, unit_system)
        else:
            value = format_duration(entry.value)
        holder = f":{positions[entry.activity_id]} {activity.name}" if activity else entry.activity_id
        typer.echo(
            f"{entry.type:<12} {entry.metric:<22} {value:>10}  "
            f"{local_date(entry.timestamp)}  {holder}"
        )


@app.command()
def summary(references: ReferencesArgument):
    """Show stored attributes and metrics of activities."""
    archive = _get_archive()
    try:
        activities = _find_all(archive, references)
    except FitArchiveError as e:
        _fail(str(e))
    unit_system = archive.config.unit_system
    for activity in activities:
        typer.echo(f"id:        {activity.id}")
        typer.echo(f"name:      {activity.name}")
        typer.echo(f"date:      {local_date(activity.timestamp)} ({activity.timestamp} UTC)")
        typer.echo(f"type:      {activity.type} / {activity.subtype}")
        typer.echo(f"distance:  {format_distance(activity.distance, unit_system)}")
        typer.echo(f"duration:  {format_duration(activity.duration)}")
        for metric, seconds in sorted(activity.best_times.items(), key=lambda kv: kv[1]):
            typer.echo(f"{metric}: {format_duration(seconds)}")
        if activity.note:
            typer.echo(f"note:      {activity.note}")
        if activity.norecord:
            typer.echo("norecord:  true")
        held = archive.records.held_by(activity.id)
        if held:
            typer.echo(f"records:   {', '.join(e.metric for e in held)}")
        typer.echo("")


@app.command()
def check(
    targets: Annotated[Optional[list[str]], typer.Argument(
        help="Activity references or files (default: the whole archive)"
    )] = None,
):
    """Check stored data, activities or files. Nothing is repaired."""
    archive = _get_archive()
    problems: list[str] = []
    checked = 0
    if not targets:
        result = archive.check()
        checked, problems = result.checked, result.problems
    else:
        files = [Path(t) for t in targets if not is_reference(t)]
        for reference in (t for t in targets if is_reference(t)):
            try:
                result = archive.check(archive.find(reference))
            except FitArchiveError as e:
                _fail(str(e))
            checked += result.checked
            problems.extend(result.problems)
        for path in expand_paths(files):
            checked += 1
            try:
                content = archive.decoder.decode(path.read_bytes(), path.name)
            except OSError as e:
                problems.append(f"{path}: {e.strerror}")
            except DecodeError as e:
                problems.append(str(e))
            else:
                if not isinstance(content, (ActivityContent, MonitoringContent)):
                    problems.append(f"{path}: not an activity or monitoring file")

    for problem in problems:
        typer.echo(problem, err=True)
    typer.echo(f"{checked} checked, {len(problems)} problem(s)")
    if problems:
        raise typer.Exit(EXIT_FAILURE)


def _print_day(report, unit_system: str) -> None:
    typer.echo(f"{report.day.isoformat()} ({report.day.strftime('%A')})")
    for activity in report.activities:
        typer.echo(
            f"  {activity.name:<30} {activity.type:<12} "
            f"{format_distance(activity.distance, unit_system):>10} "
            f"{format_duration(activity.duration):>8}"
        )
    if report.monitoring is not None:
        m = report.monitoring
        line = f"  steps {m.steps}, active calories {m.active_calories}"
        if m.resting_heart_rate:
            line += f", resting HR {m.resting_heart_rate}"
        typer.echo(line)


def _print_period(report, unit_system: str) -> None:
    typer.echo(f"{report.first.isoformat()} - {report.last.isoformat()}")
    for day in report.days:
        if day.activities or day.monitoring:
            _print_day(day, unit_system)
    for activity_type, distance in sorted(report.distance_by_type().items()):
        typer.echo(f"total {activity_type}: {format_distance(distance, unit_system)}")
    typer.echo(
        f"total: {len(report.activities)} activities, "
        f"{format_distance(report.distance, unit_system)}, "
        f"{format_duration(report.duration)}, {report.steps} steps"
    )


DayArgument = Annotated[
    Optional[str],
    typer.Argument(help="Date as YYYY-MM-DD (default: yesterday)")
]


@app.command()
def daily(day: DayArgument = None):
    """Show one day."""
    parsed = _parse_day(day)
    archive = _get_archive()
    _print_day(archive.daily_report(parsed), archive.config.unit_system)


@app.command()
def weekly(day: DayArgument = None):
    """Show the week containing a date."""
    parsed = _parse_day(day)
    archive = _get_archive()
    _print_period(archive.weekly_report(parsed), archive.config.unit_system)


@app.command()
def monthly(day: DayArgument = None):
    """Show the month containing a date."""
    parsed = _parse_day(day)
    archive = _get_archive()
    _print_period(archive.monthly_report(parsed), archive.config.unit_system)


@app.command()
def units(
    system: Annotated[Optional[str], typer.Argument(
        help="metric or statute (default: show current)"
    )] = None,
):
    """Show or change the unit system."""
    archive = _get_archive()
    if system is None:
        typer.echo(archive.config.unit_system)
        return
    if system not in UNIT_SYSTEMS:
        _fail(f"Unknown unit system '{system}' (use metric or statute)")
    archive.change_config(unit_system=system)
    typer.echo(f"Unit system set to {system}")


@app.command()
def htmldir(
    directory: Annotated[Optional[Path], typer.Argument(
        help="Output directory for reports (default: show current)"
    )] = None,
):
    """Show or change the report output directory."""
    archive = _get_archive()
    if directory is None:
        typer.echo(str(archive.config.report_dir))
        return
    directory = directory.expanduser().resolve()
    archive.change_config(html_dir=directory)
    typer.echo(f"Reports go to {directory}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        # atexit handlers close the archive on the way out
        raise SystemExit(EXIT_INTERRUPTED)
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="fitarchive CLI", archive_dir=_get_store_override())
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
