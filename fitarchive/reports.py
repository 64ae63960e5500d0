"""
Report data for days, weeks and months.

These functions only collect and total what a renderer needs; nothing is
formatted as a document here.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING, Optional

from .types import Activity, MonitoringEntry, local_date

if TYPE_CHECKING:
    from .archive import Archive

METRES_PER_MILE = 1609.344


@dataclass
class DayReport:
    day: date
    activities: list[Activity] = field(default_factory=list)
    monitoring: Optional[MonitoringEntry] = None

    @property
    def distance(self) -> float:
        return sum(a.distance for a in self.activities)

    @property
    def duration(self) -> float:
        return sum(a.duration for a in self.activities)

    @property
    def steps(self) -> int:
        return self.monitoring.steps if self.monitoring else 0


@dataclass
class PeriodReport:
    """Consecutive days, first to last inclusive."""
    first: date
    last: date
    days: list[DayReport] = field(default_factory=list)

    @property
    def activities(self) -> list[Activity]:
        return [a for d in self.days for a in d.activities]

    @property
    def distance(self) -> float:
        return sum(d.distance for d in self.days)

    @property
    def duration(self) -> float:
        return sum(d.duration for d in self.days)

    @property
    def steps(self) -> int:
        return sum(d.steps for d in self.days)

    def distance_by_type(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for activity in self.activities:
            totals[activity.type] = totals.get(activity.type, 0.0) + activity.distance
        return totals


def _collect(archive: "Archive", first: date, last: date) -> list[DayReport]:
    days = {}
    current = first
    while current <= last:
        days[current.isoformat()] = DayReport(day=current, monitoring=archive.monitoring(current))
        current += timedelta(days=1)
    for activity in archive.activities():
        report = days.get(local_date(activity.timestamp))
        if report is not None:
            report.activities.append(activity)
    return list(days.values())


def daily_report(archive: "Archive", day: date) -> DayReport:
    """Activities started on day (local time) plus its monitoring data."""
    return _collect(archive, day, day)[0]


def week_bounds(day: date, week_start_day: int = 1) -> tuple[date, date]:
    """
    First and last day of the week containing day.

    week_start_day: 0 means Sunday, 1 Monday ... 6 Saturday.
    """
    # date.weekday(): Monday is 0, Sunday is 6
    offset = (day.weekday() + 1 - week_start_day) % 7
    first = day - timedelta(days=offset)
    return first, first + timedelta(days=6)


def weekly_report(archive: "Archive", day: date, week_start_day: int = 1) -> PeriodReport:
    first, last = week_bounds(day, week_start_day)
    return PeriodReport(first=first, last=last, days=_collect(archive, first, last))


def monthly_report(archive: "Archive", day: date) -> PeriodReport:
    first = day.replace(day=1)
    last = day.replace(day=calendar.monthrange(day.year, day.month)[1])
    return PeriodReport(first=first, last=last, days=_collect(archive, first, last))


def format_distance(metres: float, unit_system: str = "metric") -> str:
    if unit_system == "statute":
        return f"{metres / METRES_PER_MILE:.2f} mi"
    return f"{metres / 1000:.2f} km"


def format_duration(seconds: float) -> str:
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
