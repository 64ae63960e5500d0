"""
Data types for the activity archive.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from .errors import UnknownAttribute


# Attributes a user may change on a stored activity
ATTRIBUTES = frozenset({"name", "type", "subtype", "note", "norecord"})

# Record metrics over fixed distances (metres). Smaller times are better.
RECORD_DISTANCES = {
    "fastest_1k": 1000.0,
    "fastest_5k": 5000.0,
    "fastest_10k": 10000.0,
    "fastest_half_marathon": 21097.5,
    "fastest_marathon": 42195.0,
}

# Activity types and subtypes: lowercase words joined by underscores
_TYPE_RE = re.compile(r'^[a-z][a-z0-9_]*$')

MAX_NAME_LENGTH = 256


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All timestamps in the archive are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def format_utc(dt: datetime) -> str:
    """Format a datetime in canonical UTC form. Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as values carrying
    microseconds, 'Z', or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def local_date(utc_iso: str) -> str:
    """Convert a UTC ISO timestamp to a local-timezone date string (YYYY-MM-DD).

    Returns empty string for empty input.
    """
    if not utc_iso:
        return ""
    try:
        dt = parse_utc_timestamp(utc_iso)
        return dt.astimezone().strftime("%Y-%m-%d")
    except (ValueError, OverflowError):
        return utc_iso[:10] if len(utc_iso) >= 10 else utc_iso


def parse_bool(value: str) -> bool:
    """Parse a 'true'/'false' command line value."""
    folded = value.strip().casefold()
    if folded in ("true", "yes", "1"):
        return True
    if folded in ("false", "no", "0"):
        return False
    raise ValueError(f"Value must be 'true' or 'false', got {value!r}")


def coerce_attribute(key: str, value: Any) -> Any:
    """Validate an attribute assignment and return the value to store.

    Raises:
        UnknownAttribute: If key is not a settable attribute
        ValueError: If the value is not acceptable for the key
    """
    if key not in ATTRIBUTES:
        raise UnknownAttribute(key)
    if key == "norecord":
        return value if isinstance(value, bool) else parse_bool(str(value))
    value = str(value)
    if key in ("type", "subtype"):
        if not _TYPE_RE.match(value):
            raise ValueError(
                f"Invalid {key} {value!r} (allowed: lowercase letters, digits, _)"
            )
    elif key == "name":
        if not value.strip() or len(value) > MAX_NAME_LENGTH:
            raise ValueError(f"Name must be 1-{MAX_NAME_LENGTH} characters")
    return value


# ---------------------------------------------------------------------------
# Decoded content (produced by the decoder collaborator)
# ---------------------------------------------------------------------------

@dataclass
class ActivityContent:
    """Summary of a decoded activity file."""
    timestamp: str
    sport: str = "generic"
    sub_sport: str = "generic"
    total_distance: float = 0.0     # metres
    total_timer_time: float = 0.0   # seconds
    best_times: dict[str, float] = field(default_factory=dict)


@dataclass
class MonitoringContent:
    """Summary of a decoded monitoring (all-day tracking) file."""
    date: str                       # YYYY-MM-DD
    steps: int = 0
    active_calories: int = 0
    resting_heart_rate: Optional[int] = None


@dataclass
class OtherContent:
    """A structurally valid file that is neither activity nor monitoring data."""
    file_type: str


DecodedContent = Union[ActivityContent, MonitoringContent, OtherContent]


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------

@dataclass
class Activity:
    """
    One imported sport session.

    The id is derived from the content fingerprint and never changes.
    `content_path` is relative to the archive directory.
    """
    id: str
    fingerprint: str
    name: str
    timestamp: str
    type: str
    subtype: str
    content_path: str
    source_file: str = ""
    note: str = ""
    norecord: bool = False
    distance: float = 0.0
    duration: float = 0.0
    best_times: dict[str, float] = field(default_factory=dict)
    imported_at: str = ""

    @property
    def sort_key(self) -> tuple[str, str]:
        """Chronological ordering key; id breaks timestamp ties."""
        return (self.timestamp, self.id)

    def metrics(self) -> dict[str, float]:
        """Metric values this activity contributes to personal records."""
        values: dict[str, float] = {}
        if self.distance > 0:
            values["longest_distance"] = self.distance
        if self.duration > 0:
            values["longest_duration"] = self.duration
        for metric, seconds in self.best_times.items():
            if metric in RECORD_DISTANCES and seconds > 0:
                values[metric] = seconds
        return values

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Activity":
        return cls(
            id=data["id"],
            fingerprint=data.get("fingerprint", data["id"]),
            name=data.get("name", ""),
            timestamp=data["timestamp"],
            type=data.get("type", "generic"),
            subtype=data.get("subtype", "generic"),
            content_path=data.get("content_path", ""),
            source_file=data.get("source_file", ""),
            note=data.get("note", ""),
            norecord=bool(data.get("norecord", False)),
            distance=float(data.get("distance", 0.0)),
            duration=float(data.get("duration", 0.0)),
            best_times=dict(data.get("best_times", {})),
            imported_at=data.get("imported_at", ""),
        )

    def __str__(self) -> str:
        return f"{self.name} ({local_date(self.timestamp)}, {self.type})"


@dataclass
class MonitoringEntry:
    """A day of monitoring data. Keyed by date; a newer file replaces it."""
    id: str
    date: str
    content_path: str
    source_file: str = ""
    steps: int = 0
    active_calories: int = 0
    resting_heart_rate: Optional[int] = None
    imported_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MonitoringEntry":
        return cls(
            id=data["id"],
            date=data["date"],
            content_path=data.get("content_path", ""),
            source_file=data.get("source_file", ""),
            steps=int(data.get("steps", 0)),
            active_calories=int(data.get("active_calories", 0)),
            resting_heart_rate=data.get("resting_heart_rate"),
            imported_at=data.get("imported_at", ""),
        )


@dataclass(frozen=True)
class RecordEntry:
    """The current best value of one metric within one activity type."""
    type: str
    metric: str
    value: float
    activity_id: str
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RecordEntry":
        return cls(
            type=data["type"],
            metric=data["metric"],
            value=float(data["value"]),
            activity_id=data["activity_id"],
            timestamp=data["timestamp"],
        )
