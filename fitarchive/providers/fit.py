"""
FIT file decoder built on fitparse.

Only the summary the archive needs is extracted: session totals and best
efforts for activities, daily totals for monitoring files.
"""

import io
import logging
import struct
from datetime import datetime
from typing import Optional

from ..errors import DecodeError
from ..types import (
    RECORD_DISTANCES,
    ActivityContent,
    DecodedContent,
    MonitoringContent,
    OtherContent,
    format_utc,
)
from .base import get_registry

logger = logging.getLogger(__name__)

MONITORING_FILE_TYPES = frozenset({"monitoring_a", "monitoring_b", "monitoring_daily"})


def best_times_from_stream(points: list[tuple[float, float]]) -> dict[str, float]:
    """
    Fastest time over each record distance.

    Args:
        points: (elapsed seconds, cumulative distance in metres) samples in
            time order

    Returns:
        Dict metric name -> seconds, only for distances the stream covers
    """
    best: dict[str, float] = {}
    if len(points) < 2:
        return best
    for metric, target in RECORD_DISTANCES.items():
        if points[-1][1] - points[0][1] < target:
            continue
        fastest: Optional[float] = None
        start = 0
        for end in range(1, len(points)):
            # Move the window start forward while the window still covers target
            while start + 1 < end and points[end][1] - points[start + 1][1] >= target:
                start += 1
            if points[end][1] - points[start][1] >= target:
                elapsed = points[end][0] - points[start][0]
                if fastest is None or elapsed < fastest:
                    fastest = elapsed
        if fastest is not None:
            best[metric] = round(fastest, 1)
    return best


class FitparseDecoder:
    """Decoder for Garmin FIT files."""

    def __init__(self, check_crc: bool = True):
        import fitparse  # noqa: F401  (fail at construction if missing)
        self.check_crc = check_crc

    def decode(self, data: bytes, name: str = "") -> DecodedContent:
        import fitparse

        label = name or "FIT data"
        try:
            fit = fitparse.FitFile(io.BytesIO(data), check_crc=self.check_crc)
            fit.parse()
            file_type = self._file_type(fit)
            if file_type == "activity":
                return self._activity(fit, label)
            if file_type in MONITORING_FILE_TYPES:
                return self._monitoring(fit, label)
        except fitparse.FitParseError as e:
            raise DecodeError(f"{label}: {e}") from e
        except (struct.error, ValueError, TypeError) as e:
            raise DecodeError(f"{label}: malformed FIT data ({e})") from e
        return OtherContent(file_type=str(file_type))

    @staticmethod
    def _file_type(fit) -> Optional[str]:
        for msg in fit.get_messages("file_id"):
            value = msg.get_value("type")
            if value is not None:
                return value
        return None

    def _activity(self, fit, label: str) -> ActivityContent:
        sessions = list(fit.get_messages("session"))
        if not sessions:
            raise DecodeError(f"{label}: activity file has no session")

        first = sessions[0]
        start = first.get_value("start_time") or first.get_value("timestamp")
        if not isinstance(start, datetime):
            raise DecodeError(f"{label}: session has no start time")

        distance = sum(s.get_value("total_distance") or 0.0 for s in sessions)
        timer_time = sum(s.get_value("total_timer_time") or 0.0 for s in sessions)

        points: list[tuple[float, float]] = []
        for record in fit.get_messages("record"):
            ts = record.get_value("timestamp")
            dist = record.get_value("distance")
            if isinstance(ts, datetime) and dist is not None:
                if points and dist < points[-1][1]:
                    continue  # distance resets are sensor glitches
                points.append(((ts - start).total_seconds(), float(dist)))

        return ActivityContent(
            timestamp=format_utc(start),
            sport=str(first.get_value("sport") or "generic"),
            sub_sport=str(first.get_value("sub_sport") or "generic"),
            total_distance=float(distance),
            total_timer_time=float(timer_time),
            best_times=best_times_from_stream(points),
        )

    def _monitoring(self, fit, label: str) -> MonitoringContent:
        day: Optional[datetime] = None
        for msg in fit.get_messages("monitoring_info"):
            day = msg.get_value("local_timestamp") or msg.get_value("timestamp")
            if isinstance(day, datetime):
                break
        if not isinstance(day, datetime):
            for msg in fit.get_messages("file_id"):
                day = msg.get_value("time_created")
        if not isinstance(day, datetime):
            raise DecodeError(f"{label}: monitoring file has no date")

        # Step counters are cumulative per activity type
        steps_by_type: dict[str, int] = {}
        calories = 0
        resting_hr: Optional[int] = None
        for msg in fit.get_messages("monitoring"):
            steps = msg.get_value("steps")
            if steps is not None:
                kind = str(msg.get_value("activity_type") or "generic")
                steps_by_type[kind] = max(steps_by_type.get(kind, 0), int(steps))
            active = msg.get_value("active_calories")
            if active is not None:
                calories = max(calories, int(active))
        for msg in fit.get_messages("monitoring_hr_data"):
            value = msg.get_value("resting_heart_rate")
            if value:
                resting_hr = int(value)

        return MonitoringContent(
            date=day.strftime("%Y-%m-%d"),
            steps=sum(steps_by_type.values()),
            active_calories=calories,
            resting_heart_rate=resting_hr,
        )


get_registry().register_decoder("fitparse", FitparseDecoder)
