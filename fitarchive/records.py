"""
Personal records.

The record set holds, per activity type and metric, the best value seen and
the activity that set it. It is derived data: replaying every activity in
chronological order must reproduce it exactly. An improvement has to be
strictly better; on a tie the earlier activity keeps the record.
"""

import logging
from typing import Iterable, Optional

from .types import RECORD_DISTANCES, Activity, RecordEntry

logger = logging.getLogger(__name__)

# Metrics where a larger value wins; all others are times where smaller wins
LARGER_IS_BETTER = frozenset({"longest_distance", "longest_duration"})

METRICS = ("longest_distance", "longest_duration", *RECORD_DISTANCES)


def is_better(metric: str, candidate: float, current: float) -> bool:
    """Strict comparison of two values of the same metric."""
    if metric in LARGER_IS_BETTER:
        return candidate > current
    return candidate < current


class PersonalRecords:
    """Mapping (activity type, metric) -> RecordEntry."""

    def __init__(self, entries: Optional[Iterable[RecordEntry]] = None):
        self._entries: dict[tuple[str, str], RecordEntry] = {}
        for entry in entries or ():
            self._entries[(entry.type, entry.metric)] = entry

    @classmethod
    def from_dict(cls, data: Optional[list[dict]]) -> "PersonalRecords":
        return cls(RecordEntry.from_dict(d) for d in (data or []))

    def to_dict(self) -> list[dict]:
        return [entry.to_dict() for entry in self.entries()]

    def __eq__(self, other) -> bool:
        if not isinstance(other, PersonalRecords):
            return NotImplemented
        return self._entries == other._entries

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, activity_type: str, metric: str) -> Optional[RecordEntry]:
        return self._entries.get((activity_type, metric))

    def entries(self) -> list[RecordEntry]:
        """All records ordered by type, then metric in METRICS order."""
        order = {m: i for i, m in enumerate(METRICS)}
        return sorted(
            self._entries.values(),
            key=lambda e: (e.type, order.get(e.metric, len(order)), e.metric),
        )

    def held_by(self, activity_id: str) -> list[RecordEntry]:
        return [e for e in self.entries() if e.activity_id == activity_id]

    def holds_record(self, activity_id: str) -> bool:
        return any(e.activity_id == activity_id for e in self._entries.values())

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def _offer(self, activity: Activity) -> bool:
        """Apply one activity's metrics. Returns True if any record changed."""
        changed = False
        for metric, value in activity.metrics().items():
            key = (activity.type, metric)
            current = self._entries.get(key)
            if current is not None:
                if is_better(metric, current.value, value):
                    continue
                if current.value == value and (current.timestamp, current.activity_id) <= activity.sort_key:
                    # Tie: the earlier activity keeps the record
                    continue
            self._entries[key] = RecordEntry(
                type=activity.type,
                metric=metric,
                value=value,
                activity_id=activity.id,
                timestamp=activity.timestamp,
            )
            changed = True
        return changed

    def recompute(self, activities: Iterable[Activity]) -> None:
        """Rebuild the whole record set by chronological replay."""
        self._entries.clear()
        for activity in sorted(activities, key=lambda a: a.sort_key):
            if not activity.norecord:
                self._offer(activity)
        logger.debug("Personal records recomputed: %d entries", len(self._entries))

    def update_on_insert(self, activity: Activity) -> bool:
        """
        Account for a newly added activity.

        Equivalent to a full recompute: a record is taken over by a strictly
        better value, or by an equal value from an earlier activity.
        """
        if activity.norecord:
            return False
        changed = self._offer(activity)
        if changed:
            logger.info("New personal record(s) set by %s", activity.name)
        return changed

    def update_on_delete(self, activity: Activity, remaining: Iterable[Activity]) -> bool:
        """
        Account for a removed activity.

        If it held no record nothing changes. Otherwise the successor for
        the lost record is only known from history, so the set is rebuilt
        from the remaining activities.
        """
        if not self.holds_record(activity.id):
            return False
        self.recompute(remaining)
        return True
