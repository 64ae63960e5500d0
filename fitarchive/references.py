"""
Activity references.

A reference addresses stored activities by their position in the archive,
counted newest first. References start with ':' so they can never be
mistaken for file names:

    :1      the newest activity
    :3      the third newest
    :-1     the oldest activity
    :2-4    second to fourth newest (inclusive)
    :1--3   newest to third oldest
    :1--1   every activity

Positions refer to timestamp order, not import order. Out-of-range indices
and ranges whose start lies after their end are errors; nothing is clamped.
"""

import re
from typing import Optional, Sequence, TypeVar

from .errors import InvalidReference

REFERENCE_PREFIX = ":"

# N, -N, A-B, A--B, -A-B, -A--B
_REFERENCE_RE = re.compile(r'^(-?\d+)(?:-(-?\d+))?$')

T = TypeVar("T")


def is_reference(text: str) -> bool:
    """Check if a command line argument is an activity reference."""
    return text.startswith(REFERENCE_PREFIX)


def parse_reference(reference: str) -> tuple[int, Optional[int]]:
    """
    Parse a reference into its start index and optional end index.

    The leading ':' is optional here. Indices are as written: positive
    values count from the newest activity, negative ones from the oldest.

    Raises:
        InvalidReference: On bad syntax or a zero index
    """
    body = reference[1:] if is_reference(reference) else reference
    match = _REFERENCE_RE.match(body)
    if not match:
        raise InvalidReference(body, "invalid activity reference")
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) is not None else None
    if start == 0 or end == 0:
        raise InvalidReference(
            body, "index 0 is not valid (1 is the newest activity, -1 the oldest)"
        )
    return start, end


def _position(index: int, size: int, body: str) -> int:
    """Convert a user index to a 0-based position in newest-first order."""
    position = index - 1 if index > 0 else size + index
    if not 0 <= position < size:
        raise InvalidReference(
            body,
            f"index {index} is out of range (the archive holds {size} "
            f"{'activity' if size == 1 else 'activities'})",
        )
    return position


def resolve(reference: str, newest_first: Sequence[T]) -> list[T]:
    """
    Resolve a reference against activities sorted newest first.

    Returns:
        The designated activities, newest first. Empty if the archive is
        empty (syntax is still validated).

    Raises:
        InvalidReference: On bad syntax or out-of-range indices
    """
    start, end = parse_reference(reference)
    size = len(newest_first)
    if size == 0:
        return []

    body = reference[1:] if is_reference(reference) else reference
    first = _position(start, size, body)
    if end is None:
        return [newest_first[first]]

    last = _position(end, size, body)
    if first > last:
        raise InvalidReference(
            body, "range start must not be older than range end"
        )
    return list(newest_first[first:last + 1])
