"""
Half-open UTC time intervals and the interval-set arithmetic the
availability engine is built on.

Usage:
    from app.scheduling.intervals import TimeInterval, merge_intervals, subtract_intervals

    free = subtract_intervals([work_day], merge_intervals(blocks + bookings))
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List


@dataclass(frozen=True, order=True)
class TimeInterval:
    """[start, end) in UTC. Ordering is by start, then end."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeInterval bounds must be timezone-aware")
        if self.start >= self.end:
            raise ValueError(f"TimeInterval start must be before end ({self.start} >= {self.end})")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    def overlaps(self, other: "TimeInterval") -> bool:
        # Touching intervals ([9:00,9:30) and [9:30,10:00)) do not overlap.
        return self.start < other.end and self.end > other.start

    def contains(self, other: "TimeInterval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def padded(self, before: timedelta, after: timedelta) -> "TimeInterval":
        return TimeInterval(self.start - before, self.end + after)

    def clip(self, window: "TimeInterval") -> "TimeInterval | None":
        start = max(self.start, window.start)
        end = min(self.end, window.end)
        if start >= end:
            return None
        return TimeInterval(start, end)

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def merge_intervals(intervals: Iterable[TimeInterval]) -> List[TimeInterval]:
    """
    Coalesce overlapping or adjacent intervals into maximal disjoint ones.

    Example:
        [9:00,10:00) + [10:00,11:00) + [10:30,12:00)  ->  [9:00,12:00)
    """
    merged: List[TimeInterval] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = TimeInterval(last.start, interval.end)
        else:
            merged.append(interval)
    return merged


def subtract_intervals(
    available: Iterable[TimeInterval],
    removals: Iterable[TimeInterval],
) -> List[TimeInterval]:
    """
    Interval-set difference: what is left of `available` after every
    removal interval is cut out. Both inputs may be unsorted and may
    overlap; they are coalesced first.
    """
    remaining: List[TimeInterval] = []
    cuts = merge_intervals(removals)

    for window in merge_intervals(available):
        cursor = window.start
        for cut in cuts:
            if cut.end <= cursor:
                continue
            if cut.start >= window.end:
                break
            if cut.start > cursor:
                remaining.append(TimeInterval(cursor, cut.start))
            cursor = max(cursor, cut.end)
            if cursor >= window.end:
                break
        if cursor < window.end:
            remaining.append(TimeInterval(cursor, window.end))

    return remaining


def any_overlap(interval: TimeInterval, others: Iterable[TimeInterval]) -> bool:
    return any(interval.overlaps(other) for other in others)
