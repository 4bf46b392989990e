"""
Tests for interval arithmetic.

Run with: pytest tests/test_intervals.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.scheduling.intervals import TimeInterval, any_overlap, merge_intervals, subtract_intervals


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc)


def iv(start: tuple, end: tuple) -> TimeInterval:
    return TimeInterval(at(*start), at(*end))


# ============================================================================
# TIME INTERVAL
# ============================================================================

class TestTimeInterval:
    """Tests for the TimeInterval value type."""

    def test_rejects_naive_bounds(self):
        with pytest.raises(ValueError):
            TimeInterval(datetime(2026, 3, 2, 9), datetime(2026, 3, 2, 10))

    def test_rejects_empty_interval(self):
        with pytest.raises(ValueError):
            TimeInterval(at(9), at(9))

    def test_touching_intervals_do_not_overlap(self):
        """[9:00,9:30) and [9:30,10:00) share only an endpoint."""
        assert not iv((9, 0), (9, 30)).overlaps(iv((9, 30), (10, 0)))

    def test_overlap_is_symmetric(self):
        a, b = iv((9, 0), (10, 0)), iv((9, 45), (11, 0))
        assert a.overlaps(b) and b.overlaps(a)

    def test_contains(self):
        assert iv((8, 0), (18, 0)).contains(iv((9, 0), (9, 30)))
        assert not iv((8, 0), (18, 0)).contains(iv((17, 45), (18, 15)))

    def test_padded_and_clip(self):
        padded = iv((10, 0), (10, 30)).padded(timedelta(minutes=20), timedelta(minutes=35))
        assert padded == iv((9, 40), (11, 5))
        assert padded.clip(iv((10, 0), (12, 0))) == iv((10, 0), (11, 5))
        assert padded.clip(iv((12, 0), (13, 0))) is None

    def test_minutes(self):
        assert iv((9, 0), (10, 15)).minutes == 75


# ============================================================================
# MERGE
# ============================================================================

class TestMergeIntervals:

    def test_merges_overlapping_and_adjacent(self):
        merged = merge_intervals([iv((10, 30), (12, 0)), iv((9, 0), (10, 0)), iv((10, 0), (11, 0))])
        assert merged == [iv((9, 0), (12, 0))]

    def test_keeps_disjoint_sorted(self):
        merged = merge_intervals([iv((13, 0), (14, 0)), iv((9, 0), (10, 0))])
        assert merged == [iv((9, 0), (10, 0)), iv((13, 0), (14, 0))]

    def test_contained_interval_absorbed(self):
        assert merge_intervals([iv((9, 0), (12, 0)), iv((10, 0), (11, 0))]) == [iv((9, 0), (12, 0))]

    def test_empty(self):
        assert merge_intervals([]) == []


# ============================================================================
# SUBTRACT
# ============================================================================

class TestSubtractIntervals:

    def test_cut_in_middle(self):
        """A noon block splits the working day in two."""
        free = subtract_intervals([iv((8, 0), (18, 0))], [iv((12, 0), (13, 0))])
        assert free == [iv((8, 0), (12, 0)), iv((13, 0), (18, 0))]

    def test_cut_covering_start_and_end(self):
        free = subtract_intervals([iv((8, 0), (18, 0))], [iv((7, 0), (9, 0)), iv((17, 0), (19, 0))])
        assert free == [iv((9, 0), (17, 0))]

    def test_overlapping_cuts(self):
        free = subtract_intervals([iv((8, 0), (18, 0))], [iv((10, 0), (11, 0)), iv((10, 30), (12, 0))])
        assert free == [iv((8, 0), (10, 0)), iv((12, 0), (18, 0))]

    def test_cut_everything(self):
        assert subtract_intervals([iv((8, 0), (18, 0))], [iv((6, 0), (20, 0))]) == []

    def test_no_cuts(self):
        assert subtract_intervals([iv((8, 0), (12, 0))], []) == [iv((8, 0), (12, 0))]

    def test_multiple_windows(self):
        free = subtract_intervals(
            [iv((8, 0), (12, 0)), iv((13, 0), (17, 0))],
            [iv((11, 0), (14, 0))],
        )
        assert free == [iv((8, 0), (11, 0)), iv((14, 0), (17, 0))]

    def test_result_never_overlaps_removals(self):
        removals = [iv((9, 15), (9, 45)), iv((11, 0), (12, 30)), iv((16, 50), (17, 10))]
        free = subtract_intervals([iv((8, 0), (18, 0))], removals)
        for window in free:
            assert not any_overlap(window, removals)
