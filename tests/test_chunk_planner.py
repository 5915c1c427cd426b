"""
Chunk planning: contiguous, non-overlapping, deterministic date ranges.
"""
from datetime import date, timedelta

import pytest

from brandsync.errors import InvalidRange
from brandsync.services.chunk_planner import DateRange, plan_chunks, coalesce_dates


# ── plan_chunks ──────────────────────────────────────────────────


class TestPlanChunks:

    def test_seventy_five_days_make_three_chunks(self):
        start = date(2024, 1, 1)
        end = start + timedelta(days=74)
        chunks = plan_chunks(start, end, chunk_days=30)

        assert chunks == [
            DateRange(date(2024, 1, 1), date(2024, 1, 30)),
            DateRange(date(2024, 1, 31), date(2024, 2, 29)),
            DateRange(date(2024, 3, 1), date(2024, 3, 15)),
        ]
        assert [c.days for c in chunks] == [30, 30, 15]

    def test_union_is_exact_and_contiguous(self):
        start, end = date(2023, 11, 5), date(2024, 2, 17)
        chunks = plan_chunks(start, end, chunk_days=7)

        assert chunks[0].start == start
        assert chunks[-1].end == end
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start == prev.end + timedelta(days=1)
        assert sum(c.days for c in chunks) == (end - start).days + 1
        assert all(c.days <= 7 for c in chunks)

    def test_single_day_range(self):
        day = date(2024, 5, 1)
        assert plan_chunks(day, day, chunk_days=30) == [DateRange(day, day)]

    def test_chunk_larger_than_range(self):
        chunks = plan_chunks(date(2024, 1, 1), date(2024, 1, 10), chunk_days=365)
        assert chunks == [DateRange(date(2024, 1, 1), date(2024, 1, 10))]

    def test_deterministic_for_same_input(self):
        args = (date(2024, 1, 1), date(2024, 6, 30), 30)
        assert plan_chunks(*args) == plan_chunks(*args)

    def test_newest_first_keeps_boundaries(self):
        start, end = date(2024, 1, 1), date(2024, 3, 15)
        oldest_first = plan_chunks(start, end, chunk_days=30)
        newest_first = plan_chunks(start, end, chunk_days=30, newest_first=True)

        assert newest_first == list(reversed(oldest_first))
        assert newest_first[0].end == end

    def test_end_before_start_rejected(self):
        with pytest.raises(InvalidRange):
            plan_chunks(date(2024, 2, 1), date(2024, 1, 1))

    @pytest.mark.parametrize("chunk_days", [0, -5, None])
    def test_non_positive_chunk_size_rejected(self, chunk_days):
        with pytest.raises(InvalidRange):
            plan_chunks(date(2024, 1, 1), date(2024, 1, 31), chunk_days=chunk_days)

    def test_invalid_range_is_a_value_error(self):
        """API layer maps ValueError to 400, so planner errors must be one."""
        with pytest.raises(ValueError):
            plan_chunks(date(2024, 2, 1), date(2024, 1, 1))


# ── coalesce_dates ───────────────────────────────────────────────


class TestCoalesceDates:

    def test_groups_consecutive_days(self):
        days = [date(2024, 1, d) for d in (5, 6, 7, 15)]
        assert coalesce_dates(days) == [
            DateRange(date(2024, 1, 5), date(2024, 1, 7)),
            DateRange(date(2024, 1, 15), date(2024, 1, 15)),
        ]

    def test_unsorted_and_duplicated_input(self):
        days = [date(2024, 1, 3), date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 2)]
        assert coalesce_dates(days) == [DateRange(date(2024, 1, 1), date(2024, 1, 3))]

    def test_run_across_month_boundary(self):
        days = [date(2024, 1, 31), date(2024, 2, 1)]
        assert coalesce_dates(days) == [DateRange(date(2024, 1, 31), date(2024, 2, 1))]

    def test_empty(self):
        assert coalesce_dates([]) == []
