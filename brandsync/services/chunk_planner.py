"""
Chunk Planner

Splits a date range into fixed-size, contiguous, non-overlapping sub-ranges.
Boundaries are anchored at the range start so the same input always gives the
same chunks, and therefore the same job keys.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List

from brandsync.errors import InvalidRange


@dataclass(frozen=True)
class DateRange:
    """Inclusive day range"""
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "days": self.days,
        }


def plan_chunks(
    start: date,
    end: date,
    chunk_days: int = 30,
    newest_first: bool = False
) -> List[DateRange]:
    """
    Split [start, end] into chunks of at most chunk_days days.

    Args:
        start: First day (inclusive)
        end: Last day (inclusive)
        chunk_days: Maximum days per chunk
        newest_first: Return the most recent chunk first. Boundaries are unchanged.

    Returns:
        List of DateRange whose union is exactly [start, end]

    Raises:
        InvalidRange: end before start, or chunk_days < 1
    """
    if chunk_days is None or chunk_days < 1:
        raise InvalidRange(f"chunk_days must be >= 1, got {chunk_days}")
    if end < start:
        raise InvalidRange(f"Range end {end} is before start {start}")

    chunks = []
    cursor = start
    while cursor <= end:
        chunk_end = min(cursor + timedelta(days=chunk_days - 1), end)
        chunks.append(DateRange(cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)

    if newest_first:
        chunks.reverse()
    return chunks


def coalesce_dates(dates: Iterable[date]) -> List[DateRange]:
    """Group days into maximal runs of consecutive days, oldest first."""
    runs: List[DateRange] = []
    for day in sorted(set(dates)):
        if runs and runs[-1].end + timedelta(days=1) == day:
            runs[-1] = DateRange(runs[-1].start, day)
        else:
            runs.append(DateRange(day, day))
    return runs
