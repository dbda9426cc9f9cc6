"""Time interval overlap calculations."""
import math
from datetime import datetime

from matching.models import OverlapResult


def has_overlap(start1: datetime, end1: datetime,
                start2: datetime, end2: datetime) -> bool:
    """
    Check whether two intervals intersect.

    Intervals that only touch (end1 == start2) do not overlap.
    """
    return start1 < end2 and start2 < end1


def compute_overlap(start1: datetime, end1: datetime,
                    start2: datetime, end2: datetime) -> OverlapResult:
    """
    Compute the intersection of two intervals.

    Args:
        start1, end1: First interval
        start2, end2: Second interval

    Returns:
        OverlapResult with the overlap window and its length in whole minutes
    """
    overlap_start = max(start1, start2)
    overlap_end = min(end1, end2)

    if overlap_start >= overlap_end:
        return OverlapResult(overlap=False, start=None, end=None, minutes=0)

    seconds = (overlap_end - overlap_start).total_seconds()
    minutes = int(math.floor(seconds / 60 + 0.5))

    return OverlapResult(
        overlap=True,
        start=overlap_start,
        end=overlap_end,
        minutes=minutes
    )
