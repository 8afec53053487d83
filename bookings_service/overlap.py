from datetime import datetime


def overlaps(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """
    Return True if the half-open intervals ``[a_start, a_end)`` and
    ``[b_start, b_end)`` intersect.

    Exact boundary touches (one ends where the other starts) are NOT
    overlaps, so back-to-back bookings are allowed. Every interval
    comparison in the service goes through this function.
    """
    return a_start < b_end and b_start < a_end
