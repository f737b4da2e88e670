"""Period-over-period comparison helpers."""

from datetime import datetime, timedelta

DEFAULT_FALLBACK = timedelta(days=30)


def previous_window(
    start: datetime | None,
    end: datetime | None,
    fallback: timedelta = DEFAULT_FALLBACK,
) -> tuple[datetime, datetime]:
    """
    The equal-length window immediately preceding [start, end).

    When the duration cannot be computed (missing end, inverted range) the
    previous window is `fallback` long and ends at start.

    Raises:
        ValueError: If start is missing; there is nothing to anchor on
    """
    if start is None:
        raise ValueError("start is required to compute a previous window")

    duration = None
    if end is not None:
        duration = end - start
    if duration is None or duration < timedelta(0):
        duration = fallback

    return start - duration, start


def percent_change(current: float, previous: float) -> float:
    """
    Relative change from previous to current, in percent.

    Growth from zero is reported as 100 rather than infinity; zero to zero
    is 0.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100
