"""Time helpers shared by the Scrapeboard components."""

from datetime import datetime, timezone
from typing import Callable

# Components take a clock callable so tests can drive time explicitly.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime.

    SQLite hands datetimes back without tzinfo, so naive UTC is used
    everywhere to keep comparisons consistent.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
