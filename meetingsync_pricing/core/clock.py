"""
Time helpers shared by the engine.

All engine comparisons are done on timezone-aware datetimes; naive values
coming from callers are taken to be UTC.
"""

from datetime import date, datetime
from typing import Callable, Union

from dateutil import tz

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(tz.UTC)


def ensure_aware(moment: datetime) -> datetime:
    """Attach UTC to naive datetimes, leave aware ones untouched."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz.UTC)
    return moment


def local_date(moment: Union[date, datetime], zone_name: str) -> date:
    """Calendar date of ``moment`` as seen in the named timezone.

    Plain dates are already calendar dates and are returned as-is.
    """
    if isinstance(moment, datetime):
        return ensure_aware(moment).astimezone(tz.gettz(zone_name)).date()
    return moment
