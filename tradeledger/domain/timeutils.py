# tradeledger/domain/timeutils.py
"""Timezone helpers (all ledger timestamps are aware UTC)."""

from datetime import date, datetime, time
from typing import Optional, Tuple, Union

import pytz


def to_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive inputs are taken to already be UTC."""
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def get_timezone(name: str):
    """pytz timezone by name (raises pytz.UnknownTimeZoneError)."""
    return pytz.timezone(name)


def range_bounds(
    start: Optional[Union[date, datetime]],
    end: Optional[Union[date, datetime]],
    report_timezone: str = "UTC",
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    UTC bounds for a requested date range.

    Plain dates are whole days in the report timezone: start at 00:00:00,
    end at 23:59:59.999999. Datetimes are used as given (naive = report tz).
    """
    tz = get_timezone(report_timezone)

    def _bound(value, boundary: time) -> Optional[datetime]:
        if value is None:
            return None
        if isinstance(value, datetime):
            local = value if value.tzinfo else tz.localize(value)
        else:
            local = tz.localize(datetime.combine(value, boundary))
        return local.astimezone(pytz.UTC)

    return _bound(start, time.min), _bound(end, time.max)


def end_of_day_utc(day: date) -> datetime:
    return pytz.UTC.localize(datetime.combine(day, time(23, 59, 59)))
