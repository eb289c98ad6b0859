"""Display-day bucketing.

News is grouped under a calendar day in a fixed UTC offset (UTC+9 by default)
independent of the server timezone. All date arithmetic for that bucket lives
here.
"""

from datetime import UTC, date, datetime, timedelta, timezone


def display_timezone(offset_hours: int) -> timezone:
    return timezone(timedelta(hours=offset_hours))


def ensure_aware(moment: datetime) -> datetime:
    """Attach UTC to naive datetimes."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


def display_date(moment: datetime, offset_hours: int) -> date:
    """Return the calendar day of ``moment`` in the display timezone."""
    return ensure_aware(moment).astimezone(display_timezone(offset_hours)).date()


def freshness_window_start(run_start: datetime, hours: int) -> datetime:
    """Oldest publish time an item may have to be ingested by this run."""
    return ensure_aware(run_start) - timedelta(hours=hours)
