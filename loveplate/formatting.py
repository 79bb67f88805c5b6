from datetime import datetime, timezone

UNITS = (
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
)


def _as_datetime(value: str | datetime) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def format_date(value: str | datetime) -> str:
    """'October 18, 2026'"""
    d = _as_datetime(value)
    return f"{d.strftime('%B')} {d.day}, {d.year}"


def format_relative_time(value: str | datetime, now: datetime | None = None) -> str:
    """
    Short relative phrase for recent dates, full date after a week.

    >>> format_relative_time("2026-10-18T10:00:00+00:00", now=datetime(2026, 10, 18, 10, 5, tzinfo=timezone.utc))
    '5 minutes ago'
    """
    d = _as_datetime(value)
    now = now or datetime.now(timezone.utc)
    seconds = int((now - d).total_seconds())
    days = seconds // 86400

    if days > 7:
        return format_date(d)
    if days == 1:
        return "yesterday"

    for unit, size in UNITS:
        amount = seconds // size
        if amount > 0:
            return f"{amount} {unit}{'s' if amount != 1 else ''} ago"
    return "Just now"
