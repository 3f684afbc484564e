from datetime import datetime


def as_local_naive(value: datetime | None) -> datetime | None:
    """Stored timestamps are naive server-local time, the clock ``datetime.now()`` reads."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)
