from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime.

    All timestamp columns store naive UTC, so comparisons against values read
    back from the database never mix aware and naive datetimes.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
