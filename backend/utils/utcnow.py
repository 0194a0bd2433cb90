"""UTC and epoch helpers.

``datetime.utcnow()`` is deprecated since Python 3.12.  These wrappers produce
the **naive** UTC datetimes stored in the database, plus the epoch-millisecond
and hour-aligned second values the cost basis engine keys on.
"""

from datetime import datetime, timedelta, timezone

HOUR_SECONDS = 3600
_EPOCH = datetime(1970, 1, 1)
_ONE_MS = timedelta(milliseconds=1)


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_ms() -> int:
    """Current time in unix milliseconds."""
    return datetime_to_epoch_ms(utcnow())


def datetime_to_epoch_ms(dt: datetime | None) -> int | None:
    """Convert a (naive UTC or aware) datetime to unix milliseconds."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return (dt - _EPOCH) // _ONE_MS


def utcfromtimestamp_ms(ms: int) -> datetime:
    """Convert unix milliseconds to a naive UTC datetime."""
    return _EPOCH + timedelta(milliseconds=int(ms))


def hour_floor(block_time: int | float) -> int:
    """Round unix seconds down to the start of the containing hour."""
    return int(block_time // HOUR_SECONDS) * HOUR_SECONDS
