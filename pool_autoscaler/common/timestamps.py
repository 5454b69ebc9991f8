import logging
import time
from datetime import datetime, date, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database tables."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch(value: Any) -> Optional[float]:
    """
    Normalize a stored timestamp to epoch seconds.

    Storage backends hand timestamps back in different shapes: datetime objects
    (naive ones are UTC), ISO 8601 strings, epoch numbers or numeric strings.

    Args:
        value: Timestamp in any supported representation

    Returns:
        float: Epoch seconds, or None if the value is empty or unparseable
    """
    if value is None or value == '':
        return None

    if isinstance(value, bool):
        logging.warning(f"Ignoring boolean timestamp value: {value!r}")
        return None

    if isinstance(value, (int, float)):
        return float(value)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp()

    if isinstance(value, bytes):
        value = value.decode('utf-8')

    if isinstance(value, str):
        text = value.strip()
        try:
            # First try to parse as float timestamp (epoch time)
            return float(text)
        except ValueError:
            pass
        try:
            # fromisoformat() only accepts a trailing 'Z' from Python 3.11
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            return to_epoch(datetime.fromisoformat(text))
        except ValueError:
            logging.warning(f"Invalid timestamp format: {value!r}")
            return None

    logging.warning(f"Unsupported timestamp type {type(value).__name__}: {value!r}")
    return None


def from_epoch(epoch: float) -> datetime:
    """Convert epoch seconds to a naive UTC datetime."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc).replace(tzinfo=None)


def now_epoch() -> float:
    return time.time()


def readable(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
