"""Wall-clock helpers. Timestamps are milliseconds since the epoch."""

import time
from datetime import datetime
from typing import Callable

Clock = Callable[[], int]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def now_ms() -> int:
    """Current time in ms since the epoch."""
    return int(time.time() * 1000)


def to_local(timestamp_ms: int) -> datetime:
    """Convert an epoch-ms timestamp to a naive local datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000)


def local_hour(timestamp_ms: int) -> int:
    return to_local(timestamp_ms).hour


def local_day_of_week(timestamp_ms: int) -> int:
    """Day of week with 0=Sunday, 6=Saturday."""
    return (to_local(timestamp_ms).weekday() + 1) % 7


def local_minutes_of_day(timestamp_ms: int) -> int:
    local = to_local(timestamp_ms)
    return local.hour * 60 + local.minute
