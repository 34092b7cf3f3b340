from __future__ import annotations

import datetime as dt
from zoneinfo import ZoneInfo

# All stored datetimes are naive wall-clock times in the service timezone
# (DB columns carry no tz, same as the rest of the backend).


class SystemClock:
    def __init__(self, timezone: str = "Asia/Seoul"):
        self.tz = ZoneInfo(timezone)

    def now(self) -> dt.datetime:
        return dt.datetime.now(self.tz).replace(tzinfo=None, microsecond=0)


def to_local_naive(value: dt.datetime, tz: ZoneInfo) -> dt.datetime:
    """Aware -> converted to tz and stripped; naive -> taken as already local."""
    if value.tzinfo is not None:
        value = value.astimezone(tz).replace(tzinfo=None)
    return value.replace(microsecond=0)
