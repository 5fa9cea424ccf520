"""
Civil-time conversion for human-facing bucketing.

Events are stored in UTC. Every hourly, daily, monthly and weekday bucket
is keyed by the calendar fields of the instant converted into the site's
civil zone, so daylight-saving transitions land in the right hour.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

CIVIL_TIMEZONE = "America/Chicago"

# Sunday-first, matching the dashboard's charts
WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


@dataclass(frozen=True)
class CivilTime:
    """Calendar fields of an instant in the civil zone.

    weekday: 0 = Sunday ... 6 = Saturday
    """
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int
    weekday: int

    @property
    def date(self) -> date:
        return date(self.year, self.month, self.day)

    @property
    def month_key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def day_key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"

    @property
    def weekday_name(self) -> str:
        return WEEKDAY_NAMES[self.weekday]


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_local_civil_time(instant: datetime, tz_name: str = CIVIL_TIMEZONE) -> CivilTime:
    """Convert a stored instant to civil-zone calendar fields.

    Naive datetimes are treated as UTC (the storage zone).
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    local = instant.astimezone(_zone(tz_name))
    return CivilTime(
        year=local.year,
        month=local.month,
        day=local.day,
        hour=local.hour,
        minute=local.minute,
        second=local.second,
        weekday=(local.weekday() + 1) % 7,
    )
