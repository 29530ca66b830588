"""Injectable time source.

Services that care about "now" (the today bypass, default entry timestamps)
take a ``Clock`` so tests can pin the current instant.
"""

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from stockledger.core.config import settings


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    def __init__(self, current: datetime):
        self.current = ensure_utc(current)

    def now(self) -> datetime:
        return self.current

    def advance_to(self, current: datetime) -> None:
        self.current = ensure_utc(current)


system_clock = SystemClock()


def business_zone() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC wall time.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    return ensure_utc(value)


def business_day(value: datetime) -> date:
    return ensure_utc(value).astimezone(business_zone()).date()


def end_of_business_day(day: date) -> datetime:
    local = datetime.combine(day, time(23, 59, 59, 999_999), tzinfo=business_zone())
    return local.astimezone(timezone.utc)


def normalize_cutoff(cutoff: date | datetime) -> datetime:
    """Turn a report cutoff into an inclusive UTC instant.

    A bare date means "as of the close of that day". Naive datetimes are read
    as business-local time.
    """
    if isinstance(cutoff, datetime):
        if cutoff.tzinfo is None:
            return cutoff.replace(tzinfo=business_zone()).astimezone(timezone.utc)
        return cutoff.astimezone(timezone.utc)
    return end_of_business_day(cutoff)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def start_of_business_day(day: date) -> datetime:
    local = datetime.combine(day, time.min, tzinfo=business_zone())
    return local.astimezone(timezone.utc)
