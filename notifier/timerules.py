"""
Time rules for daily notification jobs.

Validates and parses wall-clock times of day, derives job identifiers from
recipients, and computes fire instants in the configured timezone. Fire
times follow the local wall clock, so a job set for 08:00 keeps firing at
08:00 local time across DST changes, once per local date even when the
clock repeats or skips that time.
"""

import re
from datetime import date, datetime, timedelta, tzinfo
from datetime import timezone as dt_timezone
from typing import Optional, Union
from urllib.parse import quote, unquote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from notifier.errors import InvalidTime
from notifier.models import TimeOfDay

JOB_ID_PREFIX = "daily-email-"

_TIME_RE = re.compile(r'^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$')


def validate_time(hour, minute) -> bool:
    """Return True iff 0 <= hour <= 23 and 0 <= minute <= 59."""
    for value in (hour, minute):
        if isinstance(value, bool) or not isinstance(value, int):
            return False
    return 0 <= hour <= 23 and 0 <= minute <= 59


def parse_time_of_day(text) -> Optional[TimeOfDay]:
    """
    Parse 'H:MM' or 'HH:MM' into a TimeOfDay.

    Returns None for anything else (including non-string input).
    """
    if not isinstance(text, str):
        return None
    match = _TIME_RE.fullmatch(text)
    if not match:
        return None
    return TimeOfDay(int(match.group(1)), int(match.group(2)))


def format_time_of_day(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def normalize_recipient(recipient: str) -> str:
    """Canonical form of a recipient identifier."""
    return recipient.strip().lower()


def job_id_for(recipient: str) -> str:
    """
    Derive the job id for a recipient.

    The recipient is percent-encoded after normalisation, so the mapping is
    injective and can be reversed with recipient_for_job_id().
    """
    return JOB_ID_PREFIX + quote(normalize_recipient(recipient), safe='')


def recipient_for_job_id(job_id: str) -> str:
    if not job_id.startswith(JOB_ID_PREFIX):
        raise ValueError(f"Not a notification job id: {job_id}")
    return unquote(job_id[len(JOB_ID_PREFIX):])


def is_job_id(value: str) -> bool:
    """Job ids carry the prefix and never contain a raw '@'."""
    return value.startswith(JOB_ID_PREFIX) and '@' not in value


def resolve_timezone(zone: Union[str, tzinfo]) -> tzinfo:
    """Turn an IANA zone name into a tzinfo, raising InvalidTime if unknown."""
    if isinstance(zone, tzinfo):
        return zone
    try:
        return ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise InvalidTime(f"Unknown timezone: {zone!r}") from e


class DailyTrigger(CronTrigger):
    """
    Cron trigger for hour:minute that fires exactly once per local date.

    When the wall-clock time repeats (DST fall-back) only the first
    occurrence fires. When it does not exist (spring-forward gap) the fire
    moves to the first valid instant after the gap on that date.
    """

    __slots__ = 'hour', 'minute'

    def __init__(self, hour: int, minute: int, timezone: tzinfo):
        super().__init__(hour=hour, minute=minute, timezone=timezone)
        self.hour = hour
        self.minute = minute

    def fire_time_on(self, day: date) -> datetime:
        """The single fire instant for a local date."""
        local = datetime(day.year, day.month, day.day, self.hour, self.minute, tzinfo=self.timezone)
        if _round_trip(local) == local.replace(tzinfo=None):
            return local

        # Nonexistent wall time: fold=1 maps it before the gap, fold=0 after
        earliest = local.replace(fold=1).astimezone(dt_timezone.utc)
        latest = local.astimezone(dt_timezone.utc)
        offset_before = earliest.astimezone(self.timezone).utcoffset()
        instant = earliest
        while instant < latest:
            instant += timedelta(minutes=1)
            if instant.astimezone(self.timezone).utcoffset() != offset_before:
                break
        return instant.astimezone(self.timezone)

    def get_next_fire_time(self, previous_fire_time, now):
        if previous_fire_time is not None:
            start = min(now, previous_fire_time + timedelta(microseconds=1))
            day = previous_fire_time.astimezone(self.timezone).date() + timedelta(days=1)
        else:
            start = now
            day = now.astimezone(self.timezone).date()

        day = max(day, start.astimezone(self.timezone).date())
        while True:
            fire = self.fire_time_on(day)
            if fire >= start:
                return fire
            day += timedelta(days=1)

    def __str__(self):
        return f"daily[{format_time_of_day(self.hour, self.minute)}]"

    def __repr__(self):
        return f"<DailyTrigger ({format_time_of_day(self.hour, self.minute)}, timezone='{self.timezone}')>"


def _round_trip(local: datetime) -> datetime:
    """Wall time read back after converting to UTC and back."""
    return local.astimezone(dt_timezone.utc).astimezone(local.tzinfo).replace(tzinfo=None)


def daily_trigger(hour: int, minute: int, zone: Union[str, tzinfo]) -> DailyTrigger:
    """Trigger that fires once a day at hour:minute local time."""
    if not validate_time(hour, minute):
        raise InvalidTime(f"Invalid time of day: {hour}:{minute}")
    return DailyTrigger(hour, minute, resolve_timezone(zone))


def next_fire_time(
    hour: int,
    minute: int,
    zone: Union[str, tzinfo],
    now: Optional[datetime] = None
) -> datetime:
    """
    Next absolute instant at which the wall clock in zone reads hour:minute.

    Args:
        hour: Hour of day (0-23)
        minute: Minute (0-59)
        zone: IANA timezone name or tzinfo
        now: Reference instant (defaults to the current time). Naive values
             are interpreted as local time in zone.

    Returns:
        Timezone-aware datetime strictly after or equal to now
    """
    tz = resolve_timezone(zone)
    trigger = daily_trigger(hour, minute, tz)
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    return trigger.get_next_fire_time(None, now)


class Clock:
    """Source of the current instant; swapped for a fixed clock in tests."""

    def now(self, zone: tzinfo) -> datetime:
        raise NotImplementedError

    def today_in_zone(self, zone: Union[str, tzinfo]) -> date:
        return self.now(resolve_timezone(zone)).date()


class SystemClock(Clock):

    def now(self, zone: tzinfo) -> datetime:
        return datetime.now(zone)
