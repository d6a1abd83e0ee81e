"""Delivery recurrence: when is the next episode due?

Pure functions only. Everything here takes the reference instant as an argument
so results are deterministic under test.

Day-of-week numbers follow the product's cadence config: 0=Sunday .. 6=Saturday.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from episodes.errors import InvalidRecurrence


MODE_DAILY = "daily"
MODE_WEEKLY = "weekly"
MODE_CUSTOM = "custom"
MODE_WEEKDAYS = "weekdays"

MODES = (MODE_DAILY, MODE_WEEKLY, MODE_CUSTOM, MODE_WEEKDAYS)

WEEKDAY_NUMBERS = frozenset({1, 2, 3, 4, 5})

# today + 7 following days covers every weekday at least once after `after`.
_MAX_SCAN_DAYS = 8


def _load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(str(name or ""))
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidRecurrence(f"unknown timezone {name!r}") from e


@dataclass(frozen=True)
class RecurrenceConfig:
    mode: str
    days_of_week: frozenset[int]
    delivery_hour: int
    timezone: str

    def __post_init__(self):
        if self.mode not in MODES:
            raise InvalidRecurrence(f"unknown mode {self.mode!r}")
        if not (0 <= int(self.delivery_hour) <= 23):
            raise InvalidRecurrence(f"delivery_hour out of range: {self.delivery_hour}")
        bad = [d for d in self.days_of_week if not (0 <= int(d) <= 6)]
        if bad:
            raise InvalidRecurrence(f"days_of_week out of range: {sorted(bad)}")
        if self.mode in (MODE_WEEKLY, MODE_CUSTOM) and not self.days_of_week:
            raise InvalidRecurrence(f"mode={self.mode} requires at least one day")
        _load_zone(self.timezone)

    @property
    def tzinfo(self) -> ZoneInfo:
        return _load_zone(self.timezone)

    def effective_days(self) -> frozenset[int]:
        if self.mode == MODE_WEEKDAYS:
            return WEEKDAY_NUMBERS
        return self.days_of_week

    @classmethod
    def from_json(cls, data: dict[str, Any], *, default_timezone: str = "Europe/London") -> "RecurrenceConfig":
        """Build from the cadence JSON kept on a project.

        Accepts both the stored shape ``{"mode", "days", "deliveryHour"}`` and the
        snake_case names used by this package.
        """

        if not isinstance(data, dict):
            raise InvalidRecurrence("recurrence config must be an object")
        raw_days = data.get("days", data.get("daysOfWeek", data.get("days_of_week", [])))
        if raw_days is None:
            raw_days = []
        if not isinstance(raw_days, (list, tuple, set, frozenset)):
            raise InvalidRecurrence("days must be a list")
        raw_hour = data.get("deliveryHour", data.get("delivery_hour", 9))
        try:
            days = frozenset(int(d) for d in raw_days)
            hour = int(raw_hour)
        except (TypeError, ValueError) as e:
            raise InvalidRecurrence(f"invalid recurrence values: {e}") from e
        return cls(
            mode=str(data.get("mode") or "").strip().lower(),
            days_of_week=days,
            delivery_hour=hour,
            timezone=str(data.get("timezone") or default_timezone),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "days": sorted(self.days_of_week),
            "deliveryHour": int(self.delivery_hour),
            "timezone": self.timezone,
        }


def day_of_week(d: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return (d.weekday() + 1) % 7


def local_to_utc(d: date, hour: int, tz: ZoneInfo) -> datetime:
    """Resolve local wall time ``d hour:00`` in ``tz`` to an aware UTC datetime.

    - ambiguous wall time (clocks go back): first occurrence
    - skipped wall time (clocks go forward): the transition instant, i.e. the
      first valid instant after the requested wall time
    """

    wall = datetime(d.year, d.month, d.day, int(hour), 0)
    first = wall.replace(tzinfo=tz, fold=0)
    second = wall.replace(tzinfo=tz, fold=1)
    first_utc = first.astimezone(timezone.utc)
    second_utc = second.astimezone(timezone.utc)
    if first_utc <= second_utc:
        return first_utc

    # Inside a gap fold=0 applies the pre-transition offset and lands after the
    # transition; fold=1 lands before it. Bisect for the transition second.
    offset_before = first.utcoffset()
    lo = int(second_utc.timestamp())
    hi = int(first_utc.timestamp())
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if datetime.fromtimestamp(mid, tz).utcoffset() == offset_before:
            lo = mid
        else:
            hi = mid
    return datetime.fromtimestamp(hi, timezone.utc)


def next_delivery_instant(config: RecurrenceConfig, after: datetime) -> datetime:
    """Return the first delivery instant (UTC) strictly after ``after``."""

    if after.tzinfo is None or after.utcoffset() is None:
        raise ValueError("after must be timezone-aware")

    tz = config.tzinfo
    local_day = after.astimezone(tz).date()
    hour = int(config.delivery_hour)

    if config.mode == MODE_DAILY:
        candidate = local_to_utc(local_day, hour, tz)
        if candidate > after:
            return candidate
        return local_to_utc(local_day + timedelta(days=1), hour, tz)

    days = config.effective_days()
    for i in range(_MAX_SCAN_DAYS):
        d = local_day + timedelta(days=i)
        if day_of_week(d) not in days:
            continue
        candidate = local_to_utc(d, hour, tz)
        if candidate > after:
            return candidate

    raise InvalidRecurrence(f"no delivery day found within {_MAX_SCAN_DAYS} days for {config!r}")
