from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from outreach.core.errors import (
    OUTREACH_001_INVALID_PREFERENCES,
    OUTREACH_002_UNKNOWN_TIMEZONE,
    SchedulerError,
)


DEFAULT_SCHEDULE_DAYS = ("mon", "tue", "wed")
DEFAULT_SCHEDULE_TIME = "09:00"
DEFAULT_TIMEZONE = "America/New_York"

# Python weekday numbering: Monday == 0.
WEEKDAY_TOKENS: dict[str, int] = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def _invalid(detail: str) -> SchedulerError:
    return SchedulerError(OUTREACH_001_INVALID_PREFERENCES, detail)


def parse_schedule_days(raw: Any) -> frozenset[int]:
    if raw is None:
        raw = DEFAULT_SCHEDULE_DAYS
    if isinstance(raw, str):
        raw = [p for p in raw.split(",") if p.strip()]
    if not isinstance(raw, (list, tuple, set, frozenset)):
        raise _invalid(f"schedule_days must be a list, got {type(raw).__name__}")
    days: set[int] = set()
    for token in raw:
        key = str(token).strip().lower()
        if key not in WEEKDAY_TOKENS:
            raise _invalid(f"unknown weekday {token!r}")
        days.add(WEEKDAY_TOKENS[key])
    return frozenset(days)


def parse_schedule_time(raw: Any) -> time:
    if isinstance(raw, time):
        return raw.replace(second=0, microsecond=0, tzinfo=None)
    text = str(raw if raw is not None else DEFAULT_SCHEDULE_TIME).strip()
    m = _TIME_RE.match(text)
    if not m:
        raise _invalid(f"schedule_time must be HH:MM, got {text!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise _invalid(f"schedule_time out of range: {text!r}")
    return time(hour, minute)


def load_zone(name: str) -> ZoneInfo:
    key = (name or "").strip()
    if not key:
        raise SchedulerError(OUTREACH_002_UNKNOWN_TIMEZONE, "empty timezone")
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulerError(OUTREACH_002_UNKNOWN_TIMEZONE, key) from e


def _parse_instant(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        try:
            dt = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise _invalid(f"invalid instant {raw!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class SchedulePreferences:
    """Read-only view of a user's outreach schedule."""

    user_id: int
    enabled: bool = True
    schedule_days: frozenset[int] = frozenset(WEEKDAY_TOKENS[d] for d in DEFAULT_SCHEDULE_DAYS)
    schedule_time: time = time(9, 0)
    timezone: str = DEFAULT_TIMEZONE
    vacation_mode: bool = False
    vacation_start: datetime | None = None
    vacation_end: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, user_id: int, data: Mapping[str, Any]) -> "SchedulePreferences":
        enabled = bool(data.get("enabled", True))
        days = parse_schedule_days(data.get("schedule_days"))
        if enabled and not days:
            raise _invalid("schedule_days must not be empty when enabled")
        tz_name = str(data.get("timezone") or DEFAULT_TIMEZONE).strip()
        load_zone(tz_name)
        extra = data.get("extra")
        return cls(
            user_id=int(user_id),
            enabled=enabled,
            schedule_days=days,
            schedule_time=parse_schedule_time(data.get("schedule_time")),
            timezone=tz_name,
            vacation_mode=bool(data.get("vacation_mode", False)),
            vacation_start=_parse_instant(data.get("vacation_start")),
            vacation_end=_parse_instant(data.get("vacation_end")),
            extra=dict(extra) if isinstance(extra, Mapping) else {},
        )

    @property
    def day_names(self) -> list[str]:
        return [WEEKDAY_NAMES[d] for d in sorted(self.schedule_days)]

    @property
    def time_text(self) -> str:
        return self.schedule_time.strftime("%H:%M")

    def on_vacation(self, now: datetime) -> bool:
        if not self.vacation_mode or self.vacation_start is None or self.vacation_end is None:
            return False
        return self.vacation_start <= now <= self.vacation_end

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "enabled": self.enabled,
            "schedule_days": self.day_names,
            "schedule_time": self.time_text,
            "timezone": self.timezone,
            "vacation_mode": self.vacation_mode,
            "vacation_start": self.vacation_start.isoformat() if self.vacation_start else None,
            "vacation_end": self.vacation_end.isoformat() if self.vacation_end else None,
            "extra": dict(self.extra),
        }
