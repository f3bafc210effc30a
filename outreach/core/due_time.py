from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from outreach.core.preferences import SchedulePreferences, load_zone


logger = logging.getLogger("outreach.due_time")

# 7 weekdays plus one day of slack for offset changes around "today".
SEARCH_DAYS = 8
FALLBACK_DELAY = timedelta(hours=24)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def next_run_at(preferences: SchedulePreferences, now: datetime) -> datetime:
    """
    Next UTC instant at `schedule_time` local on a scheduled local weekday,
    strictly after `now`.

    Candidates are local calendar dates starting from the local date of
    `now`; each is combined with the schedule time in the user's zone and
    converted with the zone's own offset for that date, so DST shifts
    inside the window are honoured. Raises SchedulerError for an unknown
    timezone.
    """
    now_utc = as_utc(now)
    tz = load_zone(preferences.timezone)
    local_today = now_utc.astimezone(tz).date()

    for days_ahead in range(SEARCH_DAYS):
        candidate = local_today + timedelta(days=days_ahead)
        if candidate.weekday() not in preferences.schedule_days:
            continue
        local_dt = datetime.combine(candidate, preferences.schedule_time, tzinfo=tz)
        run_at = local_dt.astimezone(timezone.utc)
        if run_at > now_utc:
            return run_at

    logger.warning(
        "next_run_fallback user_id=%s days=%s time=%s tz=%s",
        preferences.user_id,
        preferences.day_names,
        preferences.time_text,
        preferences.timezone,
    )
    return now_utc + FALLBACK_DELAY
