from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from outreach.core.preferences import SchedulePreferences
from outreach.db.models.outreach import OutreachPreferences


class PreferencesRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    @staticmethod
    def _to_prefs(row: OutreachPreferences) -> SchedulePreferences:
        return SchedulePreferences.from_mapping(
            int(row.user_id),
            {
                "enabled": bool(row.enabled),
                "schedule_days": row.schedule_days_json if isinstance(row.schedule_days_json, list) else [],
                "schedule_time": row.schedule_time,
                "timezone": row.timezone,
                "vacation_mode": bool(row.vacation_mode),
                "vacation_start": row.vacation_start,
                "vacation_end": row.vacation_end,
                "extra": row.extra_json if isinstance(row.extra_json, dict) else {},
            },
        )

    def get(self, user_id: int) -> SchedulePreferences | None:
        with self._Session() as s:
            row = s.get(OutreachPreferences, user_id)
            return self._to_prefs(row) if row is not None else None

    def save(self, prefs: SchedulePreferences, *, now: datetime) -> SchedulePreferences:
        with self._Session() as s:
            try:
                row = s.get(OutreachPreferences, prefs.user_id)
                if row is None:
                    row = OutreachPreferences(user_id=prefs.user_id, created_at=now, updated_at=now)
                    s.add(row)
                row.enabled = bool(prefs.enabled)
                row.schedule_days_json = prefs.day_names
                row.schedule_time = prefs.time_text
                row.timezone = prefs.timezone
                row.vacation_mode = bool(prefs.vacation_mode)
                row.vacation_start = prefs.vacation_start
                row.vacation_end = prefs.vacation_end
                row.extra_json = dict(prefs.extra)
                row.updated_at = now
                s.commit()
                return self._to_prefs(row)
            except Exception:
                s.rollback()
                raise

    def list_enabled_user_ids(self) -> list[int]:
        q = (
            select(OutreachPreferences.user_id)
            .where(OutreachPreferences.enabled.is_(True))
            .order_by(OutreachPreferences.user_id.asc())
        )
        with self._Session() as s:
            return [int(uid) for uid in s.execute(q).scalars().all()]

    def changed_since(self, user_id: int, since: datetime) -> bool:
        q = select(OutreachPreferences.updated_at).where(OutreachPreferences.user_id == user_id)
        with self._Session() as s:
            updated_at = s.execute(q).scalar_one_or_none()
        return updated_at is not None and updated_at > since
