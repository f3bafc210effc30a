from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from outreach.db.models.outreach import (
    JOB_DISABLED,
    JOB_FAILED,
    JOB_RUNNING,
    JOB_SCHEDULED,
    JOB_STATUSES,
    OutreachJob,
    OutreachJobLog,
)


@dataclass(frozen=True)
class JobRecord:
    id: int
    user_id: int
    status: str
    next_run_at: datetime
    last_run_at: Optional[datetime]
    last_error: Optional[str]
    retry_count: int
    next_retry_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        def _iso(v: Optional[datetime]) -> Optional[str]:
            return v.isoformat() if v is not None else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "next_run_at": _iso(self.next_run_at),
            "last_run_at": _iso(self.last_run_at),
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "next_retry_at": _iso(self.next_retry_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class JobsRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    @staticmethod
    def _to_record(row: OutreachJob) -> JobRecord:
        return JobRecord(
            id=int(row.id),
            user_id=int(row.user_id),
            status=str(row.status),
            next_run_at=row.next_run_at,
            last_run_at=row.last_run_at,
            last_error=row.last_error,
            retry_count=int(row.retry_count or 0),
            next_retry_at=row.next_retry_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _log_to_dict(row: OutreachJobLog) -> dict[str, Any]:
        return {
            "id": int(row.id),
            "job_id": int(row.job_id),
            "user_id": int(row.user_id),
            "executed_at": row.executed_at.isoformat(),
            "status": str(row.status),
            "batch_id": int(row.batch_id) if row.batch_id is not None else None,
            "processing_time_ms": int(row.processing_time_ms or 0),
            "contacts_processed": int(row.contacts_processed) if row.contacts_processed is not None else None,
            "error_message": row.error_message,
        }

    def get(self, user_id: int) -> JobRecord | None:
        with self._Session() as s:
            row = s.execute(select(OutreachJob).where(OutreachJob.user_id == user_id)).scalar_one_or_none()
            return self._to_record(row) if row is not None else None

    def list(self, *, status: str | None = None, limit: int = 100) -> list[JobRecord]:
        with self._Session() as s:
            q = select(OutreachJob).order_by(OutreachJob.next_run_at.asc(), OutreachJob.id.asc())
            if status:
                if status not in JOB_STATUSES:
                    raise ValueError(f"unknown job status: {status}")
                q = q.where(OutreachJob.status == status)
            rows = list(s.execute(q.limit(max(1, int(limit)))).scalars().all())
        return [self._to_record(r) for r in rows]

    def create(self, user_id: int, *, next_run_at: datetime, now: datetime, note: str | None = None) -> JobRecord:
        with self._Session() as s:
            try:
                row = OutreachJob(
                    user_id=user_id,
                    status=JOB_SCHEDULED,
                    next_run_at=next_run_at,
                    last_error=note,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
                s.add(row)
                s.commit()
                return self._to_record(row)
            except Exception:
                s.rollback()
                raise

    def _update(self, user_id: int, values: dict[str, Any], *conditions: Any) -> JobRecord | None:
        with self._Session() as s:
            try:
                res = s.execute(
                    update(OutreachJob)
                    .where(OutreachJob.user_id == user_id, *conditions)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                changed = int(res.rowcount or 0)
                s.commit()
            except Exception:
                s.rollback()
                raise
        if changed == 0:
            return None
        return self.get(user_id)

    def schedule(self, user_id: int, *, next_run_at: datetime, now: datetime, note: str | None = None) -> JobRecord:
        """Upsert the job into `scheduled` with a clean retry state."""
        values = {
            "status": JOB_SCHEDULED,
            "next_run_at": next_run_at,
            "retry_count": 0,
            "next_retry_at": None,
            "last_error": note,
            "updated_at": now,
        }
        rec = self._update(user_id, values)
        if rec is not None:
            return rec
        try:
            return self.create(user_id, next_run_at=next_run_at, now=now, note=note)
        except IntegrityError:
            # Lost a create race with another caller; the row exists now.
            rec = self._update(user_id, values)
            if rec is None:
                raise
            return rec

    @staticmethod
    def _unchanged_since(expected: JobRecord) -> list[Any]:
        def _same(col: Any, value: Optional[datetime]) -> Any:
            return col.is_(None) if value is None else col == value

        return [
            OutreachJob.status == expected.status,
            OutreachJob.retry_count == int(expected.retry_count),
            OutreachJob.next_run_at == expected.next_run_at,
            _same(OutreachJob.next_retry_at, expected.next_retry_at),
            _same(OutreachJob.last_run_at, expected.last_run_at),
            OutreachJob.updated_at == expected.updated_at,
        ]

    def mark_running(
        self,
        user_id: int,
        *,
        now: datetime,
        note: str,
        expected: JobRecord | None = None,
    ) -> JobRecord | None:
        """
        Claim the row for execution.

        With `expected`, the claim only succeeds while the row still matches
        that snapshot; a dispatch holding a record read before another run
        finished gets None instead of running the job again.
        """
        conditions: list[Any] = [OutreachJob.status.in_((JOB_SCHEDULED, JOB_FAILED))]
        if expected is not None:
            conditions.extend(self._unchanged_since(expected))
        return self._update(
            user_id,
            {"status": JOB_RUNNING, "last_error": note, "updated_at": now},
            *conditions,
        )

    def mark_succeeded(
        self,
        user_id: int,
        *,
        next_run_at: datetime,
        last_run_at: datetime,
        note: str,
        now: datetime,
    ) -> JobRecord | None:
        return self._update(
            user_id,
            {
                "status": JOB_SCHEDULED,
                "next_run_at": next_run_at,
                "last_run_at": last_run_at,
                "last_error": note,
                "retry_count": 0,
                "next_retry_at": None,
                "updated_at": now,
            },
            OutreachJob.status != JOB_DISABLED,
        )

    def mark_failed(
        self,
        user_id: int,
        *,
        retry_count: int,
        next_retry_at: datetime | None,
        note: str,
        now: datetime,
    ) -> JobRecord | None:
        return self._update(
            user_id,
            {
                "status": JOB_FAILED,
                "retry_count": int(retry_count),
                "next_retry_at": next_retry_at,
                "last_error": note,
                "updated_at": now,
            },
            OutreachJob.status != JOB_DISABLED,
        )

    def mark_disabled(self, user_id: int, *, now: datetime, note: str | None = None) -> JobRecord | None:
        values: dict[str, Any] = {"status": JOB_DISABLED, "updated_at": now}
        if note is not None:
            values["last_error"] = note
        return self._update(user_id, values)

    def set_next_run(self, user_id: int, *, next_run_at: datetime, note: str, now: datetime) -> JobRecord | None:
        return self._update(user_id, {"next_run_at": next_run_at, "last_error": note, "updated_at": now})

    def reset_stale_running(self, user_id: int, *, cutoff: datetime, note: str, now: datetime) -> JobRecord | None:
        return self._update(
            user_id,
            {"status": JOB_SCHEDULED, "last_error": note, "updated_at": now},
            OutreachJob.status == JOB_RUNNING,
            OutreachJob.updated_at <= cutoff,
        )

    def find_due(self, *, limit: int, max_retries: int, now: datetime) -> list[JobRecord]:
        if limit <= 0:
            return []
        retry_eligible = and_(
            OutreachJob.status == JOB_FAILED,
            OutreachJob.retry_count < int(max_retries),
            or_(OutreachJob.next_retry_at.is_(None), OutreachJob.next_retry_at <= now),
        )
        scheduled_due = and_(OutreachJob.status == JOB_SCHEDULED, OutreachJob.next_run_at <= now)
        # Retries first so a burst of fresh jobs cannot starve them.
        priority = case((OutreachJob.status == JOB_FAILED, 0), else_=1)
        q = (
            select(OutreachJob)
            .where(or_(scheduled_due, retry_eligible))
            .order_by(priority, OutreachJob.next_run_at.asc(), OutreachJob.id.asc())
            .limit(int(limit))
        )
        with self._Session() as s:
            rows = list(s.execute(q).scalars().all())
        return [self._to_record(r) for r in rows]

    def find_stale_running(self, *, cutoff: datetime) -> list[JobRecord]:
        q = (
            select(OutreachJob)
            .where(OutreachJob.status == JOB_RUNNING, OutreachJob.updated_at <= cutoff)
            .order_by(OutreachJob.updated_at.asc(), OutreachJob.id.asc())
        )
        with self._Session() as s:
            rows = list(s.execute(q).scalars().all())
        return [self._to_record(r) for r in rows]

    def delete(self, user_id: int) -> bool:
        with self._Session() as s:
            try:
                row = s.execute(select(OutreachJob).where(OutreachJob.user_id == user_id)).scalar_one_or_none()
                if row is None:
                    return False
                s.execute(
                    OutreachJobLog.__table__.delete().where(OutreachJobLog.job_id == row.id)
                )
                s.delete(row)
                s.commit()
                return True
            except Exception:
                s.rollback()
                raise

    def append_log(
        self,
        *,
        job_id: int,
        user_id: int,
        executed_at: datetime,
        status: str,
        processing_time_ms: int,
        batch_id: int | None = None,
        contacts_processed: int | None = None,
        error_message: str | None = None,
    ) -> int:
        with self._Session() as s:
            try:
                row = OutreachJobLog(
                    job_id=job_id,
                    user_id=user_id,
                    executed_at=executed_at,
                    status=status,
                    batch_id=batch_id,
                    processing_time_ms=max(0, int(processing_time_ms)),
                    contacts_processed=contacts_processed,
                    error_message=error_message,
                    created_at=executed_at,
                )
                s.add(row)
                s.commit()
                return int(row.id)
            except Exception:
                s.rollback()
                raise

    def list_logs(self, user_id: int, *, limit: int = 50) -> list[dict[str, Any]]:
        q = (
            select(OutreachJobLog)
            .where(OutreachJobLog.user_id == user_id)
            .order_by(OutreachJobLog.id.desc())
            .limit(max(1, int(limit)))
        )
        with self._Session() as s:
            rows = list(s.execute(q).scalars().all())
        return [self._log_to_dict(r) for r in rows]

    def stats(self, *, max_retries: int, now: datetime, horizon: timedelta = timedelta(hours=1)) -> dict[str, Any]:
        with self._Session() as s:
            by_status = s.execute(
                select(OutreachJob.status, func.count()).group_by(OutreachJob.status)
            ).all()
            by_retry = s.execute(
                select(OutreachJob.retry_count, func.count())
                .where(OutreachJob.status == JOB_FAILED)
                .group_by(OutreachJob.retry_count)
                .order_by(OutreachJob.retry_count.asc())
            ).all()
            upcoming = list(
                s.execute(
                    select(OutreachJob)
                    .where(OutreachJob.next_run_at <= now + horizon)
                    .order_by(OutreachJob.next_run_at.asc())
                    .limit(10)
                )
                .scalars()
                .all()
            )
            permanent = s.execute(
                select(func.count())
                .select_from(OutreachJob)
                .where(OutreachJob.status == JOB_FAILED, OutreachJob.retry_count >= int(max_retries))
            ).scalar_one()
        return {
            "job_stats": [{"status": str(st), "count": int(c)} for st, c in by_status],
            "retry_distribution": [{"retry_count": int(rc or 0), "count": int(c)} for rc, c in by_retry],
            "permanently_failed": int(permanent or 0),
            "upcoming_jobs": [
                {
                    "id": int(r.id),
                    "user_id": int(r.user_id),
                    "next_run_at": r.next_run_at.isoformat(),
                    "status": str(r.status),
                    "retry_count": int(r.retry_count or 0),
                }
                for r in upcoming
            ],
        }
