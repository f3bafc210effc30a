from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from outreach.core.errors import OUTREACH_004_SCHEMA_NOT_READY, SchedulerError
from outreach.core.preferences import SchedulePreferences
from outreach.db.engine import get_db_settings, make_engine, redact_database_url, sqlite_file
from outreach.db.repo import JobRecord, JobsRepo, PreferencesRepo


REQUIRED_TABLES = (
    "daily_outreach_jobs",
    "daily_outreach_job_logs",
    "user_outreach_preferences",
)


class JobStore:
    """
    Durable job rows, the append-only execution log and the preferences
    table, all behind one SQLAlchemy engine.

    Each method opens its own session and touches a single job row, so
    callers on different threads never share ORM state.
    """

    def __init__(self, project_root: Path, database_url: str | None = None, auto_init: bool = True) -> None:
        self.project_root = project_root
        db_settings = get_db_settings()
        self.database_url = (database_url or db_settings.database_url).strip()
        self.db_path = sqlite_file(self.database_url, project_root)
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Relative sqlite paths resolve against the project root, not the cwd.
            self.database_url = f"sqlite:///{self.db_path.as_posix()}"
        self.engine: Engine = make_engine(self.database_url, echo=db_settings.echo)
        self._Session = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)
        self.jobs = JobsRepo(self._Session)
        self.preferences = PreferencesRepo(self._Session)
        self._logger = logging.getLogger("outreach.job_store")
        if auto_init:
            self.ensure_schema()

    def _run_alembic_upgrade(self) -> None:
        alembic_ini = self.project_root / "alembic.ini"
        script_location = self.project_root / "alembic"
        if not alembic_ini.exists() or not script_location.exists():
            fallback_root = Path(__file__).resolve().parents[2]
            alembic_ini = fallback_root / "alembic.ini"
            script_location = fallback_root / "alembic"
        if not alembic_ini.exists() or not script_location.exists():
            raise RuntimeError("Alembic configuration not found")
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(script_location))
        cfg.set_main_option("sqlalchemy.url", self.database_url)
        prev = os.environ.get("DATABASE_URL")
        try:
            os.environ["DATABASE_URL"] = self.database_url
            command.upgrade(cfg, "head")
        finally:
            if prev is None:
                os.environ.pop("DATABASE_URL", None)
            else:
                os.environ["DATABASE_URL"] = prev

    def missing_tables(self) -> list[str]:
        insp = inspect(self.engine)
        return [name for name in REQUIRED_TABLES if not insp.has_table(name)]

    def ensure_schema(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        missing = self.missing_tables()
        if not missing:
            return
        self._logger.info("schema_upgrade missing=%s url=%s", missing, redact_database_url(self.database_url))
        try:
            self._run_alembic_upgrade()
            still_missing = self.missing_tables()
            if still_missing:
                raise RuntimeError(f"missing tables after migration: {still_missing}")
        except Exception as e:
            raise SchedulerError(
                OUTREACH_004_SCHEMA_NOT_READY,
                f"run `alembic upgrade head` (url={redact_database_url(self.database_url)}): {e}",
            ) from e

    def observability_info(self) -> dict[str, Any]:
        return {
            "db_backend": self.engine.dialect.name,
            "db_url": redact_database_url(self.database_url),
        }

    # Jobs

    def get_job(self, user_id: int) -> JobRecord | None:
        return self.jobs.get(user_id)

    def list_jobs(self, *, status: str | None = None, limit: int = 100) -> list[JobRecord]:
        return self.jobs.list(status=status, limit=limit)

    def create_job(self, user_id: int, *, next_run_at: datetime, now: datetime) -> JobRecord:
        return self.jobs.create(user_id, next_run_at=next_run_at, now=now)

    def schedule_job(self, user_id: int, *, next_run_at: datetime, now: datetime, note: str | None = None) -> JobRecord:
        return self.jobs.schedule(user_id, next_run_at=next_run_at, now=now, note=note)

    def mark_running(self, user_id: int, *, now: datetime, expected: JobRecord | None = None) -> JobRecord | None:
        return self.jobs.mark_running(user_id, now=now, note=f"Job started at {now.isoformat()}", expected=expected)

    def mark_succeeded(
        self, user_id: int, *, next_run_at: datetime, last_run_at: datetime, note: str, now: datetime
    ) -> JobRecord | None:
        return self.jobs.mark_succeeded(user_id, next_run_at=next_run_at, last_run_at=last_run_at, note=note, now=now)

    def mark_failed(
        self, user_id: int, *, retry_count: int, next_retry_at: datetime | None, note: str, now: datetime
    ) -> JobRecord | None:
        return self.jobs.mark_failed(user_id, retry_count=retry_count, next_retry_at=next_retry_at, note=note, now=now)

    def mark_disabled(self, user_id: int, *, now: datetime, note: str | None = None) -> JobRecord | None:
        return self.jobs.mark_disabled(user_id, now=now, note=note)

    def set_next_run(self, user_id: int, *, next_run_at: datetime, note: str, now: datetime) -> JobRecord | None:
        return self.jobs.set_next_run(user_id, next_run_at=next_run_at, note=note, now=now)

    def reset_stale_running(self, user_id: int, *, cutoff: datetime, note: str, now: datetime) -> JobRecord | None:
        return self.jobs.reset_stale_running(user_id, cutoff=cutoff, note=note, now=now)

    def find_due_jobs(self, *, limit: int, max_retries: int, now: datetime) -> list[JobRecord]:
        return self.jobs.find_due(limit=limit, max_retries=max_retries, now=now)

    def find_stale_running(self, *, stale_after: timedelta, now: datetime) -> list[JobRecord]:
        return self.jobs.find_stale_running(cutoff=now - stale_after)

    def delete_job(self, user_id: int) -> bool:
        return self.jobs.delete(user_id)

    def append_log(self, **fields: Any) -> int:
        return self.jobs.append_log(**fields)

    def list_logs(self, user_id: int, *, limit: int = 50) -> list[dict[str, Any]]:
        return self.jobs.list_logs(user_id, limit=limit)

    def job_stats(self, *, max_retries: int, now: datetime) -> dict[str, Any]:
        return self.jobs.stats(max_retries=max_retries, now=now)

    # Preferences

    def get_preferences(self, user_id: int) -> SchedulePreferences | None:
        return self.preferences.get(user_id)

    def save_preferences(self, prefs: SchedulePreferences, *, now: datetime) -> SchedulePreferences:
        return self.preferences.save(prefs, now=now)

    def list_enabled_user_ids(self) -> list[int]:
        return self.preferences.list_enabled_user_ids()

    def preferences_changed_since(self, user_id: int, since: datetime) -> bool:
        return self.preferences.changed_since(user_id, since)
