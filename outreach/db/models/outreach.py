from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from outreach.db.base import Base
from outreach.db.types import JSONText, UTCText


JOB_SCHEDULED = "scheduled"
JOB_RUNNING = "running"
JOB_FAILED = "failed"
JOB_DISABLED = "disabled"
JOB_STATUSES = (JOB_SCHEDULED, JOB_RUNNING, JOB_FAILED, JOB_DISABLED)

LOG_SUCCESS = "success"
LOG_FAILED = "failed"
LOG_FAILED_PERMANENT = "failed_permanent"


class OutreachJob(Base):
    __tablename__ = "daily_outreach_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=JOB_SCHEDULED)
    next_run_at: Mapped[datetime] = mapped_column(UTCText(), nullable=False)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCText(), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCText(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCText(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCText(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_outreach_jobs_user"),
        Index("idx_outreach_jobs_next_run", "next_run_at"),
        Index("idx_outreach_jobs_user_status", "user_id", "status"),
        Index("idx_outreach_jobs_retry", "next_retry_at", "retry_count"),
        Index("idx_outreach_jobs_status_updated", "status", "updated_at"),
    )


class OutreachJobLog(Base):
    __tablename__ = "daily_outreach_job_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("daily_outreach_jobs.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    executed_at: Mapped[datetime] = mapped_column(UTCText(), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    batch_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contacts_processed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCText(), nullable=False)

    __table_args__ = (
        Index("idx_outreach_job_logs_job", "job_id", "id"),
        Index("idx_outreach_job_logs_user", "user_id", "id"),
        Index("idx_outreach_job_logs_executed_at", "executed_at"),
    )


class OutreachPreferences(Base):
    __tablename__ = "user_outreach_preferences"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    schedule_days_json: Mapped[list[Any]] = mapped_column(JSONText(), nullable=False, default=list)
    schedule_time: Mapped[str] = mapped_column(String, nullable=False, default="09:00")
    timezone: Mapped[str] = mapped_column(String, nullable=False, default="America/New_York")
    vacation_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    vacation_start: Mapped[Optional[datetime]] = mapped_column(UTCText(), nullable=True)
    vacation_end: Mapped[Optional[datetime]] = mapped_column(UTCText(), nullable=True)
    extra_json: Mapped[dict[str, Any]] = mapped_column(JSONText(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCText(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCText(), nullable=False)

    __table_args__ = (
        Index("idx_outreach_pref_enabled", "enabled"),
    )
