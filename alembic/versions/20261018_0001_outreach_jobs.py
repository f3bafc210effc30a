"""daily outreach jobs, execution log and schedule preferences

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _json_type() -> sa.types.TypeEngine:
    return sa.Text().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    # Fixed-width UTC ISO text; lexical order equals chronological order.
    return sa.Column(name, sa.String(32), nullable=nullable)


def _has_table(table_name: str) -> bool:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    return table_name in set(insp.get_table_names())


def _existing_indexes(table_name: str) -> set[str]:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    try:
        return {str(i.get("name", "")) for i in insp.get_indexes(table_name)}
    except Exception:
        return set()


def _create_index_if_missing(name: str, table_name: str, cols: list[str]) -> None:
    if name in _existing_indexes(table_name):
        return
    op.create_index(name, table_name, cols, unique=False)


def upgrade() -> None:
    if not _has_table("daily_outreach_jobs"):
        op.create_table(
            "daily_outreach_jobs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="scheduled"),
            _ts("next_run_at"),
            _ts("last_run_at", nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            _ts("next_retry_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("user_id", name="uq_outreach_jobs_user"),
        )
    _create_index_if_missing("idx_outreach_jobs_next_run", "daily_outreach_jobs", ["next_run_at"])
    _create_index_if_missing("idx_outreach_jobs_user_status", "daily_outreach_jobs", ["user_id", "status"])
    _create_index_if_missing("idx_outreach_jobs_retry", "daily_outreach_jobs", ["next_retry_at", "retry_count"])
    _create_index_if_missing("idx_outreach_jobs_status_updated", "daily_outreach_jobs", ["status", "updated_at"])

    if not _has_table("daily_outreach_job_logs"):
        op.create_table(
            "daily_outreach_job_logs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                "job_id",
                sa.Integer(),
                sa.ForeignKey("daily_outreach_jobs.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("user_id", sa.Integer(), nullable=False),
            _ts("executed_at"),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("batch_id", sa.Integer(), nullable=True),
            sa.Column("processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("contacts_processed", sa.Integer(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            _ts("created_at"),
        )
    _create_index_if_missing("idx_outreach_job_logs_job", "daily_outreach_job_logs", ["job_id", "id"])
    _create_index_if_missing("idx_outreach_job_logs_user", "daily_outreach_job_logs", ["user_id", "id"])
    _create_index_if_missing("idx_outreach_job_logs_executed_at", "daily_outreach_job_logs", ["executed_at"])

    if not _has_table("user_outreach_preferences"):
        op.create_table(
            "user_outreach_preferences",
            sa.Column("user_id", sa.Integer(), primary_key=True, autoincrement=False),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("schedule_days_json", _json_type(), nullable=False),
            sa.Column("schedule_time", sa.String(), nullable=False, server_default="09:00"),
            sa.Column("timezone", sa.String(), nullable=False, server_default="America/New_York"),
            sa.Column("vacation_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("vacation_start", nullable=True),
            _ts("vacation_end", nullable=True),
            sa.Column("extra_json", _json_type(), nullable=False),
            _ts("created_at"),
            _ts("updated_at"),
        )
    _create_index_if_missing("idx_outreach_pref_enabled", "user_outreach_preferences", ["enabled"])


def downgrade() -> None:
    for name in ("user_outreach_preferences", "daily_outreach_job_logs", "daily_outreach_jobs"):
        if _has_table(name):
            op.drop_table(name)
