from outreach.db.models.outreach import (
    JOB_DISABLED,
    JOB_FAILED,
    JOB_RUNNING,
    JOB_SCHEDULED,
    JOB_STATUSES,
    LOG_FAILED,
    LOG_FAILED_PERMANENT,
    LOG_SUCCESS,
    OutreachJob,
    OutreachJobLog,
    OutreachPreferences,
)

__all__ = [
    "OutreachJob",
    "OutreachJobLog",
    "OutreachPreferences",
    "JOB_SCHEDULED",
    "JOB_RUNNING",
    "JOB_FAILED",
    "JOB_DISABLED",
    "JOB_STATUSES",
    "LOG_SUCCESS",
    "LOG_FAILED",
    "LOG_FAILED_PERMANENT",
]
