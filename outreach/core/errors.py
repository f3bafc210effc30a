from dataclasses import dataclass


@dataclass(frozen=True)
class SchedulerErrorCode:
    code: str
    message: str


OUTREACH_001_INVALID_PREFERENCES = SchedulerErrorCode(
    "OUTREACH_001_INVALID_PREFERENCES",
    "Schedule preferences are invalid.",
)
OUTREACH_002_UNKNOWN_TIMEZONE = SchedulerErrorCode(
    "OUTREACH_002_UNKNOWN_TIMEZONE",
    "Timezone is not a known IANA zone.",
)
OUTREACH_003_JOB_NOT_FOUND = SchedulerErrorCode(
    "OUTREACH_003_JOB_NOT_FOUND",
    "No outreach job exists for the user.",
)
OUTREACH_004_SCHEMA_NOT_READY = SchedulerErrorCode(
    "OUTREACH_004_SCHEMA_NOT_READY",
    "Database schema is not ready.",
)
OUTREACH_005_SCHEDULER_LOCKED = SchedulerErrorCode(
    "OUTREACH_005_SCHEDULER_LOCKED",
    "Another scheduler process holds the lock.",
)


class SchedulerError(RuntimeError):
    def __init__(self, err: SchedulerErrorCode, detail: str = "") -> None:
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{err.code}: {err.message}{suffix}")
        self.err = err
        self.detail = detail
