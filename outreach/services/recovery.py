from __future__ import annotations

import logging
from datetime import datetime, timedelta

from outreach.db.repo import JobRecord
from outreach.services.concurrency_tracker import ConcurrencyTracker
from outreach.services.job_store import JobStore


logger = logging.getLogger("outreach.recovery")

RESTART_NOTE = "Scheduler restarted - job reset from running state"


def recover_stale_jobs(
    store: JobStore,
    *,
    stale_after: timedelta,
    now: datetime,
    tracker: ConcurrencyTracker | None = None,
    note: str | None = None,
) -> list[JobRecord]:
    """
    Reset jobs stuck in `running` for at least `stale_after` back to
    `scheduled`. The retry count is left alone: the interrupted attempt's
    outcome is unknown, so it is not a failure.

    With `stale_after=timedelta(0)` every running row is reset, which is
    what a freshly started process wants. Returns the recovered rows.
    """
    cutoff = now - stale_after
    recovered: list[JobRecord] = []
    for job in store.find_stale_running(stale_after=stale_after, now=now):
        msg = note or f"Job recovered - was stuck since {job.updated_at.isoformat()}"
        updated = store.reset_stale_running(job.user_id, cutoff=cutoff, note=msg, now=now)
        if updated is None:
            # Finished or touched between the query and the reset.
            continue
        if tracker is not None:
            tracker.release(job.user_id)
        logger.warning(
            "job_recovered job_id=%s user_id=%s stuck_since=%s retry_count=%s",
            job.id,
            job.user_id,
            job.updated_at.isoformat(),
            updated.retry_count,
        )
        recovered.append(updated)
    return recovered
