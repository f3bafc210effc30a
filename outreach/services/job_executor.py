from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from outreach.core.due_time import next_run_at
from outreach.core.retry_policy import RetryPolicy
from outreach.db.models.outreach import JOB_FAILED, LOG_FAILED, LOG_FAILED_PERMANENT, LOG_SUCCESS
from outreach.db.repo import JobRecord
from outreach.services.concurrency_tracker import ConcurrencyTracker
from outreach.services.job_store import JobStore
from outreach.services.workload import OUTCOME_SOFT_STOP, Outcome, ProcessorLike, as_processor


logger = logging.getLogger("outreach.executor")

DISABLED_NOTE = "Outreach disabled - job not rescheduled"
PREFERENCES_CHANGED_NOTE = "Schedule updated during run - retries cleared"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobExecutor:
    """
    Runs one dispatched job to completion and applies its state transition.

    Exactly one execution-log row is written per attempt. Nothing raised by
    the workload or by the store escapes `execute`; the tracker slot is
    released on every path.
    """

    def __init__(
        self,
        store: JobStore,
        tracker: ConcurrencyTracker,
        processor: ProcessorLike,
        retry_policy: RetryPolicy,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.processor = as_processor(processor)
        self.retry_policy = retry_policy
        self.clock = clock

    def execute(self, job: JobRecord, slot: datetime | None = None) -> Outcome | None:
        user_id = job.user_id
        started_at = self.clock()
        t0 = time.monotonic()
        try:
            running = self.store.mark_running(user_id, now=started_at, expected=job)
            if running is None:
                logger.info("job_skipped_not_runnable job_id=%s user_id=%s", job.id, user_id)
                return None
            logger.info("job_started job_id=%s user_id=%s retry_count=%s", running.id, user_id, running.retry_count)
            try:
                outcome = self.processor.process(user_id)
            except Exception as e:
                logger.exception("job_workload_error job_id=%s user_id=%s", running.id, user_id)
                outcome = Outcome.failure(e)
            if outcome is None:
                outcome = Outcome.success()
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            self._finish(running, outcome, started_at=started_at, elapsed_ms=elapsed_ms)
            return outcome
        except Exception:
            # Store trouble while finishing; the row stays `running` until the sweeper resets it.
            logger.exception("job_finish_failed job_id=%s user_id=%s", job.id, user_id)
            return None
        finally:
            self.tracker.release(user_id, slot)

    def _finish(self, job: JobRecord, outcome: Outcome, *, started_at: datetime, elapsed_ms: int) -> None:
        if outcome.ok:
            self._record_success(job, outcome, started_at=started_at, elapsed_ms=elapsed_ms)
            return
        failed = self.record_failure(job, outcome.error_message, elapsed_ms=elapsed_ms)
        if failed is not None and failed.status == JOB_FAILED:
            self._apply_preferences_changed_during_run(job, started_at)

    def _apply_preferences_changed_during_run(self, job: JobRecord, started_at: datetime) -> None:
        # A preference update that arrived mid-run was deferred; it still owes the job a clean schedule.
        if not self.store.preferences_changed_since(job.user_id, started_at):
            return
        prefs = self.store.get_preferences(job.user_id)
        if prefs is None or not prefs.enabled:
            return
        now = self.clock()
        updated = self.store.schedule_job(
            job.user_id, next_run_at=next_run_at(prefs, now), now=now, note=PREFERENCES_CHANGED_NOTE
        )
        logger.info(
            "job_rescheduled_after_preferences_change job_id=%s user_id=%s next_run_at=%s",
            job.id,
            job.user_id,
            updated.next_run_at.isoformat(),
        )

    def _record_success(self, job: JobRecord, outcome: Outcome, *, started_at: datetime, elapsed_ms: int) -> None:
        now = self.clock()
        if outcome.kind == OUTCOME_SOFT_STOP:
            note = outcome.reason or "Run skipped"
        else:
            note = (
                f"Last run successful: batch {outcome.batch_id} "
                f"with {outcome.contacts_processed or 0} contacts"
            )
        self.store.append_log(
            job_id=job.id,
            user_id=job.user_id,
            executed_at=now,
            status=LOG_SUCCESS,
            processing_time_ms=elapsed_ms,
            batch_id=outcome.batch_id,
            contacts_processed=outcome.contacts_processed,
            error_message=outcome.reason or None,
        )
        prefs = self.store.get_preferences(job.user_id)
        if prefs is None or not prefs.enabled:
            self.store.mark_disabled(job.user_id, now=now, note=f"{note} | {DISABLED_NOTE}")
            logger.info("job_disabled_after_run job_id=%s user_id=%s", job.id, job.user_id)
            return
        nxt = next_run_at(prefs, now)
        updated = self.store.mark_succeeded(job.user_id, next_run_at=nxt, last_run_at=started_at, note=note, now=now)
        if updated is None:
            logger.info("job_left_disabled job_id=%s user_id=%s", job.id, job.user_id)
            return
        logger.info(
            "job_done job_id=%s user_id=%s kind=%s batch_id=%s contacts=%s ms=%s next_run_at=%s",
            job.id,
            job.user_id,
            outcome.kind,
            outcome.batch_id,
            outcome.contacts_processed,
            elapsed_ms,
            nxt.isoformat(),
        )

    def record_failure(self, job: JobRecord, error_message: str, *, elapsed_ms: int = 0) -> JobRecord | None:
        """
        Apply the failure transition: bump the retry count, schedule the
        backoff or mark the job permanently failed, append the log row.
        Also used by the admin failure injection.
        """
        now = self.clock()
        message = error_message or "Unknown error"
        retry_count = int(job.retry_count or 0) + 1
        next_retry = self.retry_policy.next_retry_at(retry_count, now)
        permanent = next_retry is None
        if permanent:
            note = f"Failed after {self.retry_policy.max_retries} retries: {message}"
        else:
            note = message
        self.store.append_log(
            job_id=job.id,
            user_id=job.user_id,
            executed_at=now,
            status=LOG_FAILED_PERMANENT if permanent else LOG_FAILED,
            processing_time_ms=elapsed_ms,
            error_message=message,
        )
        prefs = self.store.get_preferences(job.user_id)
        if prefs is None or not prefs.enabled:
            logger.info("job_disabled_after_failure job_id=%s user_id=%s", job.id, job.user_id)
            return self.store.mark_disabled(job.user_id, now=now, note=f"{note} | {DISABLED_NOTE}")
        updated = self.store.mark_failed(
            job.user_id,
            retry_count=retry_count,
            next_retry_at=next_retry,
            note=note,
            now=now,
        )
        if permanent:
            logger.error(
                "job_failed_permanent job_id=%s user_id=%s retries=%s error=%s",
                job.id,
                job.user_id,
                retry_count,
                message,
            )
        else:
            logger.warning(
                "job_failed job_id=%s user_id=%s attempt=%s/%s next_retry_at=%s error=%s",
                job.id,
                job.user_id,
                retry_count,
                self.retry_policy.max_retries,
                next_retry.isoformat() if next_retry else None,
                message,
            )
        return updated
