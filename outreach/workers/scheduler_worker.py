from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from outreach.core.due_time import next_run_at
from outreach.core.errors import OUTREACH_003_JOB_NOT_FOUND, SchedulerError
from outreach.core.preferences import SchedulePreferences
from outreach.core.retry_policy import RetryPolicy
from outreach.core.settings import SchedulerSettings, get_scheduler_settings
from outreach.db.models.outreach import JOB_DISABLED, JOB_FAILED, JOB_RUNNING
from outreach.db.repo import JobRecord
from outreach.services.concurrency_tracker import ConcurrencyTracker
from outreach.services.job_executor import JobExecutor
from outreach.services.job_store import JobStore
from outreach.services.recovery import RESTART_NOTE, recover_stale_jobs
from outreach.services.run_lock import acquire_run_lock
from outreach.services.workload import (
    PreconditionGate,
    ProcessorLike,
    UnconfiguredWorkload,
    WorkloadProcessor,
    load_processor,
)


logger = logging.getLogger("outreach.scheduler")

SIMULATED_FAILURE = "Simulated failure for testing"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Dispatcher:
    """
    One polling pass: evict stale tracker entries, recover stale rows,
    then hand due jobs to the executor pool up to the free capacity.

    `pool` is any concurrent.futures-style executor; the pass never waits
    for a job to finish. Submitted work is counted until it actually
    returns, independently of the tracker: evicting a stale tracker entry
    frees the user for recovery but not a pool worker, so a user whose
    previous submission is still queued or executing is not submitted
    again and pool capacity is never over-committed.
    """

    def __init__(
        self,
        store: JobStore,
        tracker: ConcurrencyTracker,
        executor: JobExecutor,
        settings: SchedulerSettings,
        pool: Executor,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.executor = executor
        self.settings = settings
        self.pool = pool
        self.clock = clock
        self._outstanding: set[int] = set()
        self._lock = threading.Lock()

    def outstanding(self) -> list[int]:
        with self._lock:
            return sorted(self._outstanding)

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.settings.stale_after_seconds)

    def tick(self) -> dict[str, Any]:
        summary: dict[str, Any] = {"evicted": [], "recovered": [], "dispatched": [], "skipped": [], "slots": 0}
        try:
            now = self.clock()
            summary["evicted"] = self.tracker.evict_stale(now)
            recovered = recover_stale_jobs(self.store, stale_after=self.stale_after, now=now, tracker=self.tracker)
            summary["recovered"] = [j.user_id for j in recovered]

            with self._lock:
                queued = len(self._outstanding)
            running = max(self.tracker.size(), queued)
            slots = self.settings.max_concurrent - running
            summary["slots"] = max(0, slots)
            if slots <= 0:
                logger.info("tick_saturated running=%s max_concurrent=%s", running, self.settings.max_concurrent)
                return summary

            limit = min(self.settings.batch_size, slots)
            due = self.store.find_due_jobs(limit=limit, max_retries=self.settings.max_retries, now=now)
            if due:
                logger.info("tick_batch due=%s running=%s slots=%s", len(due), running, limit)
            for job in due:
                if self.dispatch(job):
                    summary["dispatched"].append(job.user_id)
                else:
                    summary["skipped"].append(job.user_id)
        except Exception:
            logger.exception("tick_failed")
            summary["error"] = True
        return summary

    def dispatch(self, job: JobRecord) -> bool:
        user_id = job.user_id
        with self._lock:
            if user_id in self._outstanding or len(self._outstanding) >= self.settings.max_concurrent:
                logger.info("dispatch_skipped user_id=%s outstanding=%s", user_id, len(self._outstanding))
                return False
            slot = self.tracker.reserve(user_id, self.clock())
            if slot is None:
                logger.info("dispatch_skipped user_id=%s in_flight=%s", user_id, self.tracker.contains(user_id))
                return False
            self._outstanding.add(user_id)
        try:
            self.pool.submit(self._run, job, slot)
        except Exception:
            self._done(user_id)
            self.tracker.release(user_id, slot)
            raise
        return True

    def _run(self, job: JobRecord, slot: datetime) -> None:
        try:
            self.executor.execute(job, slot)
        finally:
            self._done(job.user_id)

    def _done(self, user_id: int) -> None:
        with self._lock:
            self._outstanding.discard(user_id)


class OutreachSchedulerService:
    def __init__(
        self,
        store: JobStore,
        processor: ProcessorLike,
        settings: SchedulerSettings | None = None,
        *,
        project_root: Path | None = None,
        clock: Callable[[], datetime] = _utc_now,
        tracker: ConcurrencyTracker | None = None,
        pool: Executor | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_scheduler_settings()
        self.project_root = project_root or store.project_root
        self.clock = clock
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.tracker = tracker or ConcurrencyTracker(
            self.settings.max_concurrent,
            stale_after=timedelta(seconds=self.settings.stale_after_seconds),
        )
        self.executor = JobExecutor(store, self.tracker, processor, self.retry_policy, clock=clock)
        self._owns_pool = pool is None
        self.pool: Executor = pool or ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent,
            thread_name_prefix="outreach-job",
        )
        self.dispatcher = Dispatcher(store, self.tracker, self.executor, self.settings, self.pool, clock=clock)
        self.lock_path = self.project_root / "data" / "outreach_scheduler.lock"
        self.heartbeat_path = self.project_root / "logs" / "outreach_scheduler_heartbeat.json"
        self.scheduler = None
        self._last_tick: dict[str, Any] = {}

    # Lifecycle

    def initialize(self) -> dict[str, Any]:
        now = self.clock()
        reset = recover_stale_jobs(self.store, stale_after=timedelta(0), now=now, tracker=self.tracker, note=RESTART_NOTE)
        if reset:
            logger.warning("startup_reset count=%s users=%s", len(reset), [j.user_id for j in reset])
        ensured = 0
        for user_id in self.store.list_enabled_user_ids():
            try:
                if self._ensure_job(user_id, now):
                    ensured += 1
            except SchedulerError as e:
                logger.error("ensure_job_failed user_id=%s error=%s", user_id, e)
        logger.info("scheduler_initialized reset=%s ensured=%s", len(reset), ensured)
        return {"reset": [j.user_id for j in reset], "ensured": ensured}

    def _ensure_job(self, user_id: int, now: datetime) -> bool:
        prefs = self.store.get_preferences(user_id)
        if prefs is None or not prefs.enabled:
            return False
        job = self.store.get_job(user_id)
        if job is None:
            self.store.create_job(user_id, next_run_at=next_run_at(prefs, now), now=now)
            logger.info("job_created user_id=%s", user_id)
            return True
        exhausted = job.status == JOB_FAILED and self.retry_policy.exhausted(job.retry_count)
        if exhausted or job.status == JOB_DISABLED:
            self.store.schedule_job(user_id, next_run_at=next_run_at(prefs, now), now=now)
            logger.info("job_reset user_id=%s previous_status=%s", user_id, job.status)
            return True
        return False

    def start(self) -> None:
        try:
            from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore
            from apscheduler.triggers.interval import IntervalTrigger  # type: ignore
        except ImportError as e:
            raise SystemExit(
                "APScheduler is required but not installed. Install with: pip install -e .\n"
                f"import_error={e}"
            )

        self.scheduler = BackgroundScheduler(timezone=timezone.utc, job_defaults={"max_instances": 1, "coalesce": True})
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.settings.poll_interval_seconds, timezone=timezone.utc),
            id="outreach-poll",
            # First pass right away so a restart self-heals without waiting a full interval.
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("scheduler_started %s", " ".join(f"{k}={v}" for k, v in self.settings.as_dict().items()))

    def tick(self) -> dict[str, Any]:
        summary = self.dispatcher.tick()
        self._last_tick = summary
        try:
            self._write_heartbeat(summary)
        except OSError as e:
            logger.warning("heartbeat_write_failed error=%s", e)
        return summary

    def shutdown(self, wait: bool = False) -> None:
        logger.info("scheduler_shutdown wait=%s", wait)
        if self.scheduler is not None:
            try:
                self.scheduler.shutdown(wait=False)
            finally:
                self.scheduler = None
        if self._owns_pool:
            self.pool.shutdown(wait=wait)

    def run_forever(self) -> None:
        with acquire_run_lock(self.lock_path, owner="outreach-scheduler"):
            self.initialize()
            self.start()
            try:
                while True:
                    time.sleep(1)
            except KeyboardInterrupt:
                logger.info("stop (keyboard interrupt)")
            finally:
                self.shutdown(wait=True)

    def _write_heartbeat(self, summary: dict[str, Any]) -> None:
        self.heartbeat_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "ts": time.time(),
            "running": sorted(self.tracker.snapshot().keys()),
            "last_tick": {k: v for k, v in summary.items()},
            "config": self.settings.as_dict(),
        }
        self.heartbeat_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    # Preference changes

    def update_user_preferences(self, prefs: SchedulePreferences) -> JobRecord | None:
        if not prefs.enabled:
            return self.disable_user_outreach(prefs.user_id)
        now = self.clock()
        job = self.store.get_job(prefs.user_id)
        if job is not None and job.status == JOB_RUNNING:
            # The in-flight run reschedules from the saved preferences when it finishes,
            # and clears its retry state if it fails.
            logger.info("schedule_update_deferred user_id=%s", prefs.user_id)
            return job
        updated = self.store.schedule_job(prefs.user_id, next_run_at=next_run_at(prefs, now), now=now)
        logger.info("schedule_updated user_id=%s next_run_at=%s", prefs.user_id, updated.next_run_at.isoformat())
        return updated

    def disable_user_outreach(self, user_id: int) -> JobRecord | None:
        job = self.store.mark_disabled(user_id, now=self.clock())
        logger.info("job_disabled user_id=%s found=%s", user_id, job is not None)
        return job

    # Admin operations

    def _require_job(self, user_id: int) -> JobRecord:
        job = self.store.get_job(user_id)
        if job is None:
            raise SchedulerError(OUTREACH_003_JOB_NOT_FOUND, f"user_id={user_id}")
        return job

    def get_job_status(self, user_id: int) -> dict[str, Any] | None:
        job = self.store.get_job(user_id)
        if job is None:
            return None
        out = job.to_dict()
        delta = job.next_run_at - self.clock()
        out["next_run_in_minutes"] = int(delta.total_seconds() // 60)
        out["in_flight"] = self.tracker.contains(user_id)
        return out

    def recalculate_all_schedules(self) -> int:
        now = self.clock()
        count = 0
        for job in self.store.list_jobs(limit=100000):
            if job.status == JOB_DISABLED:
                continue
            try:
                prefs = self.store.get_preferences(job.user_id)
            except SchedulerError as e:
                logger.error("recalculate_skipped user_id=%s error=%s", job.user_id, e)
                continue
            if prefs is None:
                continue
            nxt = next_run_at(prefs, now)
            self.store.set_next_run(
                job.user_id,
                next_run_at=nxt,
                note=f"Schedule recalculated for timezone {prefs.timezone}",
                now=now,
            )
            logger.info(
                "schedule_recalculated user_id=%s old=%s new=%s",
                job.user_id,
                job.next_run_at.isoformat(),
                nxt.isoformat(),
            )
            count += 1
        return count

    def force_run(self, user_id: int) -> bool:
        job = self._require_job(user_id)
        if job.status in (JOB_DISABLED, JOB_RUNNING):
            logger.info("force_run_refused user_id=%s status=%s", user_id, job.status)
            return False
        return self.dispatcher.dispatch(job)

    def reset_job(self, user_id: int) -> JobRecord:
        job = self._require_job(user_id)
        prefs = self.store.get_preferences(user_id)
        now = self.clock()
        nxt = next_run_at(prefs, now) if prefs is not None else now
        logger.info("job_admin_reset user_id=%s previous_status=%s", user_id, job.status)
        return self.store.schedule_job(user_id, next_run_at=nxt, now=now, note="Job reset by administrator")

    def simulate_failure(self, user_id: int, retry_count: int | None = None) -> JobRecord | None:
        job = self._require_job(user_id)
        if retry_count is not None:
            job = replace(job, retry_count=max(0, int(retry_count)))
        return self.executor.record_failure(job, SIMULATED_FAILURE)

    def stats(self) -> dict[str, Any]:
        out = self.store.job_stats(max_retries=self.settings.max_retries, now=self.clock())
        out["config"] = self.settings.as_dict()
        out["in_flight"] = sorted(self.tracker.snapshot().keys())
        out["outstanding"] = self.dispatcher.outstanding()
        out["last_tick"] = dict(self._last_tick)
        return out


def build_processor(store: JobStore, path: str | None = None) -> WorkloadProcessor:
    raw = (path if path is not None else os.environ.get("OUTREACH_WORKLOAD", "")).strip()
    delegate: ProcessorLike = load_processor(raw) if raw else UnconfiguredWorkload()
    return PreconditionGate(delegate, store.get_preferences)


def build_service(project_root: Path | None = None) -> OutreachSchedulerService:
    root = project_root or Path(os.environ.get("OUTREACH_PROJECT_ROOT", "") or Path.cwd())
    store = JobStore(root)
    return OutreachSchedulerService(store, build_processor(store), get_scheduler_settings(), project_root=root)


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[SCHED] %(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger("outreach")
    root.handlers[:] = [handler]
    root.setLevel((level or os.environ.get("OUTREACH_LOG_LEVEL", "INFO")).upper())
    root.propagate = False


def main() -> None:
    configure_logging()
    build_service().run_forever()


if __name__ == "__main__":
    main()
