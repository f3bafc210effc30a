from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from outreach.core.preferences import SchedulePreferences
from outreach.core.retry_policy import RetryPolicy
from outreach.db.models.outreach import (
    JOB_DISABLED,
    JOB_FAILED,
    JOB_RUNNING,
    JOB_SCHEDULED,
    LOG_FAILED,
    LOG_FAILED_PERMANENT,
    LOG_SUCCESS,
)
from outreach.services.concurrency_tracker import ConcurrencyTracker
from outreach.services.job_executor import PREFERENCES_CHANGED_NOTE, JobExecutor
from outreach.services.job_store import JobStore
from outreach.services.workload import Outcome, PreconditionGate


T0 = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)  # Monday 09:00 in New York


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class JobExecutorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.store = JobStore(self.root, database_url=f"sqlite:///{(self.root / 'outreach.db').as_posix()}")
        self.clock = FakeClock(T0)
        self.tracker = ConcurrencyTracker(4)
        self.store.save_preferences(
            SchedulePreferences.from_mapping(1, {"schedule_days": ["mon", "wed"], "timezone": "America/New_York"}),
            now=T0,
        )
        self.store.create_job(1, next_run_at=T0, now=T0)

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def _executor(self, processor) -> JobExecutor:
        return JobExecutor(self.store, self.tracker, processor, RetryPolicy(), clock=self.clock)

    def _run(self, executor: JobExecutor):
        job = self.store.get_job(1)
        slot = self.tracker.reserve(1, self.clock())
        self.assertIsNotNone(slot)
        out = executor.execute(job, slot)
        self.assertFalse(self.tracker.contains(1))
        return out

    def test_success_reschedules_and_logs(self) -> None:
        self._run(self._executor(lambda user_id: Outcome.success(batch_id=7, contacts_processed=3)))
        job = self.store.get_job(1)
        self.assertEqual(job.status, JOB_SCHEDULED)
        self.assertEqual(job.last_run_at, T0)
        # Next slot is Wednesday 09:00 EDT.
        self.assertEqual(job.next_run_at, datetime(2026, 10, 21, 13, 0, tzinfo=timezone.utc))
        self.assertEqual(job.last_error, "Last run successful: batch 7 with 3 contacts")
        logs = self.store.list_logs(1)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["status"], LOG_SUCCESS)
        self.assertEqual(logs[0]["batch_id"], 7)
        self.assertEqual(logs[0]["contacts_processed"], 3)

    def test_none_result_counts_as_success(self) -> None:
        self._run(self._executor(lambda user_id: None))
        self.assertEqual(self.store.get_job(1).status, JOB_SCHEDULED)
        self.assertEqual(self.store.list_logs(1)[0]["status"], LOG_SUCCESS)

    def test_soft_stop_is_a_success(self) -> None:
        self._run(self._executor(lambda user_id: Outcome.soft_stop("Weekly limit reached")))
        job = self.store.get_job(1)
        self.assertEqual(job.status, JOB_SCHEDULED)
        self.assertEqual(job.last_error, "Weekly limit reached")
        log = self.store.list_logs(1)[0]
        self.assertEqual(log["status"], LOG_SUCCESS)
        self.assertEqual(log["error_message"], "Weekly limit reached")

    def test_failures_back_off_then_become_permanent(self) -> None:
        def boom(user_id: int) -> Outcome:
            raise RuntimeError("smtp down")

        ex = self._executor(boom)

        self._run(ex)
        job = self.store.get_job(1)
        self.assertEqual((job.status, job.retry_count), (JOB_FAILED, 1))
        self.assertGreaterEqual(job.next_retry_at, self.clock() + timedelta(seconds=60))
        self.assertEqual(job.last_error, "smtp down")

        self.clock.advance(seconds=61)
        self._run(ex)
        job = self.store.get_job(1)
        self.assertEqual(job.retry_count, 2)
        self.assertGreaterEqual(job.next_retry_at, self.clock() + timedelta(seconds=300))

        self.clock.advance(seconds=301)
        self._run(ex)
        job = self.store.get_job(1)
        self.assertEqual((job.status, job.retry_count), (JOB_FAILED, 3))
        self.assertIsNone(job.next_retry_at)
        self.assertTrue(job.last_error.startswith("Failed after 3 retries"))
        self.assertEqual(
            [r["status"] for r in self.store.list_logs(1)],
            [LOG_FAILED_PERMANENT, LOG_FAILED, LOG_FAILED],
        )
        self.clock.advance(days=30)
        self.assertEqual(self.store.find_due_jobs(limit=10, max_retries=3, now=self.clock()), [])

    def test_preferences_saved_mid_run_clear_retry_state_on_failure(self) -> None:
        self.store.mark_running(1, now=T0)
        self.store.mark_failed(1, retry_count=2, next_retry_at=T0, note="x", now=T0)

        def edit_then_fail(user_id: int) -> Outcome:
            self.clock.advance(minutes=1)
            self.store.save_preferences(
                SchedulePreferences.from_mapping(user_id, {"schedule_days": ["fri"], "schedule_time": "10:00"}),
                now=self.clock(),
            )
            raise RuntimeError("smtp down")

        self._run(self._executor(edit_then_fail))
        job = self.store.get_job(1)
        self.assertEqual((job.status, job.retry_count), (JOB_SCHEDULED, 0))
        self.assertIsNone(job.next_retry_at)
        self.assertEqual(job.next_run_at, datetime(2026, 10, 23, 14, 0, tzinfo=timezone.utc))
        self.assertEqual(job.last_error, PREFERENCES_CHANGED_NOTE)
        self.assertEqual([r["status"] for r in self.store.list_logs(1)], [LOG_FAILED_PERMANENT])

    def test_failure_outcome_without_exception(self) -> None:
        self._run(self._executor(lambda user_id: Outcome.failure("quota exceeded")))
        job = self.store.get_job(1)
        self.assertEqual(job.status, JOB_FAILED)
        self.assertEqual(self.store.list_logs(1)[0]["error_message"], "quota exceeded")

    def test_success_clears_retry_state(self) -> None:
        calls = {"n": 0}

        def flaky(user_id: int) -> Outcome:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("transient")
            return Outcome.success(batch_id=1, contacts_processed=1)

        ex = self._executor(flaky)
        self._run(ex)
        self.assertEqual(self.store.get_job(1).retry_count, 1)
        self.clock.advance(seconds=61)
        self._run(ex)
        job = self.store.get_job(1)
        self.assertEqual(job.status, JOB_SCHEDULED)
        self.assertEqual(job.retry_count, 0)
        self.assertIsNone(job.next_retry_at)

    def test_disable_while_running_is_not_rescheduled(self) -> None:
        def disables_midway(user_id: int) -> Outcome:
            prefs = SchedulePreferences.from_mapping(user_id, {"enabled": False})
            self.store.save_preferences(prefs, now=self.clock())
            self.store.mark_disabled(user_id, now=self.clock())
            return Outcome.success(batch_id=2, contacts_processed=5)

        self._run(self._executor(disables_midway))
        job = self.store.get_job(1)
        self.assertEqual(job.status, JOB_DISABLED)
        self.assertIn("Outreach disabled", job.last_error)
        self.assertEqual(self.store.list_logs(1)[0]["status"], LOG_SUCCESS)

    def test_gate_soft_stops_on_vacation(self) -> None:
        self.store.save_preferences(
            SchedulePreferences.from_mapping(
                1,
                {
                    "schedule_days": ["mon"],
                    "vacation_mode": True,
                    "vacation_start": "2026-10-01T00:00:00Z",
                    "vacation_end": "2026-10-31T00:00:00Z",
                },
            ),
            now=T0,
        )
        calls: list[int] = []
        gate = PreconditionGate(lambda uid: calls.append(uid), self.store.get_preferences, clock=self.clock)
        self._run(self._executor(gate))
        self.assertEqual(calls, [])
        job = self.store.get_job(1)
        self.assertEqual(job.status, JOB_SCHEDULED)
        self.assertEqual(job.last_error, "User on vacation until 2026-10-31")

    def test_store_error_still_releases_slot(self) -> None:
        ex = self._executor(lambda user_id: Outcome.success())
        with patch.object(self.store, "append_log", side_effect=RuntimeError("db down")):
            self.assertIsNone(self._run(ex))
        # Left for the recovery sweep.
        self.assertEqual(self.store.get_job(1).status, JOB_RUNNING)

    def test_not_runnable_is_a_noop(self) -> None:
        self.store.mark_running(1, now=T0)
        calls: list[int] = []
        self.assertIsNone(self._run(self._executor(lambda uid: calls.append(uid))))
        self.assertEqual(calls, [])
        self.assertEqual(self.store.list_logs(1), [])


if __name__ == "__main__":
    unittest.main()
