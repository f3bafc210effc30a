from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from outreach.core.preferences import SchedulePreferences
from outreach.db.models.outreach import JOB_DISABLED, JOB_FAILED, JOB_RUNNING, JOB_SCHEDULED, LOG_SUCCESS
from outreach.services.job_store import REQUIRED_TABLES, JobStore


T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class JobStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.store = JobStore(self.root, database_url=f"sqlite:///{(self.root / 'outreach.db').as_posix()}")

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def _failed(self, user_id: int, *, retry_count: int, next_retry_at: datetime | None, next_run: datetime) -> None:
        self.store.create_job(user_id, next_run_at=next_run, now=T0)
        self.assertIsNotNone(self.store.mark_running(user_id, now=T0))
        self.store.mark_failed(user_id, retry_count=retry_count, next_retry_at=next_retry_at, note="boom", now=T0)

    def test_schema_is_created(self) -> None:
        self.assertEqual(self.store.missing_tables(), [])
        self.assertEqual(len(REQUIRED_TABLES), 3)
        self.assertEqual(self.store.observability_info()["db_backend"], "sqlite")

    def test_relative_sqlite_url_resolves_against_project_root(self) -> None:
        other = JobStore(self.root, database_url="sqlite:///data/other.db")
        try:
            self.assertEqual(other.db_path, (self.root / "data" / "other.db").resolve())
            self.assertTrue(other.db_path.exists())
        finally:
            other.engine.dispose()

    def test_create_and_roundtrip_instants(self) -> None:
        nxt = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)
        rec = self.store.create_job(7, next_run_at=nxt, now=T0)
        got = self.store.get_job(7)
        self.assertEqual(got.id, rec.id)
        self.assertEqual(got.status, JOB_SCHEDULED)
        self.assertEqual(got.next_run_at, nxt)
        self.assertEqual(got.retry_count, 0)
        self.assertIsNone(self.store.get_job(8))

    def test_find_due_prioritises_retries_and_filters(self) -> None:
        self.store.create_job(1, next_run_at=T0 - timedelta(hours=2), now=T0)
        self.store.create_job(2, next_run_at=T0 - timedelta(hours=3), now=T0)
        self.store.create_job(3, next_run_at=T0 + timedelta(hours=1), now=T0)
        self._failed(4, retry_count=1, next_retry_at=T0 - timedelta(seconds=1), next_run=T0 - timedelta(hours=1))
        self._failed(5, retry_count=1, next_retry_at=T0 + timedelta(minutes=5), next_run=T0 - timedelta(hours=1))
        self._failed(6, retry_count=3, next_retry_at=None, next_run=T0 - timedelta(hours=1))
        self.store.create_job(7, next_run_at=T0 - timedelta(hours=5), now=T0)
        self.store.mark_disabled(7, now=T0)
        self.store.create_job(8, next_run_at=T0 - timedelta(hours=5), now=T0)
        self.store.mark_running(8, now=T0)

        due = self.store.find_due_jobs(limit=10, max_retries=3, now=T0)
        self.assertEqual([j.user_id for j in due], [4, 2, 1])

        limited = self.store.find_due_jobs(limit=2, max_retries=3, now=T0)
        self.assertEqual([j.user_id for j in limited], [4, 2])
        self.assertEqual(self.store.find_due_jobs(limit=0, max_retries=3, now=T0), [])

    def test_mark_running_is_conditional(self) -> None:
        self.store.create_job(1, next_run_at=T0, now=T0)
        first = self.store.mark_running(1, now=T0)
        self.assertEqual(first.status, JOB_RUNNING)
        self.assertTrue(first.last_error.startswith("Job started at"))
        self.assertIsNone(self.store.mark_running(1, now=T0))
        self.store.mark_disabled(1, now=T0)
        self.assertIsNone(self.store.mark_running(1, now=T0))

    def test_mark_running_rejects_outdated_snapshot(self) -> None:
        self.store.create_job(1, next_run_at=T0, now=T0)
        snapshot = self.store.get_job(1)
        self.store.mark_running(1, now=T0, expected=snapshot)
        self.store.mark_succeeded(1, next_run_at=T0 + timedelta(days=2), last_run_at=T0, note="ok", now=T0)

        self.assertIsNone(self.store.mark_running(1, now=T0, expected=snapshot))
        self.assertEqual(self.store.get_job(1).status, JOB_SCHEDULED)
        fresh = self.store.get_job(1)
        self.assertEqual(self.store.mark_running(1, now=T0, expected=fresh).status, JOB_RUNNING)

    def test_preferences_changed_since(self) -> None:
        self.assertFalse(self.store.preferences_changed_since(1, T0))
        self.store.save_preferences(SchedulePreferences.from_mapping(1, {}), now=T0)
        self.assertFalse(self.store.preferences_changed_since(1, T0))
        self.assertTrue(self.store.preferences_changed_since(1, T0 - timedelta(seconds=1)))

    def test_completion_does_not_override_disabled(self) -> None:
        self.store.create_job(1, next_run_at=T0, now=T0)
        self.store.mark_running(1, now=T0)
        self.store.mark_disabled(1, now=T0, note="off")
        self.assertIsNone(
            self.store.mark_succeeded(1, next_run_at=T0 + timedelta(days=1), last_run_at=T0, note="ok", now=T0)
        )
        self.assertIsNone(self.store.mark_failed(1, retry_count=1, next_retry_at=T0, note="x", now=T0))
        self.assertEqual(self.store.get_job(1).status, JOB_DISABLED)

    def test_schedule_upserts_and_clears_retry_state(self) -> None:
        created = self.store.schedule_job(9, next_run_at=T0, now=T0)
        self.assertEqual(created.status, JOB_SCHEDULED)
        self.store.mark_running(9, now=T0)
        self.store.mark_failed(9, retry_count=2, next_retry_at=T0 + timedelta(minutes=5), note="x", now=T0)
        again = self.store.schedule_job(9, next_run_at=T0 + timedelta(days=1), now=T0, note="reset")
        self.assertEqual(again.id, created.id)
        self.assertEqual(again.status, JOB_SCHEDULED)
        self.assertEqual(again.retry_count, 0)
        self.assertIsNone(again.next_retry_at)
        self.assertEqual(again.last_error, "reset")

    def test_stale_running_respects_cutoff(self) -> None:
        self.store.create_job(1, next_run_at=T0, now=T0)
        self.store.mark_running(1, now=T0)
        later = T0 + timedelta(minutes=3)
        self.assertEqual(self.store.find_stale_running(stale_after=timedelta(minutes=5), now=later), [])
        self.assertIsNone(self.store.reset_stale_running(1, cutoff=later - timedelta(minutes=5), note="x", now=later))

        much_later = T0 + timedelta(minutes=6)
        stale = self.store.find_stale_running(stale_after=timedelta(minutes=5), now=much_later)
        self.assertEqual([j.user_id for j in stale], [1])
        rec = self.store.reset_stale_running(1, cutoff=much_later - timedelta(minutes=5), note="x", now=much_later)
        self.assertEqual(rec.status, JOB_SCHEDULED)

    def test_logs_stats_and_delete(self) -> None:
        job = self.store.create_job(1, next_run_at=T0 + timedelta(minutes=30), now=T0)
        self._failed(2, retry_count=3, next_retry_at=None, next_run=T0 + timedelta(days=2))
        self._failed(3, retry_count=1, next_retry_at=T0, next_run=T0 + timedelta(days=2))
        for i in range(3):
            self.store.append_log(
                job_id=job.id,
                user_id=1,
                executed_at=T0 + timedelta(minutes=i),
                status=LOG_SUCCESS,
                processing_time_ms=5,
                batch_id=i,
                contacts_processed=2,
            )
        logs = self.store.list_logs(1, limit=2)
        self.assertEqual([r["batch_id"] for r in logs], [2, 1])

        stats = self.store.job_stats(max_retries=3, now=T0)
        counts = {row["status"]: row["count"] for row in stats["job_stats"]}
        self.assertEqual(counts, {JOB_SCHEDULED: 1, JOB_FAILED: 2})
        self.assertEqual(stats["permanently_failed"], 1)
        self.assertEqual(
            stats["retry_distribution"],
            [{"retry_count": 1, "count": 1}, {"retry_count": 3, "count": 1}],
        )
        self.assertEqual([j["user_id"] for j in stats["upcoming_jobs"]], [1])

        self.assertTrue(self.store.delete_job(1))
        self.assertIsNone(self.store.get_job(1))
        self.assertEqual(self.store.list_logs(1), [])
        self.assertFalse(self.store.delete_job(1))

    def test_preferences_roundtrip(self) -> None:
        prefs = SchedulePreferences.from_mapping(
            5,
            {"schedule_days": ["fri", "mon"], "schedule_time": "08:15", "timezone": "Europe/Berlin", "extra": {"k": 1}},
        )
        self.store.save_preferences(prefs, now=T0)
        got = self.store.get_preferences(5)
        self.assertEqual(got.day_names, ["mon", "fri"])
        self.assertEqual(got.time_text, "08:15")
        self.assertEqual(got.timezone, "Europe/Berlin")
        self.assertEqual(got.extra, {"k": 1})

        self.store.save_preferences(SchedulePreferences.from_mapping(6, {"enabled": False}), now=T0)
        self.assertEqual(self.store.list_enabled_user_ids(), [5])
        self.assertIsNone(self.store.get_preferences(99))


if __name__ == "__main__":
    unittest.main()
