from __future__ import annotations

import builtins
import importlib
import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from outreach.core.preferences import SchedulePreferences
from outreach.services.job_store import JobStore


T0 = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)


def _set_env(values: dict[str, str]) -> dict[str, str | None]:
    old = {k: os.environ.get(k) for k in values}
    os.environ.update(values)
    return old


def _restore_env(old: dict[str, str | None]) -> None:
    for k, v in old.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.db_url = f"sqlite:///{(self.root / 'outreach.db').as_posix()}"
        self._old_env = _set_env(
            {
                "OUTREACH_PROJECT_ROOT": str(self.root),
                "DATABASE_URL": self.db_url,
                "OUTREACH_ENV": "development",
            }
        )
        self.cli = importlib.import_module("outreach.workers.cli")

    def tearDown(self) -> None:
        _restore_env(self._old_env)
        self._td.cleanup()

    def _run(self, *argv: str) -> tuple[int, dict]:
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            rc = self.cli.main(list(argv))
        text = out.getvalue().strip()
        return rc, (json.loads(text) if text else {})

    def _seed(self, user_id: int) -> None:
        store = JobStore(self.root, database_url=self.db_url)
        store.save_preferences(SchedulePreferences.from_mapping(user_id, {"schedule_days": ["mon"]}), now=T0)
        store.create_job(user_id, next_run_at=T0, now=T0)
        store.engine.dispose()

    def test_import_cli_without_apscheduler_side_effect(self) -> None:
        original_import = builtins.__import__

        def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
            if name.startswith("apscheduler"):
                raise AssertionError("apscheduler should not be imported when importing cli module")
            return original_import(name, globals, locals, fromlist, level)

        with patch("builtins.__import__", side_effect=guarded_import):
            cli = importlib.import_module("outreach.workers.cli")
            importlib.reload(cli)
            importlib.import_module("outreach.workers.scheduler_worker")

    def test_usage_errors(self) -> None:
        self.assertEqual(self._run()[0], 2)
        self.assertEqual(self._run("jobs:nope")[0], 2)
        self.assertEqual(self._run("jobs:status")[0], 2)
        self.assertEqual(self._run("jobs:reset", "--user", "abc")[0], 2)

    def test_db_upgrade_then_status(self) -> None:
        rc, body = self._run("db:upgrade")
        self.assertEqual(rc, 0)
        self.assertEqual(body["missing_tables"], [])
        rc, body = self._run("jobs:status", "--user", "5")
        self.assertEqual(rc, 3)
        self.assertFalse(body["ok"])

    def test_reset_and_simulate_failure(self) -> None:
        self._seed(5)
        rc, body = self._run("jobs:simulate-failure", "--user", "5", "--retry-count", "1")
        self.assertEqual(rc, 0)
        self.assertEqual(body["job"]["retry_count"], 2)

        rc, body = self._run("jobs:reset", "--user", "5")
        self.assertEqual(rc, 0)
        self.assertEqual(body["job"]["retry_count"], 0)

        rc, body = self._run("jobs:logs", "--user", "5")
        self.assertEqual(rc, 0)
        self.assertEqual(body["logs"][0]["status"], "failed")

    def test_scheduler_error_maps_to_exit_10(self) -> None:
        self._run("db:upgrade")
        rc, body = self._run("jobs:reset", "--user", "42")
        self.assertEqual(rc, 10)
        self.assertEqual(body["error_code"], "OUTREACH_003_JOB_NOT_FOUND")

    def test_stats_and_recalculate(self) -> None:
        self._seed(5)
        rc, body = self._run("jobs:stats")
        self.assertEqual(rc, 0)
        self.assertEqual(body["config"]["max_retries"], 3)
        rc, body = self._run("jobs:recalculate")
        self.assertEqual(rc, 0)
        self.assertEqual(body["updated"], 1)

    def test_simulate_failure_refused_in_production(self) -> None:
        self._seed(5)
        os.environ["OUTREACH_ENV"] = "production"
        rc, body = self._run("jobs:simulate-failure", "--user", "5")
        self.assertEqual(rc, 4)
        self.assertFalse(body["ok"])


if __name__ == "__main__":
    unittest.main()
