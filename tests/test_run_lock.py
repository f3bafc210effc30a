from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from outreach.services.run_lock import RunLockError, acquire_run_lock


class RunLockTests(unittest.TestCase):
    def test_lock_exclusive_and_meta_written(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "data" / "outreach_scheduler.lock"
            with acquire_run_lock(lock_path, owner="outreach-scheduler") as meta:
                self.assertEqual(meta["owner"], "outreach-scheduler")
                meta_file = Path(str(lock_path) + ".meta.json")
                self.assertTrue(meta_file.exists())
                obj = json.loads(meta_file.read_text(encoding="utf-8"))
                self.assertEqual(obj["owner"], "outreach-scheduler")

                with self.assertRaises(RunLockError) as cm:
                    with acquire_run_lock(lock_path, owner="second"):
                        pass
                self.assertEqual(cm.exception.err.code, "OUTREACH_005_SCHEDULER_LOCKED")

            # Released on exit.
            with acquire_run_lock(lock_path, owner="third") as meta:
                self.assertEqual(meta["owner"], "third")


if __name__ == "__main__":
    unittest.main()
