from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from outreach.core.retry_policy import RetryPolicy
from outreach.core.settings import SchedulerSettings


class RetryPolicyTests(unittest.TestCase):
    def test_delay_table_and_tail(self) -> None:
        p = RetryPolicy()
        self.assertEqual(p.delay_for(1), timedelta(seconds=60))
        self.assertEqual(p.delay_for(2), timedelta(seconds=300))
        self.assertEqual(p.delay_for(3), timedelta(seconds=900))
        self.assertEqual(p.delay_for(7), timedelta(seconds=900))

    def test_exhaustion_has_no_next_retry(self) -> None:
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        p = RetryPolicy(max_retries=3)
        self.assertEqual(p.next_retry_at(1, now), now + timedelta(seconds=60))
        self.assertEqual(p.next_retry_at(2, now), now + timedelta(seconds=300))
        self.assertFalse(p.exhausted(2))
        self.assertTrue(p.exhausted(3))
        self.assertIsNone(p.next_retry_at(3, now))

    def test_from_settings(self) -> None:
        p = RetryPolicy.from_settings(SchedulerSettings(max_retries=5, retry_delays_seconds=(10, 20)))
        self.assertEqual(p.max_retries, 5)
        self.assertEqual(p.delay_for(4), timedelta(seconds=20))


if __name__ == "__main__":
    unittest.main()
