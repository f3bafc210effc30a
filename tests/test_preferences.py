from __future__ import annotations

import unittest
from datetime import datetime, time, timezone

from outreach.core.errors import SchedulerError
from outreach.core.preferences import SchedulePreferences


class SchedulePreferencesTests(unittest.TestCase):
    def test_defaults(self) -> None:
        p = SchedulePreferences.from_mapping(3, {})
        self.assertTrue(p.enabled)
        self.assertEqual(p.day_names, ["mon", "tue", "wed"])
        self.assertEqual(p.schedule_time, time(9, 0))
        self.assertEqual(p.timezone, "America/New_York")

    def test_full_names_and_csv(self) -> None:
        p = SchedulePreferences.from_mapping(3, {"schedule_days": "Friday, sun", "schedule_time": "7:05"})
        self.assertEqual(p.day_names, ["fri", "sun"])
        self.assertEqual(p.time_text, "07:05")

    def test_invalid_inputs(self) -> None:
        cases = [
            {"schedule_time": "25:00"},
            {"schedule_time": "noon"},
            {"schedule_days": ["funday"]},
            {"schedule_days": []},
        ]
        for data in cases:
            with self.subTest(data=data):
                with self.assertRaises(SchedulerError) as cm:
                    SchedulePreferences.from_mapping(1, data)
                self.assertEqual(cm.exception.err.code, "OUTREACH_001_INVALID_PREFERENCES")

    def test_disabled_may_have_no_days(self) -> None:
        p = SchedulePreferences.from_mapping(1, {"enabled": False, "schedule_days": []})
        self.assertFalse(p.enabled)
        self.assertEqual(p.day_names, [])

    def test_unknown_timezone(self) -> None:
        with self.assertRaises(SchedulerError) as cm:
            SchedulePreferences.from_mapping(1, {"timezone": "Nowhere/Town"})
        self.assertEqual(cm.exception.err.code, "OUTREACH_002_UNKNOWN_TIMEZONE")

    def test_vacation_window(self) -> None:
        p = SchedulePreferences.from_mapping(
            1,
            {
                "vacation_mode": True,
                "vacation_start": "2026-10-10T00:00:00Z",
                "vacation_end": "2026-10-20T00:00:00Z",
            },
        )
        self.assertTrue(p.on_vacation(datetime(2026, 10, 18, tzinfo=timezone.utc)))
        self.assertFalse(p.on_vacation(datetime(2026, 10, 21, tzinfo=timezone.utc)))
        self.assertEqual(p.to_dict()["vacation_end"], "2026-10-20T00:00:00+00:00")


if __name__ == "__main__":
    unittest.main()
