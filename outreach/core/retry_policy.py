from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from outreach.core.settings import DEFAULT_RETRY_DELAYS, SchedulerSettings


@dataclass(frozen=True)
class RetryPolicy:
    delays_seconds: tuple[int, ...] = DEFAULT_RETRY_DELAYS
    max_retries: int = 3

    @classmethod
    def from_settings(cls, settings: SchedulerSettings) -> "RetryPolicy":
        return cls(delays_seconds=tuple(settings.retry_delays_seconds), max_retries=int(settings.max_retries))

    def delay_for(self, attempt: int) -> timedelta:
        """Delay before retry `attempt` (1-based); the last table entry repeats."""
        if not self.delays_seconds:
            return timedelta(0)
        idx = min(max(int(attempt), 1), len(self.delays_seconds)) - 1
        return timedelta(seconds=self.delays_seconds[idx])

    def exhausted(self, retry_count: int) -> bool:
        return int(retry_count) >= self.max_retries

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime | None:
        if self.exhausted(retry_count):
            return None
        return now + self.delay_for(retry_count)
