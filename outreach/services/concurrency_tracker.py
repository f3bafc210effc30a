from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta


logger = logging.getLogger("outreach.concurrency")


class ConcurrencyTracker:
    """
    In-process registry of users whose job is executing.

    Fast-path guard against dispatching the same user twice from this
    process. The persisted `running` status is what survives restarts.
    `reserve` returns the start instant as a token; `release` only drops
    the entry holding that token, so a run that outlived its staleness
    window cannot free a newer reservation for the same user.
    """

    def __init__(self, capacity: int, stale_after: timedelta = timedelta(minutes=5)) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self.stale_after = stale_after
        self._running: dict[int, datetime] = {}
        self._lock = threading.Lock()

    def reserve(self, user_id: int, now: datetime) -> datetime | None:
        with self._lock:
            if user_id in self._running or len(self._running) >= self.capacity:
                return None
            self._running[user_id] = now
            return now

    def release(self, user_id: int, token: datetime | None = None) -> bool:
        with self._lock:
            current = self._running.get(user_id)
            if current is None:
                return False
            if token is not None and current != token:
                return False
            del self._running[user_id]
            return True

    def contains(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._running

    def size(self) -> int:
        with self._lock:
            return len(self._running)

    def evict_stale(self, now: datetime) -> list[int]:
        cutoff = now - self.stale_after
        with self._lock:
            stale = [uid for uid, started in self._running.items() if started < cutoff]
            for uid in stale:
                del self._running[uid]
        for uid in stale:
            logger.warning("stale_entry_evicted user_id=%s", uid)
        return stale

    def snapshot(self) -> dict[int, datetime]:
        with self._lock:
            return dict(self._running)
