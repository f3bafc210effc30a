from __future__ import annotations

import json
import os
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from outreach.core.errors import OUTREACH_005_SCHEDULER_LOCKED, SchedulerError


class RunLockError(SchedulerError):
    def __init__(self, detail: str) -> None:
        super().__init__(OUTREACH_005_SCHEDULER_LOCKED, detail)


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@contextmanager
def acquire_run_lock(lock_path: Path, *, owner: str) -> Iterator[dict[str, Any]]:
    """
    Exclusive, non-blocking process lock for the scheduler loop.

    Uses fcntl.flock, which the OS drops when the holder dies, so a crash
    never leaves the lock behind. A `*.meta.json` sidecar names the holder
    for operators.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    meta_path = lock_path.with_suffix(lock_path.suffix + ".meta.json")

    try:
        import fcntl  # type: ignore
    except ImportError as e:  # pragma: no cover
        raise RunLockError(f"fcntl not available: {e}") from e

    f = lock_path.open("a+", encoding="utf-8")
    try:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                meta = {}
            raise RunLockError(f"lock busy: {lock_path} meta={json.dumps(meta, ensure_ascii=False)}") from e

        meta = {
            "owner": owner,
            "holder": _holder_id(),
            "acquired_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        meta_path.write_text(json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8")
        try:
            yield meta
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    finally:
        f.close()
