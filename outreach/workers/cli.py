from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

from outreach.core.errors import SchedulerError


def _get_opt(argv: list[str], key: str) -> str | None:
    if key not in argv:
        return None
    idx = argv.index(key)
    if idx + 1 >= len(argv):
        return None
    return argv[idx + 1]


def _project_root() -> Path:
    return Path(os.environ.get("OUTREACH_PROJECT_ROOT", "") or Path.cwd())


def _user_opt(argv: list[str]) -> int | None:
    raw = _get_opt(argv, "--user")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _service():
    # Imported lazily so `--help`-style calls do not open the database.
    from outreach.workers.scheduler_worker import build_service

    return build_service(_project_root())


def _usage_error(msg: str) -> int:
    print(json.dumps({"ok": False, "error": msg}, ensure_ascii=False), file=sys.stderr)
    return 2


def cmd_scheduler_run(argv: list[str]) -> int:
    from outreach.workers.scheduler_worker import configure_logging

    configure_logging()
    _service().run_forever()
    return 0


def cmd_jobs_status(argv: list[str]) -> int:
    user_id = _user_opt(argv)
    if user_id is None:
        return _usage_error("missing --user <id>")
    status = _service().get_job_status(user_id)
    if status is None:
        _print({"ok": False, "user_id": user_id, "error": "job not found"})
        return 3
    _print({"ok": True, "job": status})
    return 0


def cmd_jobs_stats(argv: list[str]) -> int:
    _print({"ok": True, **_service().stats()})
    return 0


def cmd_jobs_recalculate(argv: list[str]) -> int:
    updated = _service().recalculate_all_schedules()
    _print({"ok": True, "updated": updated})
    return 0


def cmd_jobs_reset(argv: list[str]) -> int:
    user_id = _user_opt(argv)
    if user_id is None:
        return _usage_error("missing --user <id>")
    job = _service().reset_job(user_id)
    _print({"ok": True, "job": job.to_dict()})
    return 0


def cmd_jobs_simulate_failure(argv: list[str]) -> int:
    user_id = _user_opt(argv)
    if user_id is None:
        return _usage_error("missing --user <id>")
    raw_retry = _get_opt(argv, "--retry-count")
    retry_count: int | None = None
    if raw_retry is not None:
        try:
            retry_count = int(raw_retry)
        except ValueError:
            return _usage_error(f"invalid --retry-count: {raw_retry}")
    svc = _service()
    if svc.settings.is_production:
        _print({"ok": False, "error": "failure injection is disabled in production"})
        return 4
    job = svc.simulate_failure(user_id, retry_count=retry_count)
    _print({"ok": True, "job": job.to_dict() if job else None})
    return 0


def cmd_jobs_logs(argv: list[str]) -> int:
    user_id = _user_opt(argv)
    if user_id is None:
        return _usage_error("missing --user <id>")
    try:
        limit = int(_get_opt(argv, "--limit") or "20")
    except ValueError:
        return _usage_error("invalid --limit")
    logs = _service().store.list_logs(user_id, limit=limit)
    _print({"ok": True, "user_id": user_id, "logs": logs})
    return 0


def cmd_db_upgrade(argv: list[str]) -> int:
    from outreach.services.job_store import JobStore

    store = JobStore(_project_root(), auto_init=False)
    store.ensure_schema()
    _print({"ok": True, **store.observability_info(), "missing_tables": store.missing_tables()})
    return 0


COMMANDS = {
    "scheduler:run": cmd_scheduler_run,
    "jobs:status": cmd_jobs_status,
    "jobs:stats": cmd_jobs_stats,
    "jobs:recalculate": cmd_jobs_recalculate,
    "jobs:reset": cmd_jobs_reset,
    "jobs:simulate-failure": cmd_jobs_simulate_failure,
    "jobs:logs": cmd_jobs_logs,
    "db:upgrade": cmd_db_upgrade,
}


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print(
            "Usage: python -m outreach.workers.cli " + "|".join(COMMANDS) + " [options]",
            file=sys.stderr,
        )
        return 2

    cmd = argv[0]
    tail = argv[1:]
    handler = COMMANDS.get(cmd)
    if handler is None:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        return 2
    try:
        return handler(tail)
    except SchedulerError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "error": str(e)}, ensure_ascii=False))
        return 10
    except Exception as e:  # pragma: no cover - defensive
        print(
            json.dumps(
                {"ok": False, "error_code": "OUTREACH_999_UNEXPECTED", "error": str(e)},
                ensure_ascii=False,
            )
        )
        return 12


if __name__ == "__main__":
    raise SystemExit(main())
