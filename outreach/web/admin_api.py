from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer
from pydantic import BaseModel, Field

from outreach.core.errors import (
    OUTREACH_001_INVALID_PREFERENCES,
    OUTREACH_002_UNKNOWN_TIMEZONE,
    OUTREACH_003_JOB_NOT_FOUND,
    OUTREACH_005_SCHEDULER_LOCKED,
    SchedulerError,
)
from outreach.core.preferences import SchedulePreferences
from outreach.workers.scheduler_worker import OutreachSchedulerService, build_service


_ERROR_STATUS = {
    OUTREACH_001_INVALID_PREFERENCES.code: 400,
    OUTREACH_002_UNKNOWN_TIMEZONE.code: 400,
    OUTREACH_003_JOB_NOT_FOUND.code: 404,
    OUTREACH_005_SCHEDULER_LOCKED.code: 409,
}


class PreferencesPayload(BaseModel):
    enabled: bool = True
    schedule_days: list[str] | str | None = None
    schedule_time: str | None = None
    timezone: str | None = None
    vacation_mode: bool = False
    vacation_start: str | None = None
    vacation_end: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class SimulateFailurePayload(BaseModel):
    retry_count: int | None = Field(default=None, ge=0)


basic = HTTPBasic(auto_error=False)
bearer = HTTPBearer(auto_error=False)


def _is_loopback(host: str | None) -> bool:
    return host in {"127.0.0.1", "::1", "localhost"}


def _auth_guard(
    request: Request,
    basic_cred: HTTPBasicCredentials | None = Depends(basic),
    bearer_cred: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> dict[str, str]:
    admin_token = os.environ.get("ADMIN_TOKEN", "").strip()
    admin_user = os.environ.get("ADMIN_USER", "").strip()
    admin_pass = os.environ.get("ADMIN_PASS", "").strip()

    if admin_token:
        if bearer_cred and bearer_cred.scheme.lower() == "bearer" and bearer_cred.credentials == admin_token:
            return {"auth": "bearer", "principal": "token-user"}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if admin_user and admin_pass:
        if basic_cred and basic_cred.username == admin_user and basic_cred.password == admin_pass:
            return {"auth": "basic", "principal": basic_cred.username}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: basic auth required",
            headers={"WWW-Authenticate": 'Basic realm="OutreachAdminAPI"'},
        )

    # No explicit credentials: only allow local requests.
    host = request.client.host if request.client else None
    if _is_loopback(host):
        return {"auth": "local", "principal": "localhost"}
    raise HTTPException(
        status_code=401,
        detail="unauthorized: configure ADMIN_TOKEN or ADMIN_USER/ADMIN_PASS",
        headers={"WWW-Authenticate": 'Basic realm="OutreachAdminAPI"'},
    )


def create_app(project_root: Path | None = None, service: OutreachSchedulerService | None = None) -> FastAPI:
    svc = service or build_service(project_root)
    store = svc.store
    root = svc.project_root
    app = FastAPI(title="Outreach Scheduler Admin API", version="1.0.0")
    app.state.service = svc

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        # No auth: used by container healthchecks.
        obs = store.observability_info()
        return {
            "ok": True,
            "service": "outreach-admin-api",
            "db_url": str(obs.get("db_url", "")),
            "db_backend": str(obs.get("db_backend", "")),
            "heartbeat": _read_heartbeat(),
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload = {"ok": False, "error": {"code": f"HTTP_{exc.status_code}", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(SchedulerError)
    async def _scheduler_error_handler(_: Request, exc: SchedulerError) -> JSONResponse:
        status = _ERROR_STATUS.get(exc.err.code, 503)
        payload = {"ok": False, "error": {"code": exc.err.code, "message": str(exc)}}
        return JSONResponse(status_code=status, content=payload)

    def _read_heartbeat() -> dict[str, Any] | None:
        hb_path = root / "logs" / "outreach_scheduler_heartbeat.json"
        try:
            if hb_path.exists():
                return json.loads(hb_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return None

    def _job_or_404(user_id: int) -> dict[str, Any]:
        status = svc.get_job_status(user_id)
        if status is None:
            raise SchedulerError(OUTREACH_003_JOB_NOT_FOUND, f"user_id={user_id}")
        return status

    @app.get("/admin/api/jobs/{user_id}")
    def job_status(user_id: int, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "job": _job_or_404(user_id)}

    @app.get("/admin/api/jobs/{user_id}/logs")
    def job_logs(user_id: int, limit: int = 50, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        limit = max(1, min(int(limit), 500))
        return {"ok": True, "user_id": user_id, "logs": store.list_logs(user_id, limit=limit)}

    @app.get("/admin/api/stats")
    def stats(_: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, **svc.stats()}

    @app.put("/admin/api/preferences/{user_id}")
    def save_preferences(
        user_id: int,
        payload: PreferencesPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        prefs = SchedulePreferences.from_mapping(user_id, payload.model_dump())
        saved = store.save_preferences(prefs, now=svc.clock())
        job = svc.update_user_preferences(saved)
        return {"ok": True, "preferences": saved.to_dict(), "job": job.to_dict() if job else None}

    @app.post("/admin/api/jobs/{user_id}/run")
    def force_run(user_id: int, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        dispatched = svc.force_run(user_id)
        return {"ok": True, "user_id": user_id, "dispatched": dispatched}

    @app.post("/admin/api/jobs/{user_id}/reset")
    def reset(user_id: int, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "job": svc.reset_job(user_id).to_dict()}

    @app.post("/admin/api/jobs/{user_id}/simulate-failure")
    def simulate_failure(
        user_id: int,
        payload: SimulateFailurePayload | None = None,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        if svc.settings.is_production:
            raise HTTPException(status_code=403, detail="forbidden: failure injection is disabled in production")
        retry_count = payload.retry_count if payload is not None else None
        job = svc.simulate_failure(user_id, retry_count=retry_count)
        return {"ok": True, "job": job.to_dict() if job else None}

    @app.delete("/admin/api/jobs/{user_id}")
    def delete_job(user_id: int, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        if not store.delete_job(user_id):
            raise SchedulerError(OUTREACH_003_JOB_NOT_FOUND, f"user_id={user_id}")
        return {"ok": True, "user_id": user_id, "deleted": True}

    return app


def run_server() -> None:
    host = os.environ.get("ADMIN_API_HOST", "127.0.0.1")
    port = int(os.environ.get("ADMIN_API_PORT", "8790"))
    uvicorn.run("outreach.web.admin_api:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    run_server()
