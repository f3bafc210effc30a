from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml


DEFAULT_RETRY_DELAYS = (60, 300, 900)


@dataclass(frozen=True)
class SchedulerSettings:
    poll_interval_seconds: float = 30.0
    batch_size: int = 15
    max_concurrent: int = 10
    max_retries: int = 3
    retry_delays_seconds: tuple[int, ...] = DEFAULT_RETRY_DELAYS
    stale_after_seconds: int = 300
    environment: str = "development"

    def as_dict(self) -> dict[str, Any]:
        return {
            "poll_interval_seconds": self.poll_interval_seconds,
            "batch_size": self.batch_size,
            "max_concurrent": self.max_concurrent,
            "max_retries": self.max_retries,
            "retry_delays_seconds": list(self.retry_delays_seconds),
            "stale_after_seconds": self.stale_after_seconds,
            "environment": self.environment,
        }

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def _positive_int(raw: Any, default: int) -> int:
    try:
        v = int(str(raw).strip())
    except Exception:
        return default
    return v if v > 0 else default


def _positive_float(raw: Any, default: float) -> float:
    try:
        v = float(str(raw).strip())
    except Exception:
        return default
    return v if v > 0 else default


def _delays(raw: Any, default: tuple[int, ...]) -> tuple[int, ...]:
    if isinstance(raw, (list, tuple)):
        parts = [str(x) for x in raw]
    else:
        parts = [p for p in str(raw or "").split(",")]
    out: list[int] = []
    for p in parts:
        try:
            v = int(p.strip())
        except Exception:
            return default
        if v < 0:
            return default
        out.append(v)
    return tuple(out) if out else default


def _load_yaml(path: Path) -> dict[str, Any]:
    obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise RuntimeError(f"invalid yaml: {path}")
    section = obj.get("scheduler", obj)
    return section if isinstance(section, dict) else {}


def _apply(base: SchedulerSettings, values: Mapping[str, Any]) -> SchedulerSettings:
    changes: dict[str, Any] = {}
    if values.get("poll_interval_seconds") is not None:
        changes["poll_interval_seconds"] = _positive_float(values["poll_interval_seconds"], base.poll_interval_seconds)
    if values.get("batch_size") is not None:
        changes["batch_size"] = _positive_int(values["batch_size"], base.batch_size)
    if values.get("max_concurrent") is not None:
        changes["max_concurrent"] = _positive_int(values["max_concurrent"], base.max_concurrent)
    if values.get("max_retries") is not None:
        changes["max_retries"] = _positive_int(values["max_retries"], base.max_retries)
    if values.get("retry_delays_seconds") is not None:
        changes["retry_delays_seconds"] = _delays(values["retry_delays_seconds"], base.retry_delays_seconds)
    if values.get("stale_after_seconds") is not None:
        changes["stale_after_seconds"] = _positive_int(values["stale_after_seconds"], base.stale_after_seconds)
    if values.get("environment") is not None:
        changes["environment"] = str(values["environment"]).strip().lower() or base.environment
    return replace(base, **changes)


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    poll_ms = (env.get("OUTREACH_POLL_INTERVAL") or "").strip()
    if poll_ms:
        try:
            values["poll_interval_seconds"] = float(poll_ms) / 1000.0
        except ValueError:
            pass
    mapping = {
        "OUTREACH_BATCH_SIZE": "batch_size",
        "OUTREACH_MAX_CONCURRENT": "max_concurrent",
        "OUTREACH_MAX_RETRIES": "max_retries",
        "OUTREACH_RETRY_DELAYS": "retry_delays_seconds",
        "OUTREACH_STALE_SECONDS": "stale_after_seconds",
        "OUTREACH_ENV": "environment",
    }
    for key, field in mapping.items():
        raw = (env.get(key) or "").strip()
        if raw:
            values[field] = raw
    return values


def get_scheduler_settings(env: Mapping[str, str] | None = None) -> SchedulerSettings:
    """
    Resolve scheduler settings.

    Precedence: built-in defaults, then the YAML file named by
    OUTREACH_CONFIG_PATH (top-level keys or a `scheduler:` section),
    then OUTREACH_* environment variables.
    """
    env = os.environ if env is None else env
    settings = SchedulerSettings()
    config_path = (env.get("OUTREACH_CONFIG_PATH") or "").strip()
    if config_path:
        settings = _apply(settings, _load_yaml(Path(config_path)))
    return _apply(settings, _from_env(env))
