from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url


DEFAULT_DATABASE_URL = "sqlite:///data/outreach.db"


@dataclass(frozen=True)
class DBSettings:
    database_url: str
    echo: bool = False


def get_db_settings() -> DBSettings:
    """`DATABASE_URL` (SQLite under data/ when unset) and `DB_ECHO`."""
    url = (os.environ.get("DATABASE_URL") or "").strip() or DEFAULT_DATABASE_URL
    echo = (os.environ.get("DB_ECHO") or "").strip().lower() in {"1", "true", "yes", "on"}
    return DBSettings(database_url=url, echo=echo)


def redact_database_url(url: str) -> str:
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        return make_url(raw).render_as_string(hide_password=True)
    except Exception:
        return raw


def sqlite_file(url: str, project_root: Path) -> Path | None:
    """Database file behind a SQLite url, relative paths taken from the project root."""
    try:
        parsed = make_url(url)
    except Exception:
        return None
    if not parsed.drivername.startswith("sqlite"):
        return None
    name = parsed.database or ""
    if not name or name == ":memory:":
        return None
    p = Path(name)
    return p if p.is_absolute() else (project_root / p).resolve()


def make_engine(url: str, *, echo: bool = False) -> Engine:
    backend = make_url(url).get_backend_name()
    if backend == "postgresql":
        return create_engine(url, echo=echo, pool_pre_ping=True, pool_size=5, max_overflow=10)
    if backend == "sqlite":
        # Executor threads share the engine; writers wait on the file lock instead of failing.
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, echo=echo)
