from outreach.db.base import Base
from outreach.db.engine import DBSettings, get_db_settings, make_engine

__all__ = [
    "Base",
    "DBSettings",
    "get_db_settings",
    "make_engine",
]
