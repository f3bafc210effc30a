from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class JSONText(TypeDecorator):
    """
    JSON payload column: JSONB on PostgreSQL, serialized TEXT elsewhere.
    """

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value: Any, dialect):  # type: ignore[override]
        if dialect.name == "postgresql" or value is None:
            return value
        return json.dumps(value, ensure_ascii=False, sort_keys=True)

    def process_result_value(self, value: Any, dialect):  # type: ignore[override]
        if value is None or isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except ValueError:
            return value


def utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class UTCText(TypeDecorator):
    """
    Timezone-aware instant stored as fixed-width UTC ISO-8601 text.

    Every value is normalized to `YYYY-MM-DDTHH:MM:SS.ffffff+00:00`, so
    string comparison in SQL orders the same way as the instants do.
    Naive datetimes are taken to be UTC.
    """

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return None
        if isinstance(value, datetime):
            return utc_iso(value)
        return utc_iso(datetime.fromisoformat(str(value).replace("Z", "+00:00")))

    def process_result_value(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return None
        if isinstance(value, datetime):
            dt = value
        else:
            dt = datetime.fromisoformat(str(value))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
