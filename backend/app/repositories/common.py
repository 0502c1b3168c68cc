from __future__ import annotations

from datetime import UTC, date, datetime
from uuid import uuid4
from zoneinfo import ZoneInfo


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def local_today(timezone: str) -> date:
    return datetime.now(ZoneInfo(timezone)).date()


def new_record_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"
