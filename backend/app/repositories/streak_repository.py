from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database, as_int


@dataclass(frozen=True)
class StreakEntry:
    owner_id: str
    date: date
    watched_count: int


def upsert_activity(conn: sqlite3.Connection, owner_id: str, activity_date: date) -> StreakEntry:
    """Increment the owner's watched count for `activity_date` on an open connection."""
    now_iso = utc_now_iso()
    date_text = activity_date.isoformat()
    conn.execute(
        """
        INSERT INTO streak_activity (owner_id, date, videos_watched, created_at, updated_at)
        VALUES (?, ?, 1, ?, ?)
        ON CONFLICT(owner_id, date) DO UPDATE SET
            videos_watched = streak_activity.videos_watched + 1,
            updated_at = excluded.updated_at
        """,
        (owner_id, date_text, now_iso, now_iso),
    )
    row = conn.execute(
        "SELECT videos_watched FROM streak_activity WHERE owner_id = ? AND date = ?",
        (owner_id, date_text),
    ).fetchone()
    watched_count = as_int(row["videos_watched"]) if row is not None else 1
    return StreakEntry(owner_id=owner_id, date=activity_date, watched_count=watched_count)


class StreakRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def record_activity(self, owner_id: str, activity_date: date) -> StreakEntry:
        with self._db.connection() as conn:
            return upsert_activity(conn, owner_id, activity_date)

    def list_activity(self, owner_id: str, *, since: date | None = None) -> list[StreakEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT date, videos_watched
                FROM streak_activity
                WHERE owner_id = ? AND date >= ?
                ORDER BY date ASC
                """,
                (owner_id, since.isoformat() if since is not None else ""),
            ).fetchall()

        entries: list[StreakEntry] = []
        for row in rows:
            try:
                activity_date = date.fromisoformat(str(row["date"]))
            except ValueError:
                continue
            entries.append(
                StreakEntry(
                    owner_id=owner_id,
                    date=activity_date,
                    watched_count=as_int(row["videos_watched"]),
                )
            )
        return entries
