from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database, as_int, as_text_or_none
from backend.app.repositories.streak_repository import StreakEntry, upsert_activity


@dataclass(frozen=True)
class ProgressRecord:
    owner_id: str
    video_id: str
    completed: bool
    completed_at: str | None
    bookmarked: bool
    notes: str
    updated_at: str


@dataclass(frozen=True)
class StudyVideoEntry:
    """A progress row joined with the video and course it belongs to."""

    video_id: str
    title: str
    thumbnail: str
    duration: str
    course_id: str
    course_title: str
    bookmarked: bool
    notes: str
    updated_at: str


_PROGRESS_COLUMNS = "owner_id, video_id, completed, completed_at, bookmarked, notes, updated_at"


class ProgressRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_progress(self, owner_id: str, video_id: str) -> ProgressRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_PROGRESS_COLUMNS}
                FROM user_progress
                WHERE owner_id = ? AND video_id = ?
                """,
                (owner_id, video_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_progress(row)

    def list_progress(self, owner_id: str) -> list[ProgressRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_PROGRESS_COLUMNS}
                FROM user_progress
                WHERE owner_id = ?
                """,
                (owner_id,),
            ).fetchall()
        return [_row_to_progress(row) for row in rows]

    def mark_completed(self, owner_id: str, video_id: str, *, completed_at: str) -> bool:
        """
        Flip `completed` to true and stamp `completed_at`.

        Returns False without touching the row when it is already completed.
        """
        with self._db.connection() as conn:
            return _flip_completed(conn, owner_id, video_id, completed_at=completed_at)

    def mark_completed_with_activity(
        self,
        owner_id: str,
        video_id: str,
        *,
        completed_at: str,
        activity_date: date,
    ) -> StreakEntry | None:
        """
        Complete the video and count it towards `activity_date` in one transaction.

        Returns the day's streak entry, or None when the video was already
        completed. A failed streak write rolls the completion back too.
        """
        with self._db.connection() as conn:
            if not _flip_completed(conn, owner_id, video_id, completed_at=completed_at):
                return None
            return upsert_activity(conn, owner_id, activity_date)

    def set_bookmarked(self, owner_id: str, video_id: str, *, bookmarked: bool) -> ProgressRecord:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO user_progress (
                    owner_id, video_id, completed, completed_at, bookmarked, notes, updated_at
                )
                VALUES (?, ?, 0, NULL, ?, '', ?)
                ON CONFLICT(owner_id, video_id) DO UPDATE SET
                    bookmarked = excluded.bookmarked,
                    updated_at = excluded.updated_at
                """,
                (owner_id, video_id, int(bookmarked), utc_now_iso()),
            )
            row = _select_progress(conn, owner_id, video_id)
        return _row_to_progress(row)

    def set_notes(self, owner_id: str, video_id: str, *, notes: str) -> ProgressRecord:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO user_progress (
                    owner_id, video_id, completed, completed_at, bookmarked, notes, updated_at
                )
                VALUES (?, ?, 0, NULL, 0, ?, ?)
                ON CONFLICT(owner_id, video_id) DO UPDATE SET
                    notes = excluded.notes,
                    updated_at = excluded.updated_at
                """,
                (owner_id, video_id, notes, utc_now_iso()),
            )
            row = _select_progress(conn, owner_id, video_id)
        return _row_to_progress(row)

    def count_completed(self, owner_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM user_progress WHERE owner_id = ? AND completed = 1",
                (owner_id,),
            ).fetchone()
        return as_int(row["total"]) if row is not None else 0

    def list_bookmarks(self, owner_id: str) -> list[StudyVideoEntry]:
        return self._list_joined(owner_id, where_sql="p.bookmarked = 1")

    def list_notes(self, owner_id: str) -> list[StudyVideoEntry]:
        entries = self._list_joined(owner_id, where_sql="TRIM(p.notes) != ''")
        return [entry for entry in entries if entry.notes.strip()]

    def _list_joined(self, owner_id: str, *, where_sql: str) -> list[StudyVideoEntry]:
        # A video can sit in several of the owner's courses; report the newest one.
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT
                    p.video_id,
                    p.bookmarked,
                    p.notes,
                    p.updated_at,
                    v.title,
                    v.thumbnail,
                    v.duration,
                    c.id AS course_id,
                    c.title AS course_title
                FROM user_progress p
                JOIN videos v ON v.video_id = p.video_id
                JOIN courses c ON c.id = v.course_id AND c.owner_id = p.owner_id
                WHERE p.owner_id = ? AND {where_sql}
                ORDER BY p.updated_at DESC, c.created_at DESC
                """,
                (owner_id,),
            ).fetchall()

        entries: list[StudyVideoEntry] = []
        seen: set[str] = set()
        for row in rows:
            video_id = str(row["video_id"])
            if video_id in seen:
                continue
            seen.add(video_id)
            entries.append(
                StudyVideoEntry(
                    video_id=video_id,
                    title=str(row["title"]),
                    thumbnail=str(row["thumbnail"]),
                    duration=str(row["duration"]),
                    course_id=str(row["course_id"]),
                    course_title=str(row["course_title"]),
                    bookmarked=as_int(row["bookmarked"]) == 1,
                    notes=str(row["notes"] or ""),
                    updated_at=str(row["updated_at"]),
                )
            )
        return entries


def _select_progress(conn: sqlite3.Connection, owner_id: str, video_id: str) -> sqlite3.Row:
    row = conn.execute(
        f"""
        SELECT {_PROGRESS_COLUMNS}
        FROM user_progress
        WHERE owner_id = ? AND video_id = ?
        """,
        (owner_id, video_id),
    ).fetchone()
    if row is None:
        raise sqlite3.DatabaseError(f"progress row missing after upsert video_id={video_id}")
    return row


def _row_to_progress(row: sqlite3.Row) -> ProgressRecord:
    return ProgressRecord(
        owner_id=str(row["owner_id"]),
        video_id=str(row["video_id"]),
        completed=as_int(row["completed"]) == 1,
        completed_at=as_text_or_none(row["completed_at"]),
        bookmarked=as_int(row["bookmarked"]) == 1,
        notes=str(row["notes"] or ""),
        updated_at=str(row["updated_at"]),
    )


def _flip_completed(
    conn: sqlite3.Connection,
    owner_id: str,
    video_id: str,
    *,
    completed_at: str,
) -> bool:
    cursor = conn.execute(
        """
        INSERT INTO user_progress (
            owner_id, video_id, completed, completed_at, bookmarked, notes, updated_at
        )
        VALUES (?, ?, 1, ?, 0, '', ?)
        ON CONFLICT(owner_id, video_id) DO UPDATE SET
            completed = 1,
            completed_at = excluded.completed_at,
            updated_at = excluded.updated_at
        WHERE user_progress.completed = 0
        """,
        (owner_id, video_id, completed_at, utc_now_iso()),
    )
    return cursor.rowcount > 0
