from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from backend.app.repositories.common import new_record_id, utc_now_iso
from backend.app.repositories.database import Database, as_int, as_text_or_none


@dataclass(frozen=True)
class CourseRecord:
    id: str
    owner_id: str
    playlist_id: str
    title: str
    thumbnail: str
    video_count: int
    created_at: str


@dataclass(frozen=True)
class VideoRecord:
    id: str
    course_id: str
    video_id: str
    title: str
    thumbnail: str
    duration: str
    position: int


@dataclass(frozen=True)
class NewVideo:
    video_id: str
    title: str
    thumbnail: str
    duration: str
    position: int


class CourseRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def count_courses(self, owner_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM courses WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        return as_int(row["total"]) if row is not None else 0

    def list_courses(self, owner_id: str) -> list[CourseRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, owner_id, playlist_id, title, thumbnail, video_count, created_at
                FROM courses
                WHERE owner_id = ?
                ORDER BY created_at DESC
                """,
                (owner_id,),
            ).fetchall()
        return [_row_to_course(row) for row in rows]

    def get_course(self, owner_id: str, course_id: str) -> CourseRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, owner_id, playlist_id, title, thumbnail, video_count, created_at
                FROM courses
                WHERE owner_id = ? AND id = ?
                """,
                (owner_id, course_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_course(row)

    def find_by_playlist(self, owner_id: str, playlist_id: str) -> CourseRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, owner_id, playlist_id, title, thumbnail, video_count, created_at
                FROM courses
                WHERE owner_id = ? AND playlist_id = ?
                """,
                (owner_id, playlist_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_course(row)

    def create_course(
        self,
        *,
        owner_id: str,
        playlist_id: str,
        title: str,
        thumbnail: str,
        video_count: int,
        max_courses: int,
    ) -> CourseRecord | None:
        """
        Insert a course only while the owner holds fewer than `max_courses`.

        Returns `None` when the quota is already full. A duplicate
        owner/playlist pair raises `sqlite3.IntegrityError`.
        """
        course_id = new_record_id("course")
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO courses (
                    id, owner_id, playlist_id, title, thumbnail, video_count,
                    created_at, updated_at
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?
                WHERE (SELECT COUNT(*) FROM courses WHERE owner_id = ?) < ?
                """,
                (
                    course_id,
                    owner_id,
                    playlist_id,
                    title,
                    thumbnail,
                    video_count,
                    now_iso,
                    now_iso,
                    owner_id,
                    max_courses,
                ),
            )
            if cursor.rowcount == 0:
                return None

        return CourseRecord(
            id=course_id,
            owner_id=owner_id,
            playlist_id=playlist_id,
            title=title,
            thumbnail=thumbnail,
            video_count=video_count,
            created_at=now_iso,
        )

    def create_videos(
        self,
        course_id: str,
        videos: list[NewVideo],
        *,
        batch_size: int = 50,
    ) -> int:
        """Insert videos in separately committed batches; returns the inserted row count."""
        clamped_batch_size = max(1, batch_size)
        inserted = 0
        for index in range(0, len(videos), clamped_batch_size):
            batch = videos[index : index + clamped_batch_size]
            inserted += self._insert_video_batch(course_id, batch)
        return inserted

    def _insert_video_batch(self, course_id: str, batch: list[NewVideo]) -> int:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO videos (
                    id, course_id, video_id, title, thumbnail, duration, position, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        new_record_id("video"),
                        course_id,
                        video.video_id,
                        video.title,
                        video.thumbnail,
                        video.duration,
                        video.position,
                        now_iso,
                    )
                    for video in batch
                ],
            )
        return len(batch)

    def count_videos(self, course_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM videos WHERE course_id = ?",
                (course_id,),
            ).fetchone()
        return as_int(row["total"]) if row is not None else 0

    def contains_video(self, course_id: str, video_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM videos WHERE course_id = ? AND video_id = ? LIMIT 1",
                (course_id, video_id),
            ).fetchone()
        return row is not None

    def list_videos(self, course_id: str) -> list[VideoRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, course_id, video_id, title, thumbnail, duration, position
                FROM videos
                WHERE course_id = ?
                ORDER BY position ASC
                """,
                (course_id,),
            ).fetchall()
        return [
            VideoRecord(
                id=str(row["id"]),
                course_id=str(row["course_id"]),
                video_id=str(row["video_id"]),
                title=str(row["title"]),
                thumbnail=str(row["thumbnail"]),
                duration=str(row["duration"]),
                position=as_int(row["position"]),
            )
            for row in rows
        ]

    def delete_course(self, course_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM courses WHERE id = ?", (course_id,))
        return cursor.rowcount > 0

    def delete_course_with_related_data(self, owner_id: str, course_id: str) -> bool:
        """
        Delete an owned course, its videos, and the owner's progress and
        checkpoints for videos that no other course of theirs still lists.
        """
        with self._db.connection() as conn:
            owned = conn.execute(
                "SELECT 1 FROM courses WHERE id = ? AND owner_id = ?",
                (course_id, owner_id),
            ).fetchone()
            if owned is None:
                return False

            orphaned_video_ids = _orphaned_video_ids(conn, owner_id=owner_id, course_id=course_id)
            for table in ("user_progress", "video_timestamps"):
                conn.executemany(
                    f"DELETE FROM {table} WHERE owner_id = ? AND video_id = ?",
                    [(owner_id, video_id) for video_id in orphaned_video_ids],
                )
            conn.execute(
                "DELETE FROM courses WHERE id = ? AND owner_id = ?",
                (course_id, owner_id),
            )
        return True


def _orphaned_video_ids(
    conn: sqlite3.Connection,
    *,
    owner_id: str,
    course_id: str,
) -> list[str]:
    rows = conn.execute(
        """
        SELECT DISTINCT v.video_id
        FROM videos v
        WHERE v.course_id = ?
          AND NOT EXISTS (
            SELECT 1
            FROM videos other
            JOIN courses c ON c.id = other.course_id
            WHERE other.video_id = v.video_id
              AND other.course_id != ?
              AND c.owner_id = ?
          )
        """,
        (course_id, course_id, owner_id),
    ).fetchall()
    return [str(row["video_id"]) for row in rows]


def _row_to_course(row: sqlite3.Row) -> CourseRecord:
    return CourseRecord(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        playlist_id=str(row["playlist_id"]),
        title=as_text_or_none(row["title"]) or "Untitled Playlist",
        thumbnail=str(row["thumbnail"] or ""),
        video_count=as_int(row["video_count"]),
        created_at=str(row["created_at"]),
    )
