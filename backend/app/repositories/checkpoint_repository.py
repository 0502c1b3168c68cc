from __future__ import annotations

from dataclasses import dataclass

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database, as_float


@dataclass(frozen=True)
class PlaybackCheckpoint:
    owner_id: str
    video_id: str
    position_seconds: float
    duration_seconds: float
    updated_at: str


class CheckpointRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_checkpoint(self, owner_id: str, video_id: str) -> PlaybackCheckpoint | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT position_seconds, duration_seconds, updated_at
                FROM video_timestamps
                WHERE owner_id = ? AND video_id = ?
                """,
                (owner_id, video_id),
            ).fetchone()
        if row is None:
            return None
        return PlaybackCheckpoint(
            owner_id=owner_id,
            video_id=video_id,
            position_seconds=as_float(row["position_seconds"]),
            duration_seconds=as_float(row["duration_seconds"]),
            updated_at=str(row["updated_at"]),
        )

    def upsert_checkpoint(
        self,
        owner_id: str,
        video_id: str,
        *,
        position_seconds: float,
        duration_seconds: float,
    ) -> PlaybackCheckpoint:
        now_iso = utc_now_iso()
        position = max(0.0, position_seconds)
        duration = max(0.0, duration_seconds)
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO video_timestamps (
                    owner_id, video_id, position_seconds, duration_seconds, updated_at
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, video_id) DO UPDATE SET
                    position_seconds = excluded.position_seconds,
                    duration_seconds = excluded.duration_seconds,
                    updated_at = excluded.updated_at
                """,
                (owner_id, video_id, position, duration, now_iso),
            )
        return PlaybackCheckpoint(
            owner_id=owner_id,
            video_id=video_id,
            position_seconds=position,
            duration_seconds=duration,
            updated_at=now_iso,
        )
