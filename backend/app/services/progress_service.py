from __future__ import annotations

import logging
from dataclasses import dataclass

from backend.app.repositories.checkpoint_repository import CheckpointRepository, PlaybackCheckpoint
from backend.app.repositories.common import local_today, utc_now_iso
from backend.app.repositories.progress_repository import (
    ProgressRecord,
    ProgressRepository,
    StudyVideoEntry,
)
from backend.app.services.course_service import CourseService
from backend.app.services.event_bus import EventBus, StudyEvent

LOGGER = logging.getLogger("study_tracker.progress")


@dataclass(frozen=True)
class CompletionResult:
    progress: ProgressRecord
    newly_completed: bool
    course_completed: bool


def _empty_progress(owner_id: str, video_id: str) -> ProgressRecord:
    return ProgressRecord(
        owner_id=owner_id,
        video_id=video_id,
        completed=False,
        completed_at=None,
        bookmarked=False,
        notes="",
        updated_at="",
    )


class ProgressService:
    """Per-video progress actions for one owner: completion, bookmarks, notes and checkpoints."""

    def __init__(
        self,
        *,
        progress_repository: ProgressRepository,
        checkpoint_repository: CheckpointRepository,
        course_service: CourseService,
        default_timezone: str = "UTC",
        event_bus: EventBus | None = None,
    ) -> None:
        self._progress = progress_repository
        self._checkpoints = checkpoint_repository
        self._course_service = course_service
        self._default_timezone = default_timezone
        self._event_bus = event_bus

    def get_progress(self, owner_id: str, video_id: str) -> ProgressRecord:
        record = self._progress.get_progress(owner_id, video_id)
        return record if record is not None else _empty_progress(owner_id, video_id)

    def mark_complete(
        self,
        owner_id: str,
        video_id: str,
        *,
        course_id: str | None = None,
    ) -> CompletionResult:
        """
        Record a completion for `video_id`.

        Explicit and automatic completions both land here. Completing an
        already completed video changes nothing, including the day's streak
        count.
        """
        if course_id is not None:
            self._course_service.require_course_video(owner_id, course_id, video_id)

        entry = self._progress.mark_completed_with_activity(
            owner_id,
            video_id,
            completed_at=utc_now_iso(),
            activity_date=local_today(self._default_timezone),
        )
        newly_completed = entry is not None
        if entry is not None:
            LOGGER.info(
                "video completed owner_id=%s video_id=%s day=%s watched_today=%s",
                owner_id,
                video_id,
                entry.date.isoformat(),
                entry.watched_count,
            )
        else:
            LOGGER.debug("video already completed owner_id=%s video_id=%s", owner_id, video_id)

        course_completed = False
        if course_id is not None:
            course_completed = self._course_service.course_summary(owner_id, course_id).is_complete

        if newly_completed and self._event_bus is not None:
            self._event_bus.publish(
                StudyEvent(
                    name="progress.completed",
                    owner_id=owner_id,
                    attributes={
                        "video_id": video_id,
                        "course_id": course_id,
                        "course_completed": course_completed,
                    },
                )
            )
        return CompletionResult(
            progress=self.get_progress(owner_id, video_id),
            newly_completed=newly_completed,
            course_completed=course_completed,
        )

    def set_bookmark(self, owner_id: str, video_id: str, *, bookmarked: bool | None = None) -> ProgressRecord:
        if bookmarked is None:
            bookmarked = not self.get_progress(owner_id, video_id).bookmarked
        record = self._progress.set_bookmarked(owner_id, video_id, bookmarked=bookmarked)
        if self._event_bus is not None:
            self._event_bus.publish(
                StudyEvent(
                    name="progress.bookmarked",
                    owner_id=owner_id,
                    attributes={"video_id": video_id, "bookmarked": record.bookmarked},
                )
            )
        return record

    def toggle_bookmark(self, owner_id: str, video_id: str) -> ProgressRecord:
        return self.set_bookmark(owner_id, video_id)

    def save_notes(self, owner_id: str, video_id: str, notes: str) -> ProgressRecord:
        record = self._progress.set_notes(owner_id, video_id, notes=notes)
        if self._event_bus is not None:
            self._event_bus.publish(
                StudyEvent(
                    name="notes.updated",
                    owner_id=owner_id,
                    attributes={"video_id": video_id, "has_notes": bool(notes.strip())},
                )
            )
        return record

    def list_bookmarks(self, owner_id: str) -> list[StudyVideoEntry]:
        return self._progress.list_bookmarks(owner_id)

    def list_notes(self, owner_id: str) -> list[StudyVideoEntry]:
        return self._progress.list_notes(owner_id)

    def get_checkpoint(self, owner_id: str, video_id: str) -> PlaybackCheckpoint | None:
        return self._checkpoints.get_checkpoint(owner_id, video_id)

    def save_checkpoint(
        self,
        owner_id: str,
        video_id: str,
        *,
        position_seconds: float,
        duration_seconds: float,
    ) -> PlaybackCheckpoint:
        return self._checkpoints.upsert_checkpoint(
            owner_id,
            video_id,
            position_seconds=position_seconds,
            duration_seconds=duration_seconds,
        )
