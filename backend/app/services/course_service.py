from __future__ import annotations

import logging
from dataclasses import dataclass

from backend.app.repositories.course_repository import CourseRecord, CourseRepository, VideoRecord
from backend.app.repositories.progress_repository import ProgressRecord, ProgressRepository
from backend.app.services.event_bus import EventBus, StudyEvent
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("study_tracker.courses")


class CourseNotFoundError(LookupError):
    def __init__(self, course_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Course not found: {course_id}")
        self.course_id = course_id


class CourseVideoNotFoundError(CourseNotFoundError):
    def __init__(self, course_id: str, video_id: str) -> None:
        super().__init__(course_id, f"Video {video_id} is not part of course {course_id}")
        self.video_id = video_id


@dataclass(frozen=True)
class CourseVideoView:
    video: VideoRecord
    completed: bool
    completed_at: str | None
    bookmarked: bool
    notes: str


@dataclass(frozen=True)
class CourseProgressSummary:
    total_videos: int
    completed_videos: int
    percent_complete: float
    is_complete: bool


@dataclass(frozen=True)
class CourseDetail:
    course: CourseRecord
    videos: list[CourseVideoView]
    summary: CourseProgressSummary


def summarize_course_progress(video_ids: list[str], completed_ids: set[str]) -> CourseProgressSummary:
    total = len(video_ids)
    completed = sum(1 for video_id in video_ids if video_id in completed_ids)
    percent = round(completed * 100 / total, 1) if total else 0.0
    return CourseProgressSummary(
        total_videos=total,
        completed_videos=completed,
        percent_complete=percent,
        is_complete=total > 0 and completed == total,
    )


class CourseService:
    def __init__(
        self,
        *,
        course_repository: CourseRepository,
        progress_repository: ProgressRepository,
        telemetry: TelemetryClient | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._courses = course_repository
        self._progress = progress_repository
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._event_bus = event_bus

    def list_courses(self, owner_id: str) -> list[CourseRecord]:
        return self._courses.list_courses(owner_id)

    def require_course(self, owner_id: str, course_id: str) -> CourseRecord:
        course = self._courses.get_course(owner_id, course_id)
        if course is None:
            raise CourseNotFoundError(course_id)
        return course

    def require_course_video(self, owner_id: str, course_id: str, video_id: str) -> CourseRecord:
        course = self.require_course(owner_id, course_id)
        if not self._courses.contains_video(course.id, video_id):
            raise CourseVideoNotFoundError(course_id, video_id)
        return course

    def get_course_detail(self, owner_id: str, course_id: str) -> CourseDetail:
        course = self.require_course(owner_id, course_id)
        videos = self._courses.list_videos(course.id)
        progress_by_video: dict[str, ProgressRecord] = {
            record.video_id: record for record in self._progress.list_progress(owner_id)
        }

        views: list[CourseVideoView] = []
        for video in videos:
            progress = progress_by_video.get(video.video_id)
            views.append(
                CourseVideoView(
                    video=video,
                    completed=progress.completed if progress is not None else False,
                    completed_at=progress.completed_at if progress is not None else None,
                    bookmarked=progress.bookmarked if progress is not None else False,
                    notes=progress.notes if progress is not None else "",
                )
            )
        completed_ids = {view.video.video_id for view in views if view.completed}
        return CourseDetail(
            course=course,
            videos=views,
            summary=summarize_course_progress([video.video_id for video in videos], completed_ids),
        )

    def course_summary(self, owner_id: str, course_id: str) -> CourseProgressSummary:
        course = self.require_course(owner_id, course_id)
        video_ids = [video.video_id for video in self._courses.list_videos(course.id)]
        completed_ids = {
            record.video_id for record in self._progress.list_progress(owner_id) if record.completed
        }
        return summarize_course_progress(video_ids, completed_ids)

    def delete_course(self, owner_id: str, course_id: str) -> None:
        deleted = self._courses.delete_course_with_related_data(owner_id, course_id)
        if not deleted:
            raise CourseNotFoundError(course_id)

        LOGGER.info("course deleted owner_id=%s course_id=%s", owner_id, course_id)
        self._telemetry.emit("course.delete", owner_id=owner_id, course_id=course_id)
        if self._event_bus is not None:
            self._event_bus.publish(
                StudyEvent(name="course.deleted", owner_id=owner_id, attributes={"course_id": course_id})
            )
