from __future__ import annotations

import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from backend.app.repositories.checkpoint_repository import PlaybackCheckpoint
from backend.app.repositories.course_repository import CourseRecord
from backend.app.repositories.progress_repository import ProgressRecord, StudyVideoEntry
from backend.app.services.course_service import CourseDetail, CourseProgressSummary
from backend.app.services.study_stats_service import (
    ActivityCalendar,
    DashboardStats,
    QuotaSnapshot,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class ImportPlaylistRequest(CamelModel):
    playlist_url: str = Field(default="", max_length=2048)
    owner_id: str = Field(
        default="",
        max_length=255,
        validation_alias=AliasChoices("ownerId", "userId", "owner_id"),
    )

    @field_validator("playlist_url", "owner_id", mode="before")
    @classmethod
    def _normalize_text(cls, value: object) -> str:
        if not isinstance(value, str):
            return ""
        return value.strip()


class ValidatePlaylistUrlRequest(CamelModel):
    playlist_url: str = Field(default="", max_length=2048)


class ValidatePlaylistUrlResponse(CamelModel):
    is_valid: bool
    playlist_id: str | None = None
    error: str | None = None


class CourseModel(CamelModel):
    id: str
    owner_id: str
    playlist_id: str
    title: str
    thumbnail: str
    video_count: int
    created_at: str

    @classmethod
    def from_record(cls, record: CourseRecord, *, video_count: int | None = None) -> CourseModel:
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            playlist_id=record.playlist_id,
            title=record.title,
            thumbnail=record.thumbnail,
            video_count=record.video_count if video_count is None else video_count,
            created_at=record.created_at,
        )


class ImportPlaylistResponse(CamelModel):
    success: bool
    course: CourseModel | None = None
    message: str | None = None
    error: str | None = None
    limit_reached: bool | None = None
    skipped_count: int | None = None


class PlaylistLimitResponse(CamelModel):
    can_import: bool
    current_count: int
    max_count: int
    remaining: int
    error: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: QuotaSnapshot) -> PlaylistLimitResponse:
        return cls(
            can_import=snapshot.can_import,
            current_count=snapshot.current_count,
            max_count=snapshot.max_count,
            remaining=snapshot.remaining,
        )


class CourseVideoModel(CamelModel):
    id: str
    video_id: str
    title: str
    thumbnail: str
    duration: str
    position: int
    completed: bool
    completed_at: str | None = None
    bookmarked: bool
    notes: str


class CourseSummaryModel(CamelModel):
    total_videos: int
    completed_videos: int
    percent_complete: float
    is_complete: bool

    @classmethod
    def from_summary(cls, summary: CourseProgressSummary) -> CourseSummaryModel:
        return cls(
            total_videos=summary.total_videos,
            completed_videos=summary.completed_videos,
            percent_complete=summary.percent_complete,
            is_complete=summary.is_complete,
        )


class CourseDetailResponse(CamelModel):
    course: CourseModel
    videos: list[CourseVideoModel]
    summary: CourseSummaryModel

    @classmethod
    def from_detail(cls, detail: CourseDetail) -> CourseDetailResponse:
        return cls(
            course=CourseModel.from_record(detail.course),
            videos=[
                CourseVideoModel(
                    id=view.video.id,
                    video_id=view.video.video_id,
                    title=view.video.title,
                    thumbnail=view.video.thumbnail,
                    duration=view.video.duration,
                    position=view.video.position,
                    completed=view.completed,
                    completed_at=view.completed_at,
                    bookmarked=view.bookmarked,
                    notes=view.notes,
                )
                for view in detail.videos
            ],
            summary=CourseSummaryModel.from_summary(detail.summary),
        )


class CourseListResponse(CamelModel):
    courses: list[CourseModel]
    quota: PlaylistLimitResponse


class DeleteCourseResponse(CamelModel):
    success: bool
    course_id: str


class ProgressModel(CamelModel):
    video_id: str
    completed: bool
    completed_at: str | None = None
    bookmarked: bool
    notes: str
    updated_at: str | None = None

    @classmethod
    def from_record(cls, record: ProgressRecord) -> ProgressModel:
        return cls(
            video_id=record.video_id,
            completed=record.completed,
            completed_at=record.completed_at,
            bookmarked=record.bookmarked,
            notes=record.notes,
            updated_at=record.updated_at or None,
        )


class CompleteVideoRequest(CamelModel):
    course_id: str | None = Field(default=None, max_length=255)


class CompleteVideoResponse(CamelModel):
    progress: ProgressModel
    newly_completed: bool
    course_completed: bool


class BookmarkRequest(CamelModel):
    bookmarked: bool | None = None


class NotesRequest(CamelModel):
    notes: str = Field(default="", max_length=20000)


class CheckpointRequest(CamelModel):
    position_seconds: float = Field(ge=0)
    duration_seconds: float = Field(default=0.0, ge=0)


class CheckpointResponse(CamelModel):
    video_id: str
    position_seconds: float
    duration_seconds: float
    updated_at: str | None = None

    @classmethod
    def from_checkpoint(
        cls,
        video_id: str,
        checkpoint: PlaybackCheckpoint | None,
    ) -> CheckpointResponse:
        if checkpoint is None:
            return cls(video_id=video_id, position_seconds=0.0, duration_seconds=0.0)
        return cls(
            video_id=video_id,
            position_seconds=checkpoint.position_seconds,
            duration_seconds=checkpoint.duration_seconds,
            updated_at=checkpoint.updated_at,
        )


class StudyVideoModel(CamelModel):
    video_id: str
    title: str
    thumbnail: str
    duration: str
    course_id: str
    course_title: str
    bookmarked: bool
    notes: str
    updated_at: str

    @classmethod
    def from_entry(cls, entry: StudyVideoEntry) -> StudyVideoModel:
        return cls(
            video_id=entry.video_id,
            title=entry.title,
            thumbnail=entry.thumbnail,
            duration=entry.duration,
            course_id=entry.course_id,
            course_title=entry.course_title,
            bookmarked=entry.bookmarked,
            notes=entry.notes,
            updated_at=entry.updated_at,
        )


class StudyVideoListResponse(CamelModel):
    items: list[StudyVideoModel]
    count: int


class DashboardStatsResponse(CamelModel):
    watched_videos: int
    active_streak: int
    total_courses: int
    bookmarked_videos: int
    quota: PlaylistLimitResponse

    @classmethod
    def from_stats(cls, stats: DashboardStats) -> DashboardStatsResponse:
        return cls(
            watched_videos=stats.watched_videos,
            active_streak=stats.current_streak,
            total_courses=stats.total_courses,
            bookmarked_videos=stats.bookmarked_videos,
            quota=PlaylistLimitResponse.from_snapshot(stats.quota),
        )


class ActivityDayModel(CamelModel):
    date: datetime.date
    count: int
    level: int


class ActivityCalendarResponse(CamelModel):
    days: list[ActivityDayModel]
    total_days: int
    active_days: int
    current_streak: int

    @classmethod
    def from_calendar(cls, calendar: ActivityCalendar) -> ActivityCalendarResponse:
        return cls(
            days=[
                ActivityDayModel(date=day.date, count=day.count, level=day.level)
                for day in calendar.days
            ],
            total_days=calendar.total_days,
            active_days=calendar.active_days,
            current_streak=calendar.current_streak,
        )
