from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Annotated, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.dependencies import (
    get_course_service,
    get_import_service,
    get_progress_service,
    get_stats_service,
)
from backend.app.models.study_contracts import (
    ActivityCalendarResponse,
    BookmarkRequest,
    CheckpointRequest,
    CheckpointResponse,
    CompleteVideoRequest,
    CompleteVideoResponse,
    CourseDetailResponse,
    CourseListResponse,
    CourseModel,
    DashboardStatsResponse,
    DeleteCourseResponse,
    ImportPlaylistRequest,
    ImportPlaylistResponse,
    NotesRequest,
    PlaylistLimitResponse,
    ProgressModel,
    StudyVideoListResponse,
    StudyVideoModel,
    ValidatePlaylistUrlRequest,
    ValidatePlaylistUrlResponse,
)
from backend.app.services.course_service import CourseNotFoundError, CourseService
from backend.app.services.playlist_fetcher import validate_playlist_url
from backend.app.services.playlist_import_service import (
    PlaylistImportError,
    PlaylistImportService,
)
from backend.app.services.progress_service import ProgressService
from backend.app.services.study_stats_service import StudyStatsService

LOGGER = logging.getLogger("study_tracker.api")

router = APIRouter()

T = TypeVar("T")


@contextmanager
def _owner_context(owner_id: str) -> Iterator[None]:
    context_tokens = bind_contextvars(owner_id=owner_id)
    try:
        yield
    finally:
        reset_contextvars(**context_tokens)


def _require_course(call: Callable[[], T]) -> T:
    try:
        return call()
    except CourseNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post(
    "/import-playlist",
    response_model=ImportPlaylistResponse,
    response_model_exclude_none=True,
    tags=["import"],
    operation_id="import_playlist",
)
def import_playlist(
    request: ImportPlaylistRequest,
    import_service: Annotated[PlaylistImportService, Depends(get_import_service)],
) -> ImportPlaylistResponse | JSONResponse:
    with _owner_context(request.owner_id):
        try:
            result = import_service.import_playlist(
                playlist_url=request.playlist_url,
                owner_id=request.owner_id,
            )
        except PlaylistImportError as exc:
            body = ImportPlaylistResponse(
                success=False,
                error=exc.message,
                limit_reached=True if exc.limit_reached else None,
            )
            return JSONResponse(
                status_code=exc.status_code,
                content=body.model_dump(by_alias=True, exclude_none=True),
            )

    return ImportPlaylistResponse(
        success=True,
        course=CourseModel.from_record(result.course, video_count=result.imported_video_count),
        message=result.message,
        skipped_count=result.skipped_video_count,
    )


@router.get(
    "/check-playlist-limit",
    response_model=PlaylistLimitResponse,
    response_model_exclude_none=True,
    tags=["import"],
    operation_id="check_playlist_limit",
)
def check_playlist_limit(
    stats_service: Annotated[StudyStatsService, Depends(get_stats_service)],
    owner_id: Annotated[str | None, Query(alias="ownerId")] = None,
) -> PlaylistLimitResponse | JSONResponse:
    if owner_id is None or not owner_id.strip():
        return JSONResponse(status_code=400, content={"error": "Owner ID is required"})

    with _owner_context(owner_id):
        try:
            snapshot = stats_service.quota(owner_id)
        except sqlite3.Error:
            LOGGER.error("playlist limit check failed", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "canImport": False,
                    "currentCount": 0,
                    "maxCount": stats_service.max_courses_per_owner,
                    "remaining": 0,
                    "error": "Could not check playlist limit",
                },
            )
    return PlaylistLimitResponse.from_snapshot(snapshot)


@router.post(
    "/validate-playlist-url",
    response_model=ValidatePlaylistUrlResponse,
    response_model_exclude_none=True,
    tags=["import"],
    operation_id="validate_playlist_url",
)
def validate_playlist_url_endpoint(request: ValidatePlaylistUrlRequest) -> ValidatePlaylistUrlResponse:
    validation = validate_playlist_url(request.playlist_url)
    return ValidatePlaylistUrlResponse(
        is_valid=validation.is_valid,
        playlist_id=validation.playlist_id,
        error=validation.error,
    )


@router.get(
    "/owners/{owner_id}/courses",
    response_model=CourseListResponse,
    tags=["courses"],
    operation_id="list_courses",
)
def list_courses(
    owner_id: str,
    course_service: Annotated[CourseService, Depends(get_course_service)],
    stats_service: Annotated[StudyStatsService, Depends(get_stats_service)],
) -> CourseListResponse:
    with _owner_context(owner_id):
        courses = course_service.list_courses(owner_id)
        quota = stats_service.quota(owner_id)
    return CourseListResponse(
        courses=[CourseModel.from_record(course) for course in courses],
        quota=PlaylistLimitResponse.from_snapshot(quota),
    )


@router.get(
    "/owners/{owner_id}/courses/{course_id}",
    response_model=CourseDetailResponse,
    tags=["courses"],
    operation_id="get_course",
)
def get_course(
    owner_id: str,
    course_id: str,
    course_service: Annotated[CourseService, Depends(get_course_service)],
) -> CourseDetailResponse:
    with _owner_context(owner_id):
        detail = _require_course(lambda: course_service.get_course_detail(owner_id, course_id))
    return CourseDetailResponse.from_detail(detail)


@router.delete(
    "/owners/{owner_id}/courses/{course_id}",
    response_model=DeleteCourseResponse,
    tags=["courses"],
    operation_id="delete_course",
)
def delete_course(
    owner_id: str,
    course_id: str,
    course_service: Annotated[CourseService, Depends(get_course_service)],
) -> DeleteCourseResponse:
    with _owner_context(owner_id):
        _require_course(lambda: course_service.delete_course(owner_id, course_id))
    return DeleteCourseResponse(success=True, course_id=course_id)


@router.post(
    "/owners/{owner_id}/videos/{video_id}/complete",
    response_model=CompleteVideoResponse,
    tags=["progress"],
    operation_id="complete_video",
)
def complete_video(
    owner_id: str,
    video_id: str,
    progress_service: Annotated[ProgressService, Depends(get_progress_service)],
    request: CompleteVideoRequest | None = None,
) -> CompleteVideoResponse:
    course_id = request.course_id if request is not None else None
    with _owner_context(owner_id):
        result = _require_course(
            lambda: progress_service.mark_complete(owner_id, video_id, course_id=course_id)
        )
    return CompleteVideoResponse(
        progress=ProgressModel.from_record(result.progress),
        newly_completed=result.newly_completed,
        course_completed=result.course_completed,
    )


@router.put(
    "/owners/{owner_id}/videos/{video_id}/bookmark",
    response_model=ProgressModel,
    tags=["progress"],
    operation_id="set_bookmark",
)
def set_bookmark(
    owner_id: str,
    video_id: str,
    progress_service: Annotated[ProgressService, Depends(get_progress_service)],
    request: BookmarkRequest | None = None,
) -> ProgressModel:
    bookmarked = request.bookmarked if request is not None else None
    with _owner_context(owner_id):
        record = progress_service.set_bookmark(owner_id, video_id, bookmarked=bookmarked)
    return ProgressModel.from_record(record)


@router.put(
    "/owners/{owner_id}/videos/{video_id}/notes",
    response_model=ProgressModel,
    tags=["progress"],
    operation_id="save_notes",
)
def save_notes(
    owner_id: str,
    video_id: str,
    request: NotesRequest,
    progress_service: Annotated[ProgressService, Depends(get_progress_service)],
) -> ProgressModel:
    with _owner_context(owner_id):
        record = progress_service.save_notes(owner_id, video_id, request.notes)
    return ProgressModel.from_record(record)


@router.get(
    "/owners/{owner_id}/videos/{video_id}/checkpoint",
    response_model=CheckpointResponse,
    tags=["progress"],
    operation_id="get_checkpoint",
)
def get_checkpoint(
    owner_id: str,
    video_id: str,
    progress_service: Annotated[ProgressService, Depends(get_progress_service)],
) -> CheckpointResponse:
    with _owner_context(owner_id):
        checkpoint = progress_service.get_checkpoint(owner_id, video_id)
    return CheckpointResponse.from_checkpoint(video_id, checkpoint)


@router.put(
    "/owners/{owner_id}/videos/{video_id}/checkpoint",
    response_model=CheckpointResponse,
    tags=["progress"],
    operation_id="save_checkpoint",
)
def save_checkpoint(
    owner_id: str,
    video_id: str,
    request: CheckpointRequest,
    progress_service: Annotated[ProgressService, Depends(get_progress_service)],
) -> CheckpointResponse:
    with _owner_context(owner_id):
        checkpoint = progress_service.save_checkpoint(
            owner_id,
            video_id,
            position_seconds=request.position_seconds,
            duration_seconds=request.duration_seconds,
        )
    return CheckpointResponse.from_checkpoint(video_id, checkpoint)


@router.get(
    "/owners/{owner_id}/bookmarks",
    response_model=StudyVideoListResponse,
    tags=["progress"],
    operation_id="list_bookmarks",
)
def list_bookmarks(
    owner_id: str,
    progress_service: Annotated[ProgressService, Depends(get_progress_service)],
) -> StudyVideoListResponse:
    with _owner_context(owner_id):
        entries = progress_service.list_bookmarks(owner_id)
    return StudyVideoListResponse(
        items=[StudyVideoModel.from_entry(entry) for entry in entries],
        count=len(entries),
    )


@router.get(
    "/owners/{owner_id}/notes",
    response_model=StudyVideoListResponse,
    tags=["progress"],
    operation_id="list_notes",
)
def list_notes(
    owner_id: str,
    progress_service: Annotated[ProgressService, Depends(get_progress_service)],
) -> StudyVideoListResponse:
    with _owner_context(owner_id):
        entries = progress_service.list_notes(owner_id)
    return StudyVideoListResponse(
        items=[StudyVideoModel.from_entry(entry) for entry in entries],
        count=len(entries),
    )


@router.get(
    "/owners/{owner_id}/stats",
    response_model=DashboardStatsResponse,
    tags=["stats"],
    operation_id="dashboard_stats",
)
def dashboard_stats(
    owner_id: str,
    stats_service: Annotated[StudyStatsService, Depends(get_stats_service)],
) -> DashboardStatsResponse:
    with _owner_context(owner_id):
        stats = stats_service.dashboard(owner_id)
    return DashboardStatsResponse.from_stats(stats)


@router.get(
    "/owners/{owner_id}/activity",
    response_model=ActivityCalendarResponse,
    tags=["stats"],
    operation_id="activity_calendar",
)
def activity_calendar(
    owner_id: str,
    stats_service: Annotated[StudyStatsService, Depends(get_stats_service)],
) -> ActivityCalendarResponse:
    with _owner_context(owner_id):
        calendar = stats_service.activity_calendar(owner_id)
    return ActivityCalendarResponse.from_calendar(calendar)
