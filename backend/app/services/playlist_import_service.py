from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Literal

from backend.app.repositories.course_repository import CourseRecord, CourseRepository, NewVideo
from backend.app.services.event_bus import EventBus, StudyEvent
from backend.app.services.playlist_fetcher import (
    FetchedPlaylist,
    PlaylistFetcher,
    YouTubeConfigurationError,
    YouTubeFetchError,
    validate_playlist_url,
)
from backend.app.services.playlist_fetcher import (
    EmptyPlaylistError as FetchedEmptyPlaylistError,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("study_tracker.import")

ImportStage = Literal[
    "validating",
    "quota_checked",
    "fetching",
    "persisting_course",
    "persisting_videos",
    "done",
    "failed",
]

LIMIT_REACHED_MESSAGE = "Limit reached. Complete or delete a playlist to import more."
EMPTY_PLAYLIST_MESSAGE = "This playlist appears to be empty or all videos are private/deleted."
MISSING_CONFIGURATION_MESSAGE = (
    "YouTube API is not configured on the server. Please contact the administrator."
)
PERSISTENCE_FAILURE_MESSAGE = "Database error: Could not save the playlist. Please try again."
_UPSTREAM_MESSAGES: dict[str, tuple[int, str]] = {
    "not_found": (
        404,
        "Playlist not found. Please check the URL and make sure the playlist is public.",
    ),
    "access_denied": (
        403,
        "This playlist is private. Please make sure the playlist is public or unlisted.",
    ),
    "quota_exceeded": (
        429,
        "YouTube API quota exceeded. Please try again in a few minutes.",
    ),
    "network": (
        503,
        "Network error while contacting YouTube. Please check your connection and try again.",
    ),
}
_UPSTREAM_FALLBACK = (
    502,
    "Failed to fetch playlist data from YouTube. Please check the URL and try again.",
)


class PlaylistImportError(Exception):
    code: str = "import_failed"
    status_code: int = 500
    retryable: bool = False
    limit_reached: bool = False

    def __init__(self, message: str, *, stage: ImportStage) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage


class MissingConfigurationError(PlaylistImportError):
    code = "missing_configuration"
    status_code = 500


class ImportValidationError(PlaylistImportError):
    code = "validation_error"
    status_code = 400


class InvalidPlaylistUrlError(ImportValidationError):
    code = "invalid_url"


class PlaylistLimitReachedError(PlaylistImportError):
    code = "limit_reached"
    status_code = 400
    limit_reached = True


class DuplicatePlaylistError(PlaylistImportError):
    code = "duplicate_playlist"
    status_code = 409


class UpstreamFetchError(PlaylistImportError):
    code = "upstream_error"
    retryable = True

    def __init__(self, message: str, *, stage: ImportStage, reason: str, status_code: int) -> None:
        super().__init__(message, stage=stage)
        self.reason = reason
        self.status_code = status_code


class EmptyPlaylistError(PlaylistImportError):
    code = "empty_playlist"
    status_code = 422


class PersistenceError(PlaylistImportError):
    code = "persistence_error"
    status_code = 500
    retryable = True


@dataclass(frozen=True)
class PlaylistImportResult:
    course: CourseRecord
    imported_video_count: int
    requested_video_count: int
    skipped_video_count: int
    message: str


class PlaylistImportService:
    """
    Imports a playlist as a course.

    Stages run in order: validating, quota_checked, fetching,
    persisting_course, persisting_videos, done. An error carries the stage
    the attempt was in when it stopped, so a stage is entered only after the
    check that closes the previous one passes. The first quota check runs
    while validating and the duplicate check runs in quota_checked. The quota
    re-check after the fetch belongs to fetching. Any failure after the course
    row exists deletes it again before the error is raised.
    """

    def __init__(
        self,
        *,
        course_repository: CourseRepository,
        fetcher: PlaylistFetcher,
        max_courses_per_owner: int = 4,
        video_insert_batch_size: int = 50,
        telemetry: TelemetryClient | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._courses = course_repository
        self._fetcher = fetcher
        self._max_courses = max(1, max_courses_per_owner)
        self._video_insert_batch_size = max(1, video_insert_batch_size)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._event_bus = event_bus

    @property
    def max_courses_per_owner(self) -> int:
        return self._max_courses

    def import_playlist(self, *, playlist_url: str, owner_id: str) -> PlaylistImportResult:
        started_at = time.perf_counter()
        self._telemetry.emit("playlist.import.start", owner_id=owner_id)
        try:
            result = self._run_import(playlist_url=playlist_url, owner_id=owner_id)
        except PlaylistImportError as exc:
            LOGGER.info(
                "playlist import rejected owner_id=%s stage=%s code=%s",
                owner_id,
                exc.stage,
                exc.code,
            )
            self._telemetry.emit(
                "playlist.import.error",
                owner_id=owner_id,
                stage=exc.stage,
                error_code=exc.code,
                status_code=exc.status_code,
                duration_ms=_elapsed_ms(started_at),
            )
            raise

        self._telemetry.emit(
            "playlist.import.finish",
            owner_id=owner_id,
            playlist_id=result.course.playlist_id,
            imported_video_count=result.imported_video_count,
            skipped_video_count=result.skipped_video_count,
            duration_ms=_elapsed_ms(started_at),
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                StudyEvent(
                    name="course.imported",
                    owner_id=owner_id,
                    attributes={
                        "course_id": result.course.id,
                        "video_count": result.imported_video_count,
                    },
                )
            )
        return result

    def _run_import(self, *, playlist_url: str, owner_id: str) -> PlaylistImportResult:
        if not self._fetcher.configured:
            LOGGER.error("playlist import unavailable; youtube api key not configured")
            raise MissingConfigurationError(MISSING_CONFIGURATION_MESSAGE, stage="validating")
        if not owner_id.strip():
            raise ImportValidationError(
                "Missing required information. Please try again.",
                stage="validating",
            )

        validation = validate_playlist_url(playlist_url)
        if not validation.is_valid or validation.playlist_id is None:
            raise InvalidPlaylistUrlError(
                validation.error or "Invalid playlist URL format.",
                stage="validating",
            )
        playlist_id = validation.playlist_id

        self._ensure_below_quota(owner_id, stage="validating")
        self._ensure_not_imported(owner_id, playlist_id, stage="quota_checked")

        fetched = self._fetch(playlist_id)

        # Concurrent imports may have landed while the fetch was running.
        self._ensure_below_quota(owner_id, stage="fetching")
        course = self._create_course(owner_id, fetched)
        imported_count = self._create_videos(course, fetched)

        LOGGER.info(
            "playlist imported owner_id=%s course_id=%s playlist_id=%s videos=%s skipped=%s",
            owner_id,
            course.id,
            playlist_id,
            imported_count,
            fetched.skipped_count,
        )
        return PlaylistImportResult(
            course=course,
            imported_video_count=imported_count,
            requested_video_count=len(fetched.videos),
            skipped_video_count=fetched.skipped_count,
            message=f'Successfully imported "{course.title}" with {imported_count} videos!',
        )

    def _ensure_below_quota(self, owner_id: str, *, stage: ImportStage) -> None:
        try:
            current_count = self._courses.count_courses(owner_id)
        except sqlite3.Error as exc:
            LOGGER.error("playlist limit check failed owner_id=%s", owner_id, exc_info=True)
            raise PersistenceError(
                "Database error: Could not check playlist limit. Please try again.",
                stage=stage,
            ) from exc
        if current_count >= self._max_courses:
            raise PlaylistLimitReachedError(LIMIT_REACHED_MESSAGE, stage=stage)

    def _ensure_not_imported(self, owner_id: str, playlist_id: str, *, stage: ImportStage) -> None:
        try:
            existing = self._courses.find_by_playlist(owner_id, playlist_id)
        except sqlite3.Error as exc:
            LOGGER.error("duplicate playlist check failed owner_id=%s", owner_id, exc_info=True)
            raise PersistenceError(
                "Database error: Could not check existing courses. Please try again.",
                stage=stage,
            ) from exc
        if existing is not None:
            raise DuplicatePlaylistError(
                f'This playlist "{existing.title}" has already been imported.',
                stage=stage,
            )

    def _fetch(self, playlist_id: str) -> FetchedPlaylist:
        try:
            fetched = self._fetcher.fetch_playlist(playlist_id)
        except YouTubeConfigurationError as exc:
            raise MissingConfigurationError(MISSING_CONFIGURATION_MESSAGE, stage="fetching") from exc
        except FetchedEmptyPlaylistError as exc:
            raise EmptyPlaylistError(EMPTY_PLAYLIST_MESSAGE, stage="fetching") from exc
        except YouTubeFetchError as exc:
            status_code, message = _UPSTREAM_MESSAGES.get(exc.reason, _UPSTREAM_FALLBACK)
            LOGGER.warning(
                "playlist fetch failed playlist_id=%s reason=%s error=%s",
                playlist_id,
                exc.reason,
                exc,
            )
            raise UpstreamFetchError(
                message,
                stage="fetching",
                reason=exc.reason,
                status_code=status_code,
            ) from exc

        if not fetched.videos:
            raise EmptyPlaylistError(EMPTY_PLAYLIST_MESSAGE, stage="fetching")
        self._telemetry.emit(
            "playlist.fetch.finish",
            playlist_id=playlist_id,
            video_count=len(fetched.videos),
            skipped_count=fetched.skipped_count,
            truncated=fetched.truncated,
            estimated_api_units=fetched.estimated_api_units,
        )
        return fetched

    def _create_course(self, owner_id: str, fetched: FetchedPlaylist) -> CourseRecord:
        try:
            course = self._courses.create_course(
                owner_id=owner_id,
                playlist_id=fetched.playlist_id,
                title=fetched.title,
                thumbnail=fetched.thumbnail,
                video_count=len(fetched.videos),
                max_courses=self._max_courses,
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicatePlaylistError(
                "This playlist has already been imported.",
                stage="persisting_course",
            ) from exc
        except sqlite3.Error as exc:
            LOGGER.error(
                "course insert failed owner_id=%s playlist_id=%s",
                owner_id,
                fetched.playlist_id,
                exc_info=True,
            )
            raise PersistenceError(PERSISTENCE_FAILURE_MESSAGE, stage="persisting_course") from exc

        if course is None:
            raise PlaylistLimitReachedError(LIMIT_REACHED_MESSAGE, stage="persisting_course")
        return course

    def _create_videos(self, course: CourseRecord, fetched: FetchedPlaylist) -> int:
        new_videos = [
            NewVideo(
                video_id=video.video_id,
                title=video.title,
                thumbnail=video.thumbnail,
                duration=video.duration,
                position=video.position,
            )
            for video in fetched.videos
        ]
        try:
            inserted = self._courses.create_videos(
                course.id,
                new_videos,
                batch_size=self._video_insert_batch_size,
            )
        except sqlite3.Error as exc:
            LOGGER.error(
                "video insert failed course_id=%s requested=%s",
                course.id,
                len(new_videos),
                exc_info=True,
            )
            self._compensate(course)
            raise PersistenceError(PERSISTENCE_FAILURE_MESSAGE, stage="persisting_videos") from exc

        if inserted != course.video_count:
            LOGGER.error(
                "video insert count mismatch course_id=%s expected=%s inserted=%s",
                course.id,
                course.video_count,
                inserted,
            )
            self._compensate(course)
            raise PersistenceError(PERSISTENCE_FAILURE_MESSAGE, stage="persisting_videos")
        return inserted

    def _compensate(self, course: CourseRecord) -> None:
        try:
            removed = self._courses.delete_course(course.id)
        except sqlite3.Error:
            LOGGER.error(
                "course cleanup after failed import failed course_id=%s",
                course.id,
                exc_info=True,
            )
            return
        LOGGER.info("course cleanup after failed import course_id=%s removed=%s", course.id, removed)


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)
