from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.checkpoint_repository import CheckpointRepository
from backend.app.repositories.course_repository import CourseRepository
from backend.app.repositories.database import Database
from backend.app.repositories.progress_repository import ProgressRepository
from backend.app.repositories.streak_repository import StreakRepository
from backend.app.services.course_service import CourseService
from backend.app.services.event_bus import EventBus
from backend.app.services.playback_tracker import (
    PlaybackSource,
    PlaybackTracker,
    PlaybackTrackerConfig,
    ProgressSample,
)
from backend.app.services.playlist_fetcher import PlaylistFetcher
from backend.app.services.playlist_import_service import PlaylistImportService
from backend.app.services.progress_service import CompletionResult, ProgressService
from backend.app.services.study_stats_service import StudyStatsService
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_event_bus() -> EventBus:
    return EventBus()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_course_service() -> CourseService:
    database = get_database()
    return CourseService(
        course_repository=CourseRepository(database),
        progress_repository=ProgressRepository(database),
        telemetry=get_telemetry(),
        event_bus=get_event_bus(),
    )


@lru_cache(maxsize=1)
def get_import_service() -> PlaylistImportService:
    settings = get_settings()
    return PlaylistImportService(
        course_repository=CourseRepository(get_database()),
        fetcher=PlaylistFetcher(
            settings.youtube_api_key,
            max_pages=settings.youtube_max_playlist_pages,
            details_batch_size=settings.youtube_details_batch_size,
        ),
        max_courses_per_owner=settings.max_courses_per_owner,
        video_insert_batch_size=settings.video_insert_batch_size,
        telemetry=get_telemetry(),
        event_bus=get_event_bus(),
    )


@lru_cache(maxsize=1)
def get_progress_service() -> ProgressService:
    settings = get_settings()
    database = get_database()
    return ProgressService(
        progress_repository=ProgressRepository(database),
        checkpoint_repository=CheckpointRepository(database),
        course_service=get_course_service(),
        default_timezone=settings.default_timezone,
        event_bus=get_event_bus(),
    )


@lru_cache(maxsize=1)
def get_stats_service() -> StudyStatsService:
    settings = get_settings()
    database = get_database()
    return StudyStatsService(
        course_repository=CourseRepository(database),
        progress_repository=ProgressRepository(database),
        streak_repository=StreakRepository(database),
        max_courses_per_owner=settings.max_courses_per_owner,
        default_timezone=settings.default_timezone,
    )


def reset_cached_dependencies() -> None:
    get_stats_service.cache_clear()
    get_progress_service.cache_clear()
    get_import_service.cache_clear()
    get_course_service.cache_clear()
    get_telemetry.cache_clear()
    get_event_bus.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()


def build_playback_tracker(
    owner_id: str,
    video_id: str,
    source: PlaybackSource,
    *,
    on_progress: Callable[[ProgressSample], None] | None = None,
) -> PlaybackTracker:
    """Build a per-session tracker that persists checkpoints and completions through the store."""
    progress_service = get_progress_service()

    def complete(completed_video_id: str) -> CompletionResult:
        return progress_service.mark_complete(owner_id, completed_video_id)

    return PlaybackTracker(
        owner_id=owner_id,
        video_id=video_id,
        source=source,
        checkpoint_store=progress_service,
        on_complete=complete,
        on_progress=on_progress,
        config=PlaybackTrackerConfig.from_settings(get_settings()),
    )
