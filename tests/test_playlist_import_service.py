from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from typing import Any

import pytest

from backend.app.repositories.course_repository import CourseRepository, NewVideo
from backend.app.repositories.database import Database
from backend.app.services.event_bus import EventBus, StudyEvent
from backend.app.services.playlist_fetcher import PlaylistFetcher
from backend.app.services.playlist_import_service import (
    DuplicatePlaylistError,
    EmptyPlaylistError,
    InvalidPlaylistUrlError,
    MissingConfigurationError,
    PersistenceError,
    PlaylistImportService,
    PlaylistLimitReachedError,
    UpstreamFetchError,
)
from backend.app.services.study_stats_service import compute_quota
from backend.app.telemetry import TelemetryClient

OWNER = "owner-123"


def _playlist_id(index: int) -> str:
    return f"PLcourse{index:04d}abcdef"


def _playlist_url(index: int) -> str:
    return f"https://www.youtube.com/playlist?list={_playlist_id(index)}"


class _RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


class _FailingBatchRepository(CourseRepository):
    def __init__(self, db: Database, *, fail_on_batch: int) -> None:
        super().__init__(db)
        self._fail_on_batch = fail_on_batch
        self.batches = 0

    def _insert_video_batch(self, course_id: str, batch: list[NewVideo]) -> int:
        self.batches += 1
        if self.batches == self._fail_on_batch:
            raise sqlite3.OperationalError("disk I/O error")
        return super()._insert_video_batch(course_id, batch)


def _service(
    repository: CourseRepository,
    *,
    api_key: str | None = "test-key",
    max_courses: int = 4,
    batch_size: int = 50,
    telemetry: TelemetryClient | None = None,
    event_bus: EventBus | None = None,
) -> PlaylistImportService:
    return PlaylistImportService(
        course_repository=repository,
        fetcher=PlaylistFetcher(api_key),
        max_courses_per_owner=max_courses,
        video_insert_batch_size=batch_size,
        telemetry=telemetry,
        event_bus=event_bus,
    )


def _add_course_playlist(fake_youtube: Any, index: int, *, video_count: int = 2) -> None:
    fake_youtube.add_playlist(
        _playlist_id(index),
        title=f"Course {index}",
        videos=[(f"v{index:03d}_{n:05d}", f"Lesson {n}") for n in range(video_count)],
    )


def test_import_skips_private_video_and_persists_matching_count(
    database: Database,
    fake_youtube: Any,
) -> None:
    fake_youtube.add_playlist(
        _playlist_id(1),
        title="Data Structures",
        videos=[
            ("video_one_1", "Arrays"),
            ("video_two_2", "Private video"),
            ("video_three", "Linked Lists"),
        ],
    )
    repository = CourseRepository(database)

    result = _service(repository).import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)

    assert result.imported_video_count == 2
    assert result.skipped_video_count == 1
    assert result.course.video_count == 2
    assert repository.count_videos(result.course.id) == result.course.video_count
    stored = repository.list_videos(result.course.id)
    assert [(video.video_id, video.position) for video in stored] == [
        ("video_one_1", 0),
        ("video_three", 1),
    ]
    assert result.message == 'Successfully imported "Data Structures" with 2 videos!'


def test_failed_video_batch_removes_course(database: Database, fake_youtube: Any) -> None:
    _add_course_playlist(fake_youtube, 1, video_count=3)
    repository = _FailingBatchRepository(database, fail_on_batch=2)

    with pytest.raises(PersistenceError) as exc_info:
        _service(repository, batch_size=1).import_playlist(
            playlist_url=_playlist_url(1),
            owner_id=OWNER,
        )

    assert exc_info.value.stage == "persisting_videos"
    assert exc_info.value.status_code == 500
    assert "disk I/O" not in exc_info.value.message
    assert repository.count_courses(OWNER) == 0
    assert repository.find_by_playlist(OWNER, _playlist_id(1)) is None
    with database.connection() as conn:
        orphan_videos = conn.execute("SELECT COUNT(*) AS total FROM videos").fetchone()
    assert orphan_videos["total"] == 0


def test_cleanup_failure_still_reports_original_error(database: Database, fake_youtube: Any) -> None:
    _add_course_playlist(fake_youtube, 1, video_count=1)
    repository = _FailingBatchRepository(database, fail_on_batch=1)

    def _broken_delete(course_id: str) -> bool:
        raise sqlite3.OperationalError(f"database is locked {course_id}")

    repository.delete_course = _broken_delete  # type: ignore[method-assign]

    with pytest.raises(PersistenceError):
        _service(repository).import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)


def test_inserted_count_mismatch_is_rolled_back(database: Database, fake_youtube: Any) -> None:
    _add_course_playlist(fake_youtube, 1, video_count=2)

    class _ShortRepository(CourseRepository):
        def create_videos(self, course_id: str, videos: list[NewVideo], *, batch_size: int = 50) -> int:
            return super().create_videos(course_id, videos[:1], batch_size=batch_size)

    repository = _ShortRepository(database)
    with pytest.raises(PersistenceError):
        _service(repository).import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)
    assert repository.count_courses(OWNER) == 0


def test_quota_rejects_import_at_maximum(database: Database, fake_youtube: Any) -> None:
    repository = CourseRepository(database)
    service = _service(repository, max_courses=3)
    for index in range(1, 5):
        _add_course_playlist(fake_youtube, index)

    for index in range(1, 4):
        service.import_playlist(playlist_url=_playlist_url(index), owner_id=OWNER)

    playlist_calls_before = fake_youtube.call_count("playlists.list")
    with pytest.raises(PlaylistLimitReachedError) as exc_info:
        service.import_playlist(playlist_url=_playlist_url(4), owner_id=OWNER)

    assert exc_info.value.limit_reached is True
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Limit reached. Complete or delete a playlist to import more."
    assert fake_youtube.call_count("playlists.list") == playlist_calls_before

    quota = compute_quota(repository.count_courses(OWNER), 3)
    assert quota.current_count == 3
    assert quota.remaining == 0
    assert quota.can_import is False


def test_store_level_quota_guard_closes_race(database: Database, fake_youtube: Any) -> None:
    _add_course_playlist(fake_youtube, 1)
    _add_course_playlist(fake_youtube, 2)

    class _StaleCountRepository(CourseRepository):
        def count_courses(self, owner_id: str) -> int:
            return 0

    repository = _StaleCountRepository(database)
    service = _service(repository, max_courses=1)
    service.import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)

    with pytest.raises(PlaylistLimitReachedError) as exc_info:
        service.import_playlist(playlist_url=_playlist_url(2), owner_id=OWNER)
    assert exc_info.value.stage == "persisting_course"
    assert CourseRepository(database).count_courses(OWNER) == 1


def test_duplicate_playlist_is_rejected(database: Database, fake_youtube: Any) -> None:
    _add_course_playlist(fake_youtube, 1)
    service = _service(CourseRepository(database))
    service.import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)

    with pytest.raises(DuplicatePlaylistError) as exc_info:
        service.import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)
    assert exc_info.value.message == 'This playlist "Course 1" has already been imported.'
    assert exc_info.value.status_code == 409

    other_owner = service.import_playlist(playlist_url=_playlist_url(1), owner_id="owner-456")
    assert other_owner.imported_video_count == 2


def test_rejections_report_stage_in_progress(database: Database, fake_youtube: Any) -> None:
    for index in range(1, 4):
        _add_course_playlist(fake_youtube, index)
    repository = CourseRepository(database)
    service = _service(repository, max_courses=2)
    service.import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)

    with pytest.raises(DuplicatePlaylistError) as duplicate:
        service.import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)
    assert duplicate.value.stage == "quota_checked"

    service.import_playlist(playlist_url=_playlist_url(2), owner_id=OWNER)
    with pytest.raises(PlaylistLimitReachedError) as limit:
        service.import_playlist(playlist_url=_playlist_url(3), owner_id=OWNER)
    assert limit.value.stage == "validating"

    class _FillsDuringFetchRepository(CourseRepository):
        def __init__(self, db: Database) -> None:
            super().__init__(db)
            self.counts = 0

        def count_courses(self, owner_id: str) -> int:
            self.counts += 1
            return 0 if self.counts == 1 else 1

    racing = _service(_FillsDuringFetchRepository(database), max_courses=1)
    with pytest.raises(PlaylistLimitReachedError) as refetched:
        racing.import_playlist(playlist_url=_playlist_url(3), owner_id="owner-456")
    assert refetched.value.stage == "fetching"


def test_missing_api_key_is_configuration_error(database: Database, fake_youtube: Any) -> None:
    service = _service(CourseRepository(database), api_key=None)

    with pytest.raises(MissingConfigurationError) as exc_info:
        service.import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)
    assert exc_info.value.status_code == 500
    assert "not configured" in exc_info.value.message
    assert fake_youtube.calls == []


def test_invalid_url_fails_before_quota_and_fetch(database: Database, fake_youtube: Any) -> None:
    service = _service(CourseRepository(database))

    with pytest.raises(InvalidPlaylistUrlError) as exc_info:
        service.import_playlist(
            playlist_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            owner_id=OWNER,
        )
    assert exc_info.value.stage == "validating"
    assert exc_info.value.status_code == 400
    assert fake_youtube.calls == []


def test_upstream_not_found_persists_nothing(database: Database, fake_youtube: Any) -> None:
    repository = CourseRepository(database)

    with pytest.raises(UpstreamFetchError) as exc_info:
        _service(repository).import_playlist(playlist_url=_playlist_url(9), owner_id=OWNER)

    assert exc_info.value.reason == "not_found"
    assert exc_info.value.status_code == 404
    assert exc_info.value.retryable is True
    assert repository.count_courses(OWNER) == 0


def test_upstream_quota_exceeded_maps_to_429(database: Database, fake_youtube: Any) -> None:
    _add_course_playlist(fake_youtube, 1)
    fake_youtube.fail_next(
        "playlistItems.list",
        fake_youtube.http_error(403, "quotaExceeded: daily quota reached"),
    )

    with pytest.raises(UpstreamFetchError) as exc_info:
        _service(CourseRepository(database)).import_playlist(
            playlist_url=_playlist_url(1),
            owner_id=OWNER,
        )
    assert exc_info.value.status_code == 429
    assert "quota exceeded" in exc_info.value.message


def test_empty_playlist_is_rejected(database: Database, fake_youtube: Any) -> None:
    fake_youtube.add_playlist(_playlist_id(1), title="Empty", videos=[("v_private01", "Private video")])
    repository = CourseRepository(database)

    with pytest.raises(EmptyPlaylistError) as exc_info:
        _service(repository).import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)
    assert exc_info.value.status_code == 422
    assert repository.count_courses(OWNER) == 0


def test_import_emits_telemetry_and_publishes_event(database: Database, fake_youtube: Any) -> None:
    _add_course_playlist(fake_youtube, 1)
    sink = _RecordingSink()
    bus = EventBus()
    received: list[StudyEvent] = []
    bus.subscribe("course.imported", received.append)

    result = _service(
        CourseRepository(database),
        telemetry=TelemetryClient(enabled=True, sink=sink),
        event_bus=bus,
    ).import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)

    event_names = [name for name, _ in sink.events]
    assert event_names == [
        "playlist.import.start",
        "playlist.fetch.finish",
        "playlist.import.finish",
    ]
    finish_attributes = sink.events[-1][1]
    assert finish_attributes["imported_video_count"] == 2
    assert finish_attributes["owner_id"] != OWNER
    assert len(received) == 1
    assert received[0].attributes["course_id"] == result.course.id


def test_import_error_emits_stage_and_code(database: Database, fake_youtube: Any) -> None:
    sink = _RecordingSink()
    service = _service(
        CourseRepository(database),
        api_key=None,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )

    with pytest.raises(MissingConfigurationError):
        service.import_playlist(playlist_url=_playlist_url(1), owner_id=OWNER)

    name, attributes = sink.events[-1]
    assert name == "playlist.import.error"
    assert attributes["error_code"] == "missing_configuration"
    assert attributes["stage"] == "validating"
