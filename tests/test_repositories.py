from __future__ import annotations

import sqlite3
from datetime import date
from pathlib import Path

import pytest

from backend.app.repositories.checkpoint_repository import CheckpointRepository
from backend.app.repositories.course_repository import CourseRecord, CourseRepository, NewVideo
from backend.app.repositories.database import Database
from backend.app.repositories.progress_repository import ProgressRepository
from backend.app.repositories.streak_repository import StreakRepository


def _create(
    repository: CourseRepository,
    playlist_id: str,
    *,
    owner_id: str = "owner-1",
    max_courses: int = 4,
) -> CourseRecord | None:
    return repository.create_course(
        owner_id=owner_id,
        playlist_id=playlist_id,
        title=f"Course {playlist_id}",
        thumbnail="https://i.ytimg.com/pl/mq.jpg",
        video_count=2,
        max_courses=max_courses,
    )


def _videos(*video_ids: str) -> list[NewVideo]:
    return [
        NewVideo(video_id=video_id, title=f"Lesson {video_id}", thumbnail="", duration="3:00", position=index)
        for index, video_id in enumerate(video_ids)
    ]


def test_database_initialize_creates_parent_directory(tmp_path: Path) -> None:
    db = Database(tmp_path / "nested" / "state.db")
    db.initialize()
    db.initialize()

    assert db.path.exists()
    with db.connection() as conn:
        tables = {
            str(row["name"])
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
    assert {"courses", "videos", "user_progress", "streak_activity", "video_timestamps"} <= tables


def test_create_course_respects_quota(database: Database) -> None:
    repository = CourseRepository(database)

    assert _create(repository, "PLfirstcourse01", max_courses=2) is not None
    assert _create(repository, "PLsecondcourse2", max_courses=2) is not None
    assert _create(repository, "PLthirdcourse03", max_courses=2) is None
    assert _create(repository, "PLthirdcourse03", owner_id="owner-2", max_courses=2) is not None

    assert repository.count_courses("owner-1") == 2
    assert repository.count_courses("owner-2") == 1


def test_create_course_rejects_duplicate_playlist(database: Database) -> None:
    repository = CourseRepository(database)
    _create(repository, "PLduplicate0001")

    with pytest.raises(sqlite3.IntegrityError):
        _create(repository, "PLduplicate0001")


def test_create_videos_in_batches_preserves_order(database: Database) -> None:
    repository = CourseRepository(database)
    course = _create(repository, "PLbatchedvideos")
    assert course is not None

    inserted = repository.create_videos(course.id, _videos("a", "b", "c", "d", "e"), batch_size=2)

    assert inserted == 5
    assert repository.count_videos(course.id) == 5
    assert [video.video_id for video in repository.list_videos(course.id)] == ["a", "b", "c", "d", "e"]


def test_get_course_is_owner_scoped(database: Database) -> None:
    repository = CourseRepository(database)
    course = _create(repository, "PLownerscoped01")
    assert course is not None

    assert repository.get_course("owner-1", course.id) == course
    assert repository.get_course("owner-2", course.id) is None
    assert repository.find_by_playlist("owner-1", "PLownerscoped01") == course
    assert [listed.id for listed in repository.list_courses("owner-1")] == [course.id]


def test_delete_course_keeps_progress_for_shared_videos(database: Database) -> None:
    courses = CourseRepository(database)
    progress = ProgressRepository(database)
    checkpoints = CheckpointRepository(database)
    first = _create(courses, "PLsharedfirst01")
    second = _create(courses, "PLsharedsecond2")
    assert first is not None and second is not None
    courses.create_videos(first.id, _videos("shared", "only-first"))
    courses.create_videos(second.id, _videos("shared"))
    for video_id in ("shared", "only-first"):
        progress.mark_completed("owner-1", video_id, completed_at="2026-03-14T10:00:00+00:00")
        checkpoints.upsert_checkpoint("owner-1", video_id, position_seconds=30, duration_seconds=180)

    assert courses.delete_course_with_related_data("owner-2", first.id) is False
    assert courses.delete_course_with_related_data("owner-1", first.id) is True

    assert courses.get_course("owner-1", first.id) is None
    assert courses.count_videos(first.id) == 0
    assert progress.get_progress("owner-1", "only-first") is None
    assert checkpoints.get_checkpoint("owner-1", "only-first") is None
    assert progress.get_progress("owner-1", "shared") is not None
    assert checkpoints.get_checkpoint("owner-1", "shared") is not None
    assert courses.delete_course_with_related_data("owner-1", first.id) is False


def test_progress_upserts_keep_other_fields(database: Database) -> None:
    repository = ProgressRepository(database)

    assert repository.mark_completed("owner-1", "video-a", completed_at="2026-03-14T10:00:00+00:00") is True
    assert repository.mark_completed("owner-1", "video-a", completed_at="2026-03-15T10:00:00+00:00") is False

    bookmarked = repository.set_bookmarked("owner-1", "video-a", bookmarked=True)
    assert bookmarked.completed is True
    assert bookmarked.completed_at == "2026-03-14T10:00:00+00:00"

    noted = repository.set_notes("owner-1", "video-a", notes="see lecture 3")
    assert noted.bookmarked is True
    assert noted.notes == "see lecture 3"
    assert repository.count_completed("owner-1") == 1
    assert repository.count_completed("owner-2") == 0


def test_list_notes_skips_blank_notes(database: Database) -> None:
    courses = CourseRepository(database)
    progress = ProgressRepository(database)
    course = _create(courses, "PLnotescourse01")
    assert course is not None
    courses.create_videos(course.id, _videos("with-notes", "blank-notes", "no-course"))
    progress.set_notes("owner-1", "with-notes", notes="binary search bounds")
    progress.set_notes("owner-1", "blank-notes", notes="   ")
    progress.set_notes("owner-1", "orphan", notes="not in any course")

    entries = progress.list_notes("owner-1")

    assert [entry.video_id for entry in entries] == ["with-notes"]
    assert entries[0].course_id == course.id
    assert entries[0].title == "Lesson with-notes"


def test_streak_activity_increments_per_day(database: Database) -> None:
    repository = StreakRepository(database)

    repository.record_activity("owner-1", date(2026, 3, 14))
    second = repository.record_activity("owner-1", date(2026, 3, 14))
    repository.record_activity("owner-1", date(2026, 3, 15))
    repository.record_activity("owner-1", date(2026, 1, 2))

    assert second.watched_count == 2
    entries = repository.list_activity("owner-1", since=date(2026, 3, 1))
    assert [(entry.date, entry.watched_count) for entry in entries] == [
        (date(2026, 3, 14), 2),
        (date(2026, 3, 15), 1),
    ]
    assert len(repository.list_activity("owner-1")) == 3
    assert repository.list_activity("owner-2") == []


def test_checkpoint_upsert_clamps_negative_values(database: Database) -> None:
    repository = CheckpointRepository(database)

    repository.upsert_checkpoint("owner-1", "video-a", position_seconds=42.0, duration_seconds=300.0)
    updated = repository.upsert_checkpoint("owner-1", "video-a", position_seconds=-5.0, duration_seconds=-1.0)

    assert updated.position_seconds == 0.0
    stored = repository.get_checkpoint("owner-1", "video-a")
    assert stored is not None
    assert stored.position_seconds == 0.0
    assert stored.duration_seconds == 0.0
    assert repository.get_checkpoint("owner-2", "video-a") is None


def test_completion_with_activity_counts_first_completion_only(database: Database) -> None:
    repository = ProgressRepository(database)
    day = date(2026, 3, 14)

    entry = repository.mark_completed_with_activity(
        "owner-1", "video-a", completed_at="2026-03-14T10:00:00+00:00", activity_date=day
    )
    again = repository.mark_completed_with_activity(
        "owner-1", "video-a", completed_at="2026-03-14T11:00:00+00:00", activity_date=day
    )

    assert entry is not None
    assert entry.watched_count == 1
    assert again is None
    assert [item.watched_count for item in StreakRepository(database).list_activity("owner-1")] == [1]


def test_contains_video_is_course_scoped(database: Database) -> None:
    repository = CourseRepository(database)
    first = _create(repository, "PLcontainsfirst")
    second = _create(repository, "PLcontainssecnd")
    assert first is not None and second is not None
    repository.create_videos(first.id, _videos("lesson-1"))

    assert repository.contains_video(first.id, "lesson-1") is True
    assert repository.contains_video(second.id, "lesson-1") is False
    assert repository.contains_video(first.id, "lesson-2") is False
