from __future__ import annotations

import argparse
import sys

from backend.app.config import AppSettings, load_settings
from backend.app.logging_config import configure_application_logging
from backend.app.repositories.course_repository import CourseRepository
from backend.app.repositories.database import Database
from backend.app.repositories.progress_repository import ProgressRepository
from backend.app.repositories.streak_repository import StreakRepository
from backend.app.services.course_service import CourseNotFoundError, CourseService
from backend.app.services.playlist_fetcher import PlaylistFetcher
from backend.app.services.playlist_import_service import (
    PlaylistImportError,
    PlaylistImportService,
)
from backend.app.services.study_stats_service import StudyStatsService
from backend.app.telemetry import build_telemetry_client


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Operator commands for the Study Tracker store.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import a playlist as a course.")
    import_parser.add_argument("--owner-id", required=True, help="Owner identifier.")
    import_parser.add_argument("--url", required=True, help="YouTube playlist URL.")

    quota_parser = subparsers.add_parser("quota", help="Show an owner's course quota.")
    quota_parser.add_argument("--owner-id", required=True, help="Owner identifier.")

    courses_parser = subparsers.add_parser("courses", help="List an owner's courses.")
    courses_parser.add_argument("--owner-id", required=True, help="Owner identifier.")
    courses_parser.add_argument(
        "--delete",
        metavar="COURSE_ID",
        default=None,
        help="Delete this course with its videos and the owner's related progress.",
    )

    streak_parser = subparsers.add_parser("streak", help="Show an owner's current streak.")
    streak_parser.add_argument("--owner-id", required=True, help="Owner identifier.")

    return parser.parse_args(argv)


def _build_stats_service(settings: AppSettings, database: Database) -> StudyStatsService:
    return StudyStatsService(
        course_repository=CourseRepository(database),
        progress_repository=ProgressRepository(database),
        streak_repository=StreakRepository(database),
        max_courses_per_owner=settings.max_courses_per_owner,
        default_timezone=settings.default_timezone,
    )


def _run_import(settings: AppSettings, database: Database, *, owner_id: str, url: str) -> int:
    service = PlaylistImportService(
        course_repository=CourseRepository(database),
        fetcher=PlaylistFetcher(
            settings.youtube_api_key,
            max_pages=settings.youtube_max_playlist_pages,
            details_batch_size=settings.youtube_details_batch_size,
        ),
        max_courses_per_owner=settings.max_courses_per_owner,
        video_insert_batch_size=settings.video_insert_batch_size,
        telemetry=build_telemetry_client(
            enabled=settings.telemetry_enabled,
            sink=settings.telemetry_sink,
        ),
    )
    try:
        result = service.import_playlist(playlist_url=url, owner_id=owner_id)
    except PlaylistImportError as exc:
        print(f"Import failed ({exc.code}, stage={exc.stage}): {exc.message}", file=sys.stderr)
        return 1

    print(result.message)
    print(f"Course id: {result.course.id}")
    if result.skipped_video_count:
        print(f"Skipped unavailable videos: {result.skipped_video_count}")
    return 0


def _print_courses(course_service: CourseService, owner_id: str) -> None:
    courses = course_service.list_courses(owner_id)
    if not courses:
        print("No courses found.")
        return

    print("course_id\tplaylist_id\tvideos\tcreated_at\ttitle")
    for course in courses:
        print(
            "\t".join(
                [
                    course.id,
                    course.playlist_id,
                    str(course.video_count),
                    course.created_at,
                    course.title,
                ]
            )
        )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings()
    configure_application_logging(settings)
    database = Database(settings.db_path)
    database.initialize()

    if args.command == "import":
        return _run_import(settings, database, owner_id=args.owner_id, url=args.url)

    if args.command == "quota":
        snapshot = _build_stats_service(settings, database).quota(args.owner_id)
        print(
            f"Courses: {snapshot.current_count}/{snapshot.max_count} "
            f"(remaining {snapshot.remaining}, can import: {'yes' if snapshot.can_import else 'no'})"
        )
        return 0

    if args.command == "courses":
        course_service = CourseService(
            course_repository=CourseRepository(database),
            progress_repository=ProgressRepository(database),
        )
        if args.delete is not None:
            try:
                course_service.delete_course(args.owner_id, args.delete)
            except CourseNotFoundError:
                print(f"Course not found: {args.delete}", file=sys.stderr)
                return 1
            print(f"Deleted course: {args.delete}")
            return 0
        _print_courses(course_service, args.owner_id)
        return 0

    if args.command == "streak":
        stats_service = _build_stats_service(settings, database)
        streak = stats_service.current_streak(args.owner_id)
        print(f"Current streak: {streak} day{'s' if streak != 1 else ''}")
        return 0

    raise ValueError(f"Unsupported command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
