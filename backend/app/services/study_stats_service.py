from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta

from backend.app.repositories.common import local_today
from backend.app.repositories.course_repository import CourseRepository
from backend.app.repositories.progress_repository import ProgressRepository
from backend.app.repositories.streak_repository import StreakRepository

MAX_STREAK_LOOKBACK_DAYS = 365
MAX_ACTIVITY_LEVEL = 4


@dataclass(frozen=True)
class QuotaSnapshot:
    can_import: bool
    current_count: int
    max_count: int
    remaining: int


@dataclass(frozen=True)
class ActivityDay:
    date: date
    count: int
    level: int


@dataclass(frozen=True)
class ActivityCalendar:
    days: list[ActivityDay]
    total_days: int
    active_days: int
    current_streak: int


@dataclass(frozen=True)
class DashboardStats:
    watched_videos: int
    current_streak: int
    total_courses: int
    bookmarked_videos: int
    quota: QuotaSnapshot


def compute_current_streak(active_dates: Iterable[date], *, today: date) -> int:
    """
    Count consecutive active days ending today or yesterday.

    A missing entry for today does not break a run that reaches yesterday;
    any other gap ends the walk. The walk never looks further back than
    `MAX_STREAK_LOOKBACK_DAYS`.
    """
    active = set(active_dates)
    streak = 0
    for offset in range(MAX_STREAK_LOOKBACK_DAYS):
        day = today - timedelta(days=offset)
        if day in active:
            streak += 1
        elif offset > 0:
            break
    return streak


def compute_quota(current_count: int, max_count: int) -> QuotaSnapshot:
    current = max(0, current_count)
    return QuotaSnapshot(
        can_import=current < max_count,
        current_count=current,
        max_count=max_count,
        remaining=max(0, max_count - current),
    )


def activity_level(count: int) -> int:
    if count <= 0:
        return 0
    return min(math.ceil(count / 2), MAX_ACTIVITY_LEVEL)


def build_activity_calendar(counts_by_date: dict[date, int], *, today: date) -> ActivityCalendar:
    start = date(today.year, 1, 1)
    days: list[ActivityDay] = []
    current = start
    while current <= today:
        count = counts_by_date.get(current, 0)
        days.append(ActivityDay(date=current, count=count, level=activity_level(count)))
        current += timedelta(days=1)

    return ActivityCalendar(
        days=days,
        total_days=len(days),
        active_days=sum(1 for day in days if day.count > 0),
        current_streak=compute_current_streak(
            (day for day, count in counts_by_date.items() if count > 0),
            today=today,
        ),
    )


class StudyStatsService:
    def __init__(
        self,
        *,
        course_repository: CourseRepository,
        progress_repository: ProgressRepository,
        streak_repository: StreakRepository,
        max_courses_per_owner: int,
        default_timezone: str,
    ) -> None:
        self._courses = course_repository
        self._progress = progress_repository
        self._streaks = streak_repository
        self._max_courses = max_courses_per_owner
        self._default_timezone = default_timezone

    @property
    def max_courses_per_owner(self) -> int:
        return self._max_courses

    def quota(self, owner_id: str) -> QuotaSnapshot:
        return compute_quota(self._courses.count_courses(owner_id), self._max_courses)

    def current_streak(self, owner_id: str, *, today: date | None = None) -> int:
        resolved_today = today if today is not None else local_today(self._default_timezone)
        since = resolved_today - timedelta(days=MAX_STREAK_LOOKBACK_DAYS)
        entries = self._streaks.list_activity(owner_id, since=since)
        return compute_current_streak(
            (entry.date for entry in entries if entry.watched_count > 0),
            today=resolved_today,
        )

    def dashboard(self, owner_id: str, *, today: date | None = None) -> DashboardStats:
        quota = self.quota(owner_id)
        return DashboardStats(
            watched_videos=self._progress.count_completed(owner_id),
            current_streak=self.current_streak(owner_id, today=today),
            total_courses=quota.current_count,
            bookmarked_videos=len(self._progress.list_bookmarks(owner_id)),
            quota=quota,
        )

    def activity_calendar(self, owner_id: str, *, today: date | None = None) -> ActivityCalendar:
        resolved_today = today if today is not None else local_today(self._default_timezone)
        # The streak may reach back past Jan 1, so load the full lookback window.
        since = min(
            date(resolved_today.year, 1, 1),
            resolved_today - timedelta(days=MAX_STREAK_LOOKBACK_DAYS),
        )
        entries = self._streaks.list_activity(owner_id, since=since)
        return build_activity_calendar(
            {entry.date: entry.watched_count for entry in entries},
            today=resolved_today,
        )
