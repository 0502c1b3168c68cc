from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any, cast

import pytest
from pydantic import ValidationError

from backend.app.models.study_contracts import (
    ActivityCalendarResponse,
    ImportPlaylistRequest,
    ImportPlaylistResponse,
)
from backend.app.scripts.export_openapi import main as export_openapi
from backend.app.scripts.study_admin import main as study_admin
from backend.app.services.study_stats_service import build_activity_calendar


def test_import_request_normalizes_text_and_aliases() -> None:
    request = ImportPlaylistRequest.model_validate(
        {"playlistUrl": "  https://youtu.be/x?list=PLabcdefghij  ", "userId": " owner-1 "}
    )

    assert request.playlist_url == "https://youtu.be/x?list=PLabcdefghij"
    assert request.owner_id == "owner-1"

    with pytest.raises(ValidationError):
        ImportPlaylistRequest.model_validate({"playlistUrl": "x", "ownerId": "o", "extra": True})


def test_import_response_serializes_camel_case() -> None:
    response = ImportPlaylistResponse(success=False, error="Limit reached.", limit_reached=True)

    assert response.model_dump(by_alias=True, exclude_none=True) == {
        "success": False,
        "error": "Limit reached.",
        "limitReached": True,
    }


def test_activity_calendar_response_uses_iso_dates() -> None:
    calendar = build_activity_calendar({date(2026, 1, 2): 3}, today=date(2026, 1, 3))

    payload = ActivityCalendarResponse.from_calendar(calendar).model_dump(mode="json", by_alias=True)

    assert [day["date"] for day in payload["days"]] == ["2026-01-01", "2026-01-02", "2026-01-03"]
    assert payload["days"][1]["level"] == 2
    assert payload["activeDays"] == 1


def test_export_openapi_writes_schema(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    export_openapi([])

    output = tmp_path / "openapi" / "openapi.json"
    assert output.exists()

    schema = cast(dict[str, Any], json.loads(output.read_text(encoding="utf-8")))
    assert schema["info"]["title"] == "Study Tracker API"
    assert "/import-playlist" in schema["paths"]
    assert "/owners/{owner_id}/courses/{course_id}" in schema["paths"]


def test_study_admin_reports_quota_and_streak(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STUDY_TRACKER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("STUDY_TRACKER_MAX_COURSES_PER_OWNER", "3")

    assert study_admin(["quota", "--owner-id", "owner-1"]) == 0
    assert study_admin(["streak", "--owner-id", "owner-1"]) == 0
    assert study_admin(["courses", "--owner-id", "owner-1"]) == 0
    assert study_admin(["courses", "--owner-id", "owner-1", "--delete", "course_missing"]) == 1

    captured = capsys.readouterr()
    assert "Courses: 0/3 (remaining 3, can import: yes)" in captured.out
    assert "Current streak: 0 days" in captured.out
    assert "No courses found." in captured.out
    assert "Course not found: course_missing" in captured.err


def test_study_admin_import_uses_configured_key(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    fake_youtube: Any,
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STUDY_TRACKER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("STUDY_TRACKER_YOUTUBE_API_KEY", "cli-key")
    monkeypatch.setenv("STUDY_TRACKER_TELEMETRY_SINK", "none")
    fake_youtube.add_playlist(
        "PLcliImportCourse1",
        title="CLI Course",
        videos=[("vid_cli_0001", "One"), ("vid_cli_0002", "Two")],
    )

    exit_code = study_admin(
        ["import", "--owner-id", "owner-1", "--url", "https://youtube.com/playlist?list=PLcliImportCourse1"]
    )

    assert exit_code == 0
    assert 'Successfully imported "CLI Course" with 2 videos!' in capsys.readouterr().out
    assert fake_youtube.built_with["developerKey"] == "cli-key"

    assert study_admin(["import", "--owner-id", "owner-1", "--url", "not a url"]) == 1
    assert "invalid_url" in capsys.readouterr().err
