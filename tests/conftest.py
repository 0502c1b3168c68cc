from __future__ import annotations

import types
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app
from backend.app.repositories.database import Database


class FakeHttpError(Exception):
    """Mimics googleapiclient's HttpError: carries `resp.status`."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.resp = types.SimpleNamespace(status=status)


class _FakeRequest:
    def __init__(self, client: FakeYouTubeClient, operation: str, kwargs: dict[str, Any]) -> None:
        self._client = client
        self._operation = operation
        self._kwargs = kwargs

    def execute(self) -> dict[str, object]:
        return self._client.respond(self._operation, self._kwargs)


class _FakeResource:
    def __init__(self, client: FakeYouTubeClient, operation: str) -> None:
        self._client = client
        self._operation = operation

    def list(self, **kwargs: Any) -> _FakeRequest:
        return _FakeRequest(self._client, self._operation, kwargs)


class FakeYouTubeClient:
    def __init__(self) -> None:
        self.headers: dict[str, dict[str, object]] = {}
        self.pages: dict[str, list[list[dict[str, object]]]] = {}
        self.durations: dict[str, str] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.built_with: dict[str, object] = {}

    def playlists(self) -> _FakeResource:
        return _FakeResource(self, "playlists.list")

    def playlistItems(self) -> _FakeResource:  # noqa: N802
        return _FakeResource(self, "playlistItems.list")

    def videos(self) -> _FakeResource:
        return _FakeResource(self, "videos.list")

    def add_playlist(
        self,
        playlist_id: str,
        *,
        title: str,
        videos: list[tuple[str, str]],
        page_size: int = 50,
        duration: str = "PT4M13S",
    ) -> None:
        self.headers[playlist_id] = {
            "title": title,
            "thumbnails": {"medium": {"url": f"https://i.ytimg.com/pl/{playlist_id}/mq.jpg"}},
        }
        items: list[dict[str, object]] = []
        for video_id, video_title in videos:
            items.append(
                {
                    "snippet": {
                        "title": video_title,
                        "resourceId": {"kind": "youtube#video", "videoId": video_id},
                        "thumbnails": {
                            "medium": {"url": f"https://i.ytimg.com/vi/{video_id}/mqdefault.jpg"}
                        },
                    },
                    "contentDetails": {"videoId": video_id},
                }
            )
            if video_title not in {"Private video", "Deleted video"}:
                self.durations[video_id] = duration
        self.pages[playlist_id] = [
            items[index : index + page_size] for index in range(0, len(items), page_size)
        ] or [[]]

    @staticmethod
    def http_error(status: int, message: str) -> FakeHttpError:
        return FakeHttpError(status, message)

    def fail_next(self, operation: str, error: Exception) -> None:
        self.failures.setdefault(operation, []).append(error)

    def call_count(self, operation: str) -> int:
        return sum(1 for called, _ in self.calls if called == operation)

    def respond(self, operation: str, kwargs: dict[str, Any]) -> dict[str, object]:
        self.calls.append((operation, kwargs))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

        if operation == "playlists.list":
            header = self.headers.get(str(kwargs.get("id")))
            return {"items": [] if header is None else [{"snippet": header}]}

        if operation == "playlistItems.list":
            pages = self.pages.get(str(kwargs.get("playlistId")), [[]])
            index = int(str(kwargs.get("pageToken") or "0"))
            response: dict[str, object] = {"items": pages[index]}
            if index + 1 < len(pages):
                response["nextPageToken"] = str(index + 1)
            return response

        if operation == "videos.list":
            requested = str(kwargs.get("id", "")).split(",")
            return {
                "items": [
                    {"id": video_id, "contentDetails": {"duration": self.durations[video_id]}}
                    for video_id in requested
                    if video_id in self.durations
                ]
            }
        raise AssertionError(f"Unexpected operation: {operation}")


@pytest.fixture
def fake_youtube(monkeypatch: pytest.MonkeyPatch) -> FakeYouTubeClient:
    client = FakeYouTubeClient()

    def fake_import_module(name: str) -> object:
        def _build(*args: object, **kwargs: object) -> FakeYouTubeClient:
            client.built_with["args"] = args
            client.built_with.update(kwargs)
            return client

        if name == "googleapiclient.discovery":
            return types.SimpleNamespace(build=_build)
        raise AssertionError(f"Unexpected module import: {name}")

    monkeypatch.setattr("backend.app.services.playlist_fetcher.import_module", fake_import_module)
    return client


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_youtube: FakeYouTubeClient,
) -> Iterator[TestClient]:
    _ = fake_youtube
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("STUDY_TRACKER_DATA_DIR", str(data_dir))
    monkeypatch.setenv("STUDY_TRACKER_YOUTUBE_API_KEY", "test-youtube-key")
    monkeypatch.setenv("STUDY_TRACKER_TELEMETRY_SINK", "none")
    monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
