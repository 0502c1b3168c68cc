from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from importlib import import_module
from typing import Any, cast
from urllib.parse import parse_qs, urlparse

LOGGER = logging.getLogger("study_tracker.youtube")

PLACEHOLDER_THUMBNAIL = "/placeholder.svg?height=180&width=320"
UNKNOWN_DURATION = "0:00"
DEFAULT_PLAYLIST_TITLE = "Untitled Playlist"
DEFAULT_VIDEO_TITLE = "Untitled Video"
YOUTUBE_MAX_RESULTS = 50

PLAYLIST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{10,}$")
PLAYLIST_URL_ID_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[&?]list=([^&#\s]+)"),
    re.compile(r"youtu\.be/.*[?&]list=([^&#\s]+)"),
)
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
YOUTUBE_HOSTS: frozenset[str] = frozenset(
    {
        "youtube.com",
        "www.youtube.com",
        "m.youtube.com",
        "music.youtube.com",
        "youtu.be",
    }
)
UNAVAILABLE_VIDEO_TITLES: frozenset[str] = frozenset(
    {
        "private video",
        "deleted video",
        "[private video]",
        "[deleted video]",
    }
)
THUMBNAIL_PREFERENCE: tuple[str, ...] = ("medium", "high", "default", "standard", "maxres")
QUOTA_ERROR_MARKERS: tuple[str, ...] = (
    "quotaexceeded",
    "dailylimitexceeded",
    "ratelimitexceeded",
    "userratelimitexceeded",
    "quota exceeded",
)


@dataclass(frozen=True)
class FetchedVideo:
    video_id: str
    title: str
    thumbnail: str
    duration: str
    position: int


@dataclass(frozen=True)
class FetchedPlaylist:
    playlist_id: str
    title: str
    thumbnail: str
    videos: list[FetchedVideo]
    skipped_count: int
    pages_fetched: int
    truncated: bool
    estimated_api_units: int


@dataclass(frozen=True)
class PlaylistUrlValidation:
    is_valid: bool
    playlist_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class _PlaylistEntry:
    video_id: str
    title: str
    thumbnail: str


class YouTubeFetchError(Exception):
    reason = "upstream"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class YouTubeConfigurationError(YouTubeFetchError):
    reason = "configuration"


class InvalidPlaylistIdError(YouTubeFetchError):
    reason = "invalid_id"


class PlaylistNotFoundError(YouTubeFetchError):
    reason = "not_found"


class PlaylistAccessDeniedError(YouTubeFetchError):
    reason = "access_denied"


class YouTubeQuotaExceededError(YouTubeFetchError):
    reason = "quota_exceeded"


class EmptyPlaylistError(YouTubeFetchError):
    reason = "empty"


def extract_playlist_id(url: str) -> str | None:
    """Return the well-formed `list=` identifier carried by `url`, if any."""
    if not isinstance(url, str):
        return None
    for pattern in PLAYLIST_URL_ID_PATTERNS:
        matched = pattern.search(url.strip())
        if matched is None:
            continue
        candidate = matched.group(1)
        if PLAYLIST_ID_PATTERN.match(candidate):
            return candidate
        return None
    return None


def validate_playlist_url(url: str | None) -> PlaylistUrlValidation:
    if url is None or not url.strip():
        return PlaylistUrlValidation(is_valid=False, error="Please enter a playlist URL.")

    normalized = url.strip()
    parsed = urlparse(normalized if "://" in normalized else f"https://{normalized}")
    host = (parsed.hostname or "").lower()
    if host not in YOUTUBE_HOSTS:
        return PlaylistUrlValidation(
            is_valid=False,
            error="Please enter a YouTube URL (youtube.com or youtu.be).",
        )

    raw_list_values = parse_qs(parsed.query).get("list")
    if not raw_list_values:
        return PlaylistUrlValidation(
            is_valid=False,
            error=(
                "This URL does not point to a playlist. "
                "Make sure it contains the 'list=' parameter."
            ),
        )

    playlist_id = extract_playlist_id(normalized)
    if playlist_id is None:
        return PlaylistUrlValidation(
            is_valid=False,
            error="The playlist identifier in this URL is malformed.",
        )
    return PlaylistUrlValidation(is_valid=True, playlist_id=playlist_id)


def format_duration(raw_value: object) -> str:
    """Convert an ISO-8601 duration (`PT1H2M3S`) into a `1:02:03` clock string."""
    if not isinstance(raw_value, str):
        return UNKNOWN_DURATION
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return UNKNOWN_DURATION

    hours = int(matched.group("days") or 0) * 24 + int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


class PlaylistFetcher:
    """
    Reads playlist metadata from the YouTube Data API.

    Stateless apart from the lazily built API client; every call is a pure
    outbound read and safe to retry.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        max_pages: int = 50,
        details_batch_size: int = YOUTUBE_MAX_RESULTS,
    ) -> None:
        self._api_key = api_key.strip() if isinstance(api_key, str) and api_key.strip() else None
        self._max_pages = max(1, max_pages)
        self._details_batch_size = max(1, min(YOUTUBE_MAX_RESULTS, details_batch_size))
        self._client: Any | None = None

    @property
    def configured(self) -> bool:
        return self._api_key is not None

    def fetch_playlist(self, playlist_id: str) -> FetchedPlaylist:
        if not isinstance(playlist_id, str) or not PLAYLIST_ID_PATTERN.match(playlist_id):
            raise InvalidPlaylistIdError(f"Malformed playlist identifier: {playlist_id!r}")

        client = self._get_client()
        title, thumbnail = _fetch_playlist_header(client, playlist_id)
        estimated_api_units = 1

        entries: list[_PlaylistEntry] = []
        skipped_count = 0
        pages_fetched = 0
        page_token: str | None = None
        truncated = False
        while True:
            page_entries, page_skipped, page_token = _fetch_playlist_items_page(
                client,
                playlist_id=playlist_id,
                page_token=page_token,
            )
            pages_fetched += 1
            estimated_api_units += 1
            entries.extend(page_entries)
            skipped_count += page_skipped

            if page_token is None:
                break
            if pages_fetched >= self._max_pages:
                truncated = True
                LOGGER.warning(
                    "youtube playlist truncated playlist_id=%s pages=%s entries=%s",
                    playlist_id,
                    pages_fetched,
                    len(entries),
                )
                break

        if not entries:
            raise EmptyPlaylistError(
                "This playlist appears to be empty or all videos are private/deleted."
            )

        durations, detail_calls = _fetch_durations(
            client,
            [entry.video_id for entry in entries],
            batch_size=self._details_batch_size,
        )
        estimated_api_units += detail_calls

        videos = [
            FetchedVideo(
                video_id=entry.video_id,
                title=entry.title,
                thumbnail=entry.thumbnail,
                duration=durations.get(entry.video_id, UNKNOWN_DURATION),
                position=position,
            )
            for position, entry in enumerate(entries)
        ]
        LOGGER.info(
            "youtube playlist fetched playlist_id=%s videos=%s skipped=%s pages=%s units=%s",
            playlist_id,
            len(videos),
            skipped_count,
            pages_fetched,
            estimated_api_units,
        )
        return FetchedPlaylist(
            playlist_id=playlist_id,
            title=title,
            thumbnail=thumbnail,
            videos=videos,
            skipped_count=skipped_count,
            pages_fetched=pages_fetched,
            truncated=truncated,
            estimated_api_units=estimated_api_units,
        )

    def _get_client(self) -> Any:
        if self._api_key is None:
            raise YouTubeConfigurationError("YouTube API key is not configured on the server.")
        if self._client is None:
            self._client = _build_youtube_client(self._api_key)
        return self._client


def _build_youtube_client(api_key: str) -> Any:
    try:
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise YouTubeConfigurationError(
            "Playlist import requires the google-api-python-client dependency"
        ) from exc

    build_fn: Any = discovery_module.build
    return build_fn("youtube", "v3", developerKey=api_key, cache_discovery=False)


def _fetch_playlist_header(client: Any, playlist_id: str) -> tuple[str, str]:
    response = _execute(
        client.playlists().list(part="snippet", id=playlist_id, maxResults=1),
        operation="playlists.list",
    )
    items = _as_list(response.get("items"))
    if not items:
        raise PlaylistNotFoundError("Playlist not found or is private")

    snippet = _as_dict(_as_dict(items[0]).get("snippet"))
    title = _coerce_nonempty_string(snippet.get("title")) or DEFAULT_PLAYLIST_TITLE
    return title, _pick_thumbnail(snippet)


def _fetch_playlist_items_page(
    client: Any,
    *,
    playlist_id: str,
    page_token: str | None,
) -> tuple[list[_PlaylistEntry], int, str | None]:
    query_kwargs: dict[str, object] = {
        "part": "snippet,contentDetails",
        "playlistId": playlist_id,
        "maxResults": YOUTUBE_MAX_RESULTS,
    }
    if page_token is not None:
        query_kwargs["pageToken"] = page_token

    response = _execute(
        client.playlistItems().list(**query_kwargs),
        operation="playlistItems.list",
    )

    entries: list[_PlaylistEntry] = []
    skipped = 0
    for item in _as_list(response.get("items")):
        item_dict = _as_dict(item)
        snippet = _as_dict(item_dict.get("snippet"))
        content_details = _as_dict(item_dict.get("contentDetails"))
        resource = _as_dict(snippet.get("resourceId"))
        video_id = _coerce_nonempty_string(resource.get("videoId")) or _coerce_nonempty_string(
            content_details.get("videoId")
        )
        title = _coerce_nonempty_string(snippet.get("title"))

        if video_id is None or _is_unavailable_title(title):
            skipped += 1
            continue

        entries.append(
            _PlaylistEntry(
                video_id=video_id,
                title=title or DEFAULT_VIDEO_TITLE,
                thumbnail=_pick_thumbnail(snippet),
            )
        )

    raw_next = response.get("nextPageToken")
    next_page_token = raw_next if isinstance(raw_next, str) and raw_next.strip() else None
    return entries, skipped, next_page_token


def _fetch_durations(
    client: Any,
    video_ids: list[str],
    *,
    batch_size: int,
) -> tuple[dict[str, str], int]:
    durations: dict[str, str] = {}
    calls = 0
    for index in range(0, len(video_ids), batch_size):
        chunk = video_ids[index : index + batch_size]
        calls += 1
        try:
            response = _execute(
                client.videos().list(
                    part="contentDetails",
                    id=",".join(chunk),
                    maxResults=len(chunk),
                ),
                operation="videos.list",
            )
        except YouTubeFetchError as exc:
            LOGGER.warning(
                "youtube duration batch failed batch_start=%s batch_size=%s reason=%s",
                index,
                len(chunk),
                exc.reason,
                exc_info=True,
            )
            continue

        for item in _as_list(response.get("items")):
            item_dict = _as_dict(item)
            raw_video_id = item_dict.get("id")
            if not isinstance(raw_video_id, str):
                continue
            content_details = _as_dict(item_dict.get("contentDetails"))
            durations[raw_video_id] = format_duration(content_details.get("duration"))
    return durations, calls


def _execute(request: Any, *, operation: str) -> dict[str, Any]:
    try:
        return _as_dict(request.execute())
    except YouTubeFetchError:
        raise
    except Exception as exc:
        raise _classify_api_error(exc, operation=operation) from exc


def _classify_api_error(exc: Exception, *, operation: str) -> YouTubeFetchError:
    status = _extract_http_status(exc)
    message = str(exc).lower()
    summary = _summarize_exception_message(exc)

    if status in (403, 429) and any(marker in message for marker in QUOTA_ERROR_MARKERS):
        return YouTubeQuotaExceededError(f"YouTube API quota exceeded during {operation}")
    if status == 429:
        return YouTubeQuotaExceededError(f"YouTube API rate limited {operation}")
    if status == 403:
        return PlaylistAccessDeniedError(
            "This playlist is private. Please make sure the playlist is public or unlisted."
        )
    if status == 404:
        return PlaylistNotFoundError("Playlist not found or is private")
    if status is None and isinstance(exc, OSError | TimeoutError):
        return YouTubeFetchError(f"Network error during {operation}: {summary}", reason="network")
    return YouTubeFetchError(f"YouTube API error during {operation}: {summary}")


def _extract_http_status(exc: Exception) -> int | None:
    response = getattr(exc, "resp", None)
    raw_status = getattr(response, "status", None)
    if raw_status is None:
        raw_status = getattr(exc, "status_code", None)
    try:
        return int(raw_status) if raw_status is not None else None
    except (TypeError, ValueError):
        return None


def _is_unavailable_title(title: str | None) -> bool:
    if title is None:
        return False
    return title.strip().lower() in UNAVAILABLE_VIDEO_TITLES


def _pick_thumbnail(snippet: dict[str, Any]) -> str:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in (*THUMBNAIL_PREFERENCE, *thumbnails.keys()):
        url_value = _as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url_value, str) and url_value.strip():
            return url_value
    return PLACEHOLDER_THUMBNAIL


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip()
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
