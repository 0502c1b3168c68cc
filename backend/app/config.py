from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".study-tracker"
YOUTUBE_MAX_RESULTS_PER_CALL = 50
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{STUDY_TRACKER_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    This class is the single source of truth for config options:
    - what each option controls,
    - where it comes from (`STUDY_TRACKER_*`),
    - and what its default is.
    """

    model_config = SettingsConfigDict(
        env_prefix="STUDY_TRACKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    default_timezone: str = Field(
        default="UTC",
        description="Timezone whose calendar day is used for streak activity.",
    )

    # YouTube Data API.
    youtube_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("STUDY_TRACKER_YOUTUBE_API_KEY", "YOUTUBE_API_KEY"),
        description=(
            "Server-held YouTube Data API key. Imports fail with a configuration error "
            "while it is unset; other endpoints keep working."
        ),
    )
    youtube_max_playlist_pages: int = Field(
        default=50,
        ge=1,
        description="Ceiling on playlistItems pages fetched per import.",
    )
    youtube_details_batch_size: int = Field(
        default=YOUTUBE_MAX_RESULTS_PER_CALL,
        ge=1,
        description="Video ids per videos.list duration lookup (capped by the API at 50).",
    )

    # Import quota and persistence.
    max_courses_per_owner: int = Field(
        default=4,
        ge=1,
        description="Maximum number of courses a single owner may hold at once.",
    )
    video_insert_batch_size: int = Field(
        default=50,
        ge=1,
        description="Rows per committed batch when persisting imported videos.",
    )

    # Playback tracking.
    playback_progress_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Cadence of progress sampling while a video plays.",
    )
    playback_checkpoint_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Cadence of resume checkpoint writes while a video plays.",
    )
    playback_checkpoint_min_advance_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Minimum position change since the last stored checkpoint before writing again.",
    )
    playback_resume_min_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Checkpoints at or below this position start the video from zero.",
    )
    playback_completion_threshold_percent: float = Field(
        default=90.0,
        gt=0,
        le=100,
        description="Watched percentage at which a video is auto-completed.",
    )
    playback_seek_max_attempts: int = Field(
        default=10,
        ge=1,
        description="Polling attempts while waiting for the player to accept a resume seek.",
    )
    playback_seek_retry_interval_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Delay between resume seek polling attempts.",
    )
    playback_settle_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay after loading a new video before attempting resume.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("STUDY_TRACKER_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("STUDY_TRACKER_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("default_timezone", mode="before")
    @classmethod
    def _normalize_timezone(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("STUDY_TRACKER_DEFAULT_TIMEZONE must be a non-empty string.")
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(
                f"STUDY_TRACKER_DEFAULT_TIMEZONE is not a known timezone: {normalized}"
            ) from exc
        return normalized

    @field_validator("youtube_details_batch_size", mode="after")
    @classmethod
    def _clamp_details_batch_size(cls, value: int) -> int:
        return min(value, YOUTUBE_MAX_RESULTS_PER_CALL)

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("youtube_api_key", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_playback_configuration(settings: AppSettings) -> None:
    errors: list[str] = []

    if settings.playback_checkpoint_interval_seconds < settings.playback_progress_interval_seconds:
        errors.append(
            "STUDY_TRACKER_PLAYBACK_CHECKPOINT_INTERVAL_SECONDS must not be shorter than "
            "STUDY_TRACKER_PLAYBACK_PROGRESS_INTERVAL_SECONDS."
        )
    if settings.playback_settle_delay_seconds > settings.playback_checkpoint_interval_seconds:
        errors.append(
            "STUDY_TRACKER_PLAYBACK_SETTLE_DELAY_SECONDS must not exceed "
            "STUDY_TRACKER_PLAYBACK_CHECKPOINT_INTERVAL_SECONDS."
        )

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid study tracker configuration:\n{bullets}")


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)
    _validate_playback_configuration(settings)
    return settings
