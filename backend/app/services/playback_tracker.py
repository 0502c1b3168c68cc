from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal, Protocol

from backend.app.config import AppSettings
from backend.app.repositories.checkpoint_repository import PlaybackCheckpoint

LOGGER = logging.getLogger("study_tracker.playback")

PlaybackState = Literal["unstarted", "buffering", "playing", "paused", "ended", "cued"]
SEEKABLE_STATES: frozenset[str] = frozenset({"buffering", "playing", "paused", "cued"})


class PlaybackSource(Protocol):
    def current_time(self) -> float:
        ...

    def duration(self) -> float:
        ...

    def state(self) -> PlaybackState:
        ...

    def seek_to(self, seconds: float) -> None:
        ...

    def load_video(self, video_id: str) -> None:
        ...


class CheckpointStore(Protocol):
    def get_checkpoint(self, owner_id: str, video_id: str) -> PlaybackCheckpoint | None:
        ...

    def save_checkpoint(
        self,
        owner_id: str,
        video_id: str,
        *,
        position_seconds: float,
        duration_seconds: float,
    ) -> object:
        ...


class CancellableTask(Protocol):
    def start(self) -> None:
        ...

    def cancel(self) -> None:
        ...


@dataclass(frozen=True)
class ProgressSample:
    video_id: str
    position_seconds: float
    duration_seconds: float
    percent: float


@dataclass(frozen=True)
class PlaybackTrackerConfig:
    progress_interval_seconds: float = 1.0
    checkpoint_interval_seconds: float = 5.0
    checkpoint_min_advance_seconds: float = 5.0
    resume_min_seconds: float = 10.0
    completion_threshold_percent: float = 90.0
    seek_max_attempts: int = 10
    seek_retry_interval_seconds: float = 0.5
    settle_delay_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: AppSettings) -> PlaybackTrackerConfig:
        return cls(
            progress_interval_seconds=settings.playback_progress_interval_seconds,
            checkpoint_interval_seconds=settings.playback_checkpoint_interval_seconds,
            checkpoint_min_advance_seconds=settings.playback_checkpoint_min_advance_seconds,
            resume_min_seconds=settings.playback_resume_min_seconds,
            completion_threshold_percent=settings.playback_completion_threshold_percent,
            seek_max_attempts=settings.playback_seek_max_attempts,
            seek_retry_interval_seconds=settings.playback_seek_retry_interval_seconds,
            settle_delay_seconds=settings.playback_settle_delay_seconds,
        )


class RepeatingTask:
    """Runs `callback` every `interval_seconds` on a daemon thread until cancelled."""

    def __init__(self, interval_seconds: float, callback: Callable[[], None], *, name: str) -> None:
        self._interval_seconds = max(0.01, interval_seconds)
        self._callback = callback
        self._name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self._name)
        self._thread.daemon = True
        self._thread.start()

    def cancel(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=3)
        self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self._callback()
            except Exception:
                LOGGER.warning("playback timer tick failed task=%s", self._name, exc_info=True)


TaskFactory = Callable[[float, Callable[[], None], str], CancellableTask]


def _default_task_factory(
    interval_seconds: float,
    callback: Callable[[], None],
    name: str,
) -> CancellableTask:
    return RepeatingTask(interval_seconds, callback, name=name)


class PlaybackTracker:
    """
    Tracks one playback session for one owner.

    While the source plays, two timers run: progress sampling (auto-completes
    once past the threshold) and checkpoint persistence. Pausing, ending,
    switching videos and closing flush a checkpoint and cancel both timers.
    Checkpoint writes are best-effort. A failed completion callback is logged
    and may fire again on a later sample.
    """

    def __init__(
        self,
        *,
        owner_id: str,
        video_id: str,
        source: PlaybackSource,
        checkpoint_store: CheckpointStore,
        on_complete: Callable[[str], object],
        on_progress: Callable[[ProgressSample], None] | None = None,
        config: PlaybackTrackerConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        task_factory: TaskFactory = _default_task_factory,
    ) -> None:
        self._owner_id = owner_id
        self._video_id = video_id
        self._source = source
        self._store = checkpoint_store
        self._on_complete = on_complete
        self._on_progress = on_progress
        self._config = config if config is not None else PlaybackTrackerConfig()
        self._sleep = sleep
        self._task_factory = task_factory

        self._lock = threading.RLock()
        self._completed = False
        self._resume_attempted = False
        self._last_saved_position = 0.0
        self._resume_floor: float | None = None
        self._progress_task: CancellableTask | None = None
        self._checkpoint_task: CancellableTask | None = None
        self._closed = False

    @property
    def video_id(self) -> str:
        return self._video_id

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def timers_running(self) -> bool:
        return self._progress_task is not None or self._checkpoint_task is not None

    def handle_ready(self) -> bool:
        """Resume from the stored checkpoint once per video identity."""
        with self._lock:
            if self._closed or self._resume_attempted:
                return False
            self._resume_attempted = True
            video_id = self._video_id

        checkpoint = self._load_checkpoint(video_id)
        if checkpoint is None:
            return False

        position = checkpoint.position_seconds
        if position <= self._config.resume_min_seconds:
            with self._lock:
                if video_id == self._video_id:
                    self._last_saved_position = position
            LOGGER.debug("resume skipped video_id=%s position=%.1f", video_id, position)
            return False

        resumed = self._seek_when_ready(video_id, position)
        with self._lock:
            if video_id != self._video_id:
                return False
            if resumed:
                self._last_saved_position = position
            else:
                # Positions before the stored checkpoint are not saved until playback passes it.
                self._resume_floor = position
        return resumed

    def handle_state_change(self, state: PlaybackState) -> None:
        if state == "playing":
            self._start_timers()
            return
        if state == "paused":
            self._stop_timers()
            self.save_checkpoint()
            return
        if state == "ended":
            self._stop_timers()
            self.save_checkpoint()
            self._complete_once(trigger="ended")

    def handle_error(self, error_code: object) -> None:
        LOGGER.warning(
            "playback source error owner_id=%s video_id=%s code=%s",
            self._owner_id,
            self._video_id,
            error_code,
        )

    def sample_progress(self) -> ProgressSample | None:
        with self._lock:
            if self._closed:
                return None
            video_id = self._video_id

        position = self._source.current_time()
        duration = self._source.duration()
        if duration <= 0:
            return None

        percent = min(100.0, max(0.0, position / duration * 100))
        sample = ProgressSample(
            video_id=video_id,
            position_seconds=position,
            duration_seconds=duration,
            percent=percent,
        )
        if self._on_progress is not None:
            self._on_progress(sample)
        if percent >= self._config.completion_threshold_percent:
            self._complete_once(trigger="threshold")
        return sample

    def save_checkpoint(self) -> bool:
        with self._lock:
            video_id = self._video_id
            last_saved = self._last_saved_position
            resume_floor = self._resume_floor

        try:
            position = self._source.current_time()
            duration = self._source.duration()
        except Exception:
            LOGGER.warning("checkpoint read failed video_id=%s", video_id, exc_info=True)
            return False

        if resume_floor is not None and position < resume_floor:
            return False

        if abs(position - last_saved) < self._config.checkpoint_min_advance_seconds:
            return False

        try:
            self._store.save_checkpoint(
                self._owner_id,
                video_id,
                position_seconds=position,
                duration_seconds=duration,
            )
        except Exception:
            LOGGER.warning(
                "checkpoint save failed owner_id=%s video_id=%s position=%.1f",
                self._owner_id,
                video_id,
                position,
                exc_info=True,
            )
            return False

        with self._lock:
            if video_id == self._video_id:
                self._last_saved_position = position
                self._resume_floor = None
        return True

    def switch_video(self, new_video_id: str) -> bool:
        self.save_checkpoint()
        self._stop_timers()
        with self._lock:
            if self._closed:
                return False
            previous_video_id = self._video_id
            self._video_id = new_video_id
            self._completed = False
            self._resume_attempted = False
            self._last_saved_position = 0.0
            self._resume_floor = None

        LOGGER.info(
            "playback video switched owner_id=%s from_video_id=%s to_video_id=%s",
            self._owner_id,
            previous_video_id,
            new_video_id,
        )
        self._source.load_video(new_video_id)
        self._sleep(self._config.settle_delay_seconds)
        return self.handle_ready()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
        self._stop_timers()
        self.save_checkpoint()
        with self._lock:
            self._closed = True

    def _load_checkpoint(self, video_id: str) -> PlaybackCheckpoint | None:
        try:
            return self._store.get_checkpoint(self._owner_id, video_id)
        except Exception:
            LOGGER.warning(
                "checkpoint load failed owner_id=%s video_id=%s; starting from zero",
                self._owner_id,
                video_id,
                exc_info=True,
            )
            return None

    def _seek_when_ready(self, video_id: str, position: float) -> bool:
        for attempt in range(1, self._config.seek_max_attempts + 1):
            with self._lock:
                if self._closed or video_id != self._video_id:
                    return False
            if self._source.state() in SEEKABLE_STATES:
                self._source.seek_to(position)
                LOGGER.info(
                    "playback resumed video_id=%s position=%.1f attempt=%s",
                    video_id,
                    position,
                    attempt,
                )
                return True
            self._sleep(self._config.seek_retry_interval_seconds)

        LOGGER.warning(
            "resume seek gave up video_id=%s position=%.1f attempts=%s",
            video_id,
            position,
            self._config.seek_max_attempts,
        )
        return False

    def _complete_once(self, *, trigger: str) -> bool:
        with self._lock:
            if self._closed or self._completed:
                return False
            self._completed = True
            video_id = self._video_id

        try:
            self._on_complete(video_id)
        except Exception:
            with self._lock:
                if video_id == self._video_id:
                    self._completed = False
            LOGGER.warning(
                "auto completion failed owner_id=%s video_id=%s trigger=%s",
                self._owner_id,
                video_id,
                trigger,
                exc_info=True,
            )
            return False
        LOGGER.info("video auto completed video_id=%s trigger=%s", video_id, trigger)
        return True

    def _start_timers(self) -> None:
        with self._lock:
            if self._closed or self._progress_task is not None:
                return
            self._progress_task = self._task_factory(
                self._config.progress_interval_seconds,
                self.sample_progress,
                "playback-progress",
            )
            self._checkpoint_task = self._task_factory(
                self._config.checkpoint_interval_seconds,
                self.save_checkpoint,
                "playback-checkpoint",
            )
            tasks = (self._progress_task, self._checkpoint_task)
        for task in tasks:
            task.start()

    def _stop_timers(self) -> None:
        with self._lock:
            tasks = [task for task in (self._progress_task, self._checkpoint_task) if task is not None]
            self._progress_task = None
            self._checkpoint_task = None
        for task in tasks:
            task.cancel()
