from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

LOGGER = logging.getLogger("study_tracker.events")

StudyEventName = Literal[
    "course.imported",
    "course.deleted",
    "progress.completed",
    "progress.bookmarked",
    "notes.updated",
]
EventHandler = Callable[["StudyEvent"], None]


@dataclass(frozen=True)
class StudyEvent:
    name: StudyEventName
    owner_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """
    In-process observer used for cross-component refresh signaling.

    Handlers run synchronously on the publishing thread. A failing handler is
    logged and does not prevent delivery to the remaining subscribers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_name: StudyEventName | Literal["*"], handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_name, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, event: StudyEvent) -> int:
        with self._lock:
            handlers = [*self._handlers.get(event.name, []), *self._handlers.get("*", [])]

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                LOGGER.warning(
                    "event handler failed event=%s handler=%s",
                    event.name,
                    getattr(handler, "__qualname__", repr(handler)),
                    exc_info=True,
                )
                continue
            delivered += 1
        LOGGER.debug("event published event=%s delivered=%s", event.name, delivered)
        return delivered
