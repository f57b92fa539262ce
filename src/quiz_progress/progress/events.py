"""Subscribable channel for progress mutation events."""

from collections.abc import Callable
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from quiz_progress.models.base import Timestamp, utcnow

logger = structlog.get_logger()


class ProgressEventType(StrEnum):
    LOADED = "loaded"
    ANSWER_RECORDED = "answer_recorded"
    SESSION_COMPLETED = "session_completed"
    RESET = "reset"
    REPLACED = "replaced"  # written by sync after a merge
    SAVE_FAILED = "save_failed"


class ProgressEvent(BaseModel):
    type: ProgressEventType
    identity: str
    at: Timestamp = Field(default_factory=utcnow)
    detail: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[ProgressEvent], None]


class Subscription:
    """Handle returned by ``EventChannel.subscribe``.

    Usable as a context manager so the listener lives exactly as long as its
    consumer. ``unsubscribe`` is idempotent.
    """

    def __init__(self, channel: "EventChannel", handler: EventHandler):
        self._channel = channel
        self._handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self._handler)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class EventChannel:
    """Synchronous fan-out of events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: EventHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def publish(self, event: ProgressEvent) -> None:
        # Handler failures never reach the publisher
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_error", event_type=event.type)
