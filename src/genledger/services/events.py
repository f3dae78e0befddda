"""Fire-and-forget notification bus for history and generation events.

Engine components never call UI or automation collaborators directly: they
return transition results and the tracker publishes those results here.
Subscribers are plain callables; a failing subscriber is logged and skipped so
it can never break the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Mapping

import structlog

from genledger.models.history import utcnow

logger = structlog.get_logger()

GENERATION_DETECTED = "generation-detected"
HISTORY_UPDATED = "history-updated"
RAIL_PROGRESS = "rail-progress"
GENERATION_STATUS = "generation-status"


@dataclass(frozen=True)
class Notification:
    """Structured message delivered to subscribers."""

    name: str
    payload: Mapping[str, Any]
    timestamp: datetime = field(default_factory=utcnow)


Subscriber = Callable[[Notification], None]


class EventBus:
    """In-process publish/subscribe by event name (``"*"`` receives everything)."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self.published: list[Notification] = []
        self.keep_history = False

    def subscribe(self, name: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for ``name`` and return an unsubscribe function."""
        self._subscribers.setdefault(name, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def publish(self, name: str, **payload: Any) -> Notification:
        notification = Notification(name=name, payload=MappingProxyType(dict(payload)))
        if self.keep_history:
            self.published.append(notification)

        callbacks = tuple(self._subscribers.get(name, ())) + tuple(self._subscribers.get("*", ()))
        for callback in callbacks:
            try:
                callback(notification)
            except Exception as e:
                logger.warning(
                    "events.subscriber_failed",
                    event_name=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return notification

    def history_updated(self, change: str, image_id: str, **extra: Any) -> Notification:
        return self.publish(HISTORY_UPDATED, type=change, image_id=image_id, **extra)
