from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from loguru import logger

from ..storage.interfaces import EventRepository
from .ws import WebSocketHub, hub as default_hub

Subscriber = Callable[[dict[str, Any]], None]


class EventBus:
    """Outbound event stream of the engine.

    Each event is persisted, handed to in-process subscribers, then pushed to
    the websocket hub. Subscribers never see mutable engine state, only the
    event dicts.
    """

    def __init__(self, repo: EventRepository, project_id: str, *, ws_hub: Optional[WebSocketHub] = None) -> None:
        self._repo = repo
        self._project_id = project_id
        self._hub = ws_hub or default_hub
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        event = self._repo.append(
            channel=channel,
            event_type=event_type,
            entity_id=entity_id,
            payload=payload,
            project_id=self._project_id,
        )
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for {}", event_type)
        self._hub.publish_sync(event)
        return event
