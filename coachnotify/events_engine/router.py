"""Dispatch table from provider event types to handlers."""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Protocol

from coachnotify.events_engine.schemas import EventType, HandlerResult, StoredEvent


class EventHandler(Protocol):
    """Handler invoked with a claimed event.

    Raise ``EventRejectedError`` for permanent rejections and any other
    exception for failures worth retrying.
    """

    def __call__(self, event: StoredEvent) -> Optional[HandlerResult]:
        ...


class EventRouter:
    """Total mapping from every supported ``EventType`` to a handler.

    Construction fails when a supported type is missing, so an event type
    cannot be added without deciding who handles it.
    """

    def __init__(self, routes: Mapping[EventType, EventHandler]) -> None:
        missing = [event_type.value for event_type in EventType.supported() if event_type not in routes]
        if missing:
            raise ValueError(f"No handler registered for event types: {', '.join(missing)}")
        self._routes: Dict[EventType, EventHandler] = {
            event_type: handler for event_type, handler in routes.items() if event_type is not EventType.UNKNOWN
        }

    def route(self, event_type: EventType) -> Optional[EventHandler]:
        """Return the handler for ``event_type``; ``None`` only for ``UNKNOWN``."""

        return self._routes.get(event_type)
