"""Fire-and-forget lifecycle notifications for actors.

Listeners are plain callables registered per event name. A listener that
raises is logged and skipped; it never changes the pipeline outcome.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

ACTOR_SUBMITTED = "actor.submitted"
ACTOR_PROCESSED = "actor.processed"
ACTOR_PROCESSING_FAILED = "actor.processing_failed"
ACTOR_DELETED = "actor.deleted"

Listener = Callable[..., Any]


class EventBus:
    """Synchronous observer list keyed by event name."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def unsubscribe(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def emit(self, event: str, **payload: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(**payload)
            except Exception:
                logger.exception(
                    f"Listener {getattr(listener, '__name__', listener)!r} failed for {event}",
                    extra={"event": event},
                )


def _log_actor_event(event: str, level: int = logging.INFO) -> Listener:
    def listener(actor, error: BaseException | None = None, **_: Any) -> None:
        extra = {"event": event, "actor_id": actor.id, "actor_uuid": actor.uuid}
        if error is not None:
            extra["error"] = str(error)
        logger.log(level, f"{event} event fired", extra=extra)

    listener.__name__ = f"log_{event.replace('.', '_')}"
    return listener


def register_default_listeners(bus: EventBus) -> EventBus:
    """Attach the logging listeners every deployment gets."""
    bus.subscribe(ACTOR_SUBMITTED, _log_actor_event(ACTOR_SUBMITTED))
    bus.subscribe(ACTOR_PROCESSED, _log_actor_event(ACTOR_PROCESSED))
    bus.subscribe(ACTOR_PROCESSING_FAILED, _log_actor_event(ACTOR_PROCESSING_FAILED, logging.ERROR))
    bus.subscribe(ACTOR_DELETED, _log_actor_event(ACTOR_DELETED))
    return bus


_default_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Process-wide bus with the default listeners attached."""
    global _default_bus
    if _default_bus is None:
        _default_bus = register_default_listeners(EventBus())
    return _default_bus
