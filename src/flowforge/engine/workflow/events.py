from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    """A fact the engine emits after it has happened.

    Events never drive execution; they are notifications for observers
    (audit sinks, async connector dispatchers, dashboards).
    """

    type: str
    payload: dict[str, object]
    instance_id: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


Subscriber = Callable[[WorkflowEvent], None]


class EventBus:
    """Synchronous fan-out to subscribers.

    A failing subscriber is logged and skipped; it cannot affect the engine
    state that produced the event, which is already committed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[str | None, Subscriber]] = []

    def subscribe(self, subscriber: Subscriber, *, event_type: str | None = None) -> None:
        with self._lock:
            self._subscribers.append((event_type, subscriber))

    def publish(self, event: WorkflowEvent) -> None:
        logger.info(
            "Event %s",
            event.type,
            extra={"instance_id": event.instance_id, "event": event.type, "payload": event.payload},
        )
        with self._lock:
            subscribers = list(self._subscribers)
        for event_type, subscriber in subscribers:
            if event_type is not None and event_type != event.type:
                continue
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"instance_id": event.instance_id, "event": event.type},
                )
