import logging
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional
from uuid import uuid4

from camarket.models import ActorRef, DomainEvent
from camarket.settings import EVENT_LOG_SIZE

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


def build_event(
    event_type: str,
    actor: ActorRef,
    request_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    timestamp: Optional[str] = None,
) -> DomainEvent:
    body = {"actor_id": actor.id}
    body.update(payload or {})
    return DomainEvent(
        id=f"evt_{uuid4().hex[:12]}",
        type=event_type,
        request_id=request_id,
        actor_type=actor.kind,
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
        payload=body,
    )


class EventEmitter:
    """Outbound hook for notification and payment-gateway integrations.

    The core only emits; delivery (email, SMS, push, fund movement) is the
    job of whoever subscribes.
    """

    def __init__(self, max_recent: int = EVENT_LOG_SIZE):
        self._lock = Lock()
        self._handlers: List[EventHandler] = []
        self._recent: Deque[DomainEvent] = deque(maxlen=max_recent)

    def subscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            with self._lock:
                self._recent.appendleft(event)
                handlers = list(self._handlers)
            logger.debug("Emitting %s for request %s", event.type, event.request_id)
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    # Transition is already committed; a broken subscriber must not undo it.
                    logger.exception("Event handler failed for %s", event.type)

    def recent(
        self,
        request_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[DomainEvent]:
        with self._lock:
            rows = list(self._recent)
        if request_id:
            rows = [event for event in rows if event.request_id == request_id]
        if event_type:
            rows = [event for event in rows if event.type == event_type]
        return rows[:limit]


event_emitter = EventEmitter()
