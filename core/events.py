"""
Domain events emitted after a unit of work commits.

Operations never talk to the transport directly. They queue an event on
the session; the outermost @transactional publishes the queue after a
successful commit and drops it on rollback, so subscribers only ever see
facts that are already durable.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_events"


class EventType(str, enum.Enum):
    SLOT_ASSIGNED = "SlotAssigned"
    SLOT_RELEASED = "SlotReleased"
    EVIDENCE_SUBMITTED = "EvidenceSubmitted"
    EVIDENCE_VERIFIED = "EvidenceVerified"
    EVIDENCE_REJECTED = "EvidenceRejected"
    FUNDS_RELEASED = "FundsReleased"
    TRANSACTION_UPDATED = "TransactionUpdated"


@dataclass(frozen=True)
class DomainEvent:
    event_type: EventType
    room_id: UUID
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[DomainEvent], None]


class EventBroadcaster:
    """In-process fan-out to whatever delivers events to clients."""

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                # The unit already committed; a broken subscriber must not undo it.
                logger.error(
                    f"Event handler {handler!r} failed for {event.event_type.value}: {e}",
                    exc_info=True
                )


broadcaster = EventBroadcaster()


def queue_event(db, event_type: EventType, room_id: UUID,
                payload: Optional[Dict[str, Any]] = None) -> None:
    db.info.setdefault(_PENDING_KEY, []).append(
        DomainEvent(event_type=event_type, room_id=room_id, payload=payload or {})
    )


def publish_pending_events(db) -> None:
    events = db.info.pop(_PENDING_KEY, [])
    for event in events:
        broadcaster.publish(event)


def discard_pending_events(db) -> None:
    db.info.pop(_PENDING_KEY, None)
