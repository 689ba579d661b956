"""
Group Order Domain Events

Each successful mutation of a session produces exactly one DomainEvent. The
engine only produces them; delivery (push / WebSocket fan-out) belongs to the
notification collaborator, which is plugged in as an EventSink.

A sink is called synchronously while the session lock is held, so it must not
block: the production sink (EventDispatcher) just enqueues.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable


class EventType(str, enum.Enum):
    PARTICIPANT_JOINED = "ParticipantJoined"
    PARTICIPANT_LEFT = "ParticipantLeft"
    PARTICIPANT_REMOVED = "ParticipantRemoved"
    ITEMS_ADDED = "ItemsAdded"
    ITEM_UPDATED = "ItemUpdated"
    ITEM_REMOVED = "ItemRemoved"
    PAYMENT_SPLIT_UPDATED = "PaymentSplitUpdated"
    SPENDING_LIMIT_SET = "SpendingLimitSet"
    SESSION_LOCKED = "SessionLocked"
    ORDER_PLACED = "OrderPlaced"
    SESSION_CANCELLED = "SessionCancelled"
    SESSION_EXPIRED = "SessionExpired"


@dataclass(frozen=True)
class DomainEvent:
    event_type: EventType
    session_id: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


EventSink = Callable[[DomainEvent], None]


def discard_events(event: DomainEvent) -> None:
    """Sink used when nobody is listening."""


class EventRecorder:
    """Sink that keeps every event in memory. Handy for tests and audit dumps."""

    def __init__(self):
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[DomainEvent]:
        return [e for e in self.events if e.event_type == event_type]

    @property
    def types(self) -> list[EventType]:
        return [e.event_type for e in self.events]

    def clear(self) -> None:
        self.events.clear()
