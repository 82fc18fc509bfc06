import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID

from .storage import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TRANSACTION_COMMITTED = "transaction.committed"
    ACHIEVEMENT_UNLOCKED = "achievement.unlocked"
    REFERRAL_ENROLLED = "referral.enrolled"
    APPROVAL_DECIDED = "approval.decided"
    REDEMPTION_UPDATED = "redemption.updated"


@dataclass
class DomainEvent:
    type: EventType
    tenant_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[DomainEvent], None]


class EventBus:
    """Fan-out to external notifiers.

    Events are published only after the unit of work that produced them has
    committed. A failing subscriber is logged and skipped; delivery never
    feeds back into the ledger.
    """

    def __init__(self):
        self._subscribers: list[tuple[Optional[EventType], Subscriber]] = []

    def subscribe(self, handler: Subscriber, event_type: Optional[EventType] = None) -> None:
        self._subscribers.append((event_type, handler))

    def publish(self, event: DomainEvent) -> None:
        for event_type, handler in list(self._subscribers):
            if event_type is not None and event_type != event.type:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber %r failed for %s", handler, event.type.value)
