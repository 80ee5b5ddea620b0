"""
Lifecycle events
In-process publish/subscribe used after a transition has been committed.
A failing subscriber is logged and skipped; it never undoes the transition.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .shared.money import utcnow

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_AUTHORIZED = "booking.authorized"
BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_STARTED = "booking.started"
BOOKING_COMPLETED = "booking.completed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_DECLINED = "booking.declined"
PLAN_CREATED = "plan.created"
PLAN_PAUSED = "plan.paused"
PLAN_RESUMED = "plan.resumed"
PLAN_CANCELLED = "plan.cancelled"
PLAN_ADVANCED = "plan.advanced"
PLAN_FIRING_FAILED = "plan.firing_failed"
CREDIT_EARNED = "credit.earned"
CREDIT_CONSUMED = "credit.consumed"
CREDIT_RELEASED = "credit.released"

ALL_EVENTS = "*"


@dataclass
class LifecycleEvent:
    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "event": self.name,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.payload,
        }


Subscriber = Callable[[LifecycleEvent], None]


class EventBus:
    """Synchronous dispatcher; one bus per engine (request or job)"""

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self.published: list[LifecycleEvent] = []

    def subscribe(self, name: str, handler: Subscriber) -> None:
        self._subscribers[name].append(handler)

    def publish(self, name: str, **payload) -> LifecycleEvent:
        event = LifecycleEvent(name=name, payload=payload)
        self.published.append(event)

        for handler in self._subscribers.get(name, []) + self._subscribers.get(ALL_EVENTS, []):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"❌ Subscriber {getattr(handler, '__qualname__', handler)} failed for {name}: {e}"
                )
        return event
