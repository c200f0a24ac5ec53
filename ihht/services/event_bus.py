"""
In-process event bus for session events.

Subscribers register a handler, optionally filtered to one event type, and
get back a Subscription handle that removes it again. Handler failures are
logged and never propagate into the publisher.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

import structlog

from ihht.domain.models.session import SessionEvent, SessionEventType

log = structlog.get_logger(__name__)

EventHandler = Callable[[SessionEvent], None]


@dataclass(eq=False)
class Subscription:
    """Handle returned by EventBus.subscribe."""

    handler: EventHandler
    event_type: Optional[SessionEventType] = None
    _bus: Optional["EventBus"] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._bus is not None

    def matches(self, event: SessionEvent) -> bool:
        return self.event_type is None or self.event_type == event.type

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self._bus is not None:
            self._bus._remove(self)
            self._bus = None


class EventBus:
    """
    Synchronous fan-out of SessionEvents to subscribed handlers.

    Usage:
        bus = EventBus()
        sub = bus.subscribe(print, SessionEventType.PHASE_ADVANCED)
        bus.publish(event)
        sub.unsubscribe()
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        handler: EventHandler,
        event_type: Optional[SessionEventType] = None,
    ) -> Subscription:
        """
        Register a handler.

        Args:
            handler: Called with every matching event
            event_type: Only deliver this event type (None = all events)
        """
        subscription = Subscription(handler=handler, event_type=event_type, _bus=self)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: SessionEvent) -> None:
        """Deliver an event to every matching subscriber, in subscription order."""
        # Copy: handlers may unsubscribe while being notified
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                log.error(
                    "event_handler_error",
                    event_type=event.type.value,
                    session_id=event.session_id,
                    error=str(e),
                    exc_info=True,
                )

    def clear(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
