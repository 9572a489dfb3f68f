"""Delivery of ``ChatEvent``s from a chat session to its observers.

Observers subscribe to one ``EventType`` (or ``"*"``) and can narrow the
subscription to a single message, e.g. only the tokens of the reply being
rendered.  ``subscribe()`` hands back the function that cancels it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

from branchline.types import ChatEvent, EventType

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

# Sync or async callables taking a ChatEvent
Handler = Callable[[ChatEvent], Any]


@dataclass(eq=False)
class _Subscription:
    event_type: str
    handler: Handler
    message_id: str | None = None

    def wants(self, event: ChatEvent) -> bool:
        if self.event_type not in (ALL_EVENTS, event.type.value):
            return False
        return self.message_id is None or self.message_id == event.message_id


class EventBus:
    """Session-to-observer event fan-out.

    Handlers may be sync or async.  Every handler matching an event runs
    concurrently; one that raises is logged and does not affect the others
    or the session that emitted the event.
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
        *,
        message_id: str | None = None,
    ) -> Callable[[], None]:
        """Call *handler* for *event_type* events (``"*"`` for all).

        With *message_id*, only events about that message are delivered.
        Returns a function that removes the subscription.
        """
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        subscription = _Subscription(key, handler, message_id)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def has_subscribers(self, event_type: EventType) -> bool:
        return any(
            s.event_type in (ALL_EVENTS, event_type.value) for s in self._subscriptions
        )

    async def emit(
        self,
        event_type: EventType,
        message_id: str | None = None,
        **data: Any,
    ) -> ChatEvent:
        """Build a ``ChatEvent`` and deliver it; returns the event."""
        event = ChatEvent(type=event_type, message_id=message_id, data=data)
        matching = [s for s in self._subscriptions if s.wants(event)]
        if matching:
            await asyncio.gather(*(self._deliver(s.handler, event) for s in matching))
        return event

    @staticmethod
    async def _deliver(handler: Handler, event: ChatEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Observer %s failed on %s (message %s)",
                getattr(handler, "__name__", handler),
                event.type.value,
                event.message_id,
            )
