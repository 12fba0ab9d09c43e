"""Event bus for orchestrator notifications."""

import asyncio
import logging
from collections.abc import Callable

from orchestrator.models.events import Event

logger = logging.getLogger(__name__)

Subscriber = Callable[[Event], None]


class EventBus:
    """Fan-out of events to callbacks and queues.

    Publishing never fails because of a subscriber: callback errors are logged
    and full queues drop the event with a warning.
    """

    def __init__(self):
        self._subscribers: list[tuple[Subscriber, tuple[type[Event], ...]]] = []

    def subscribe(self, callback: Subscriber, *event_types: type[Event]) -> Callable[[], None]:
        """Register ``callback`` for ``event_types`` (all events if none given).

        Returns a function that removes the subscription.
        """
        entry = (callback, event_types)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def channel(
        self, *event_types: type[Event], maxsize: int = 0
    ) -> tuple[asyncio.Queue, Callable[[], None]]:
        """Subscribe an asyncio.Queue; returns the queue and its unsubscribe function."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def put(event: Event) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event channel full, dropping {type(event).__name__}")

        return queue, self.subscribe(put, *event_types)

    def publish(self, event: Event) -> None:
        for callback, event_types in list(self._subscribers):
            if event_types and not isinstance(event, event_types):
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {type(event).__name__}: {e}")
