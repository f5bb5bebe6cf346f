"""Live-update fan-out to connected subscribers.

Each subscriber owns one bounded FIFO queue. publish() never blocks, so a
subscriber sees events in publish order. A subscriber whose queue is full
has stopped reading; it is dropped and its next_event() raises
SubscriptionDropped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

logger = get_logger(__name__)

NEW_MESSAGE = "new_message"
CONTACT_UPDATE = "contact_update"
MESSAGE_STATUS_UPDATE = "message_status_update"

DEFAULT_MAX_PENDING = 1000


class SubscriptionDropped(Exception):
    """The subscriber fell too far behind and was disconnected."""


@dataclass(frozen=True)
class LiveEvent:
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}


class Subscription:
    """Handle returned by LiveUpdateHub.subscribe()."""

    def __init__(self, hub: "LiveUpdateHub", max_pending: int) -> None:
        self._hub = hub
        self.dropped = False
        # One slot beyond the bound is kept for the drop marker
        self.queue: asyncio.Queue[LiveEvent | None] = asyncio.Queue(max_pending + 1)
        self._max_pending = max_pending

    async def next_event(self) -> LiveEvent:
        event = await self.queue.get()
        if event is None:
            raise SubscriptionDropped()
        return event

    def offer(self, event: LiveEvent) -> bool:
        """Enqueue without blocking. False if the subscriber is full."""
        if self.dropped or self.queue.qsize() >= self._max_pending:
            return False
        self.queue.put_nowait(event)
        return True

    def drop(self) -> None:
        self.dropped = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    def close(self) -> None:
        self._hub.unsubscribe(self)


class LiveUpdateHub:
    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be positive")
        self._max_pending = max_pending
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._max_pending)
        self._subscribers.add(subscription)
        logger.info(
            "live subscriber connected",
            extra={"extra_fields": safe_log_context(subscribers=len(self._subscribers))},
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.discard(subscription)
            logger.info(
                "live subscriber disconnected",
                extra={"extra_fields": safe_log_context(subscribers=len(self._subscribers))},
            )

    def publish(self, event: str, data: dict[str, Any]) -> int:
        """Enqueue an event for every subscriber.

        Returns:
            Number of subscribers the event was delivered to.
        """
        live_event = LiveEvent(event=event, data=data)
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription.offer(live_event):
                delivered += 1
                continue
            logger.warning(
                "live subscriber fell behind, dropping",
                extra={"extra_fields": safe_log_context(max_pending=self._max_pending)},
            )
            subscription.drop()
            self.unsubscribe(subscription)
        return delivered
