"""
Outbox events and the event bus contract.

Every state change is written as an `OutboxEvent` row in the same
transaction as the change itself. The relay later turns each row into a
message

    {"eventId", "eventType", "auctionId", "payload", "createdAt"}

published on the topic named by `eventType`. Consumers must be idempotent
on `eventId`: delivery is at-least-once.
"""

import inspect
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from gavel.core.errors import PublishError
from gavel.utils.logger import get_logger

logger = get_logger("outbox.events")


class EventType(str, Enum):
    AUCTION_CREATED = "auction_created"
    BID_PLACED = "bid_placed"
    AUCTION_ENDED = "auction_ended"
    STATUS_CHANGED = "status_changed"
    BID_RETRACTED = "bid_retracted"
    AUCTION_EXTENDED = "auction_extended"


@dataclass
class OutboxEvent:
    """A pending (or delivered) outbox row."""
    event_id: int
    event_type: str
    auction_id: str
    payload: Dict[str, Any]
    created_at: int
    processed_at: Optional[int] = None
    attempts: int = 0
    next_attempt_at: Optional[int] = None
    last_error: Optional[str] = None
    dead_lettered_at: Optional[int] = None

    @property
    def topic(self) -> str:
        return self.event_type

    def to_message(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "auctionId": self.auction_id,
            "payload": self.payload,
            "createdAt": self.created_at,
        }


# =============================================================================
# Bus contract
# =============================================================================


class EventBus(Protocol):
    """Publishes a message on a topic. Raising means not delivered."""

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        ...


Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class InMemoryEventBus:
    """
    In-process bus.

    Keeps every published message (for inspection) and fans each one out to
    subscribers of its topic and of the wildcard topic "*". A failing
    subscriber fails the publish, which the relay then retries.
    """

    WILDCARD = "*"

    def __init__(self):
        self.published: List[Dict[str, Any]] = []
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subscribers[topic].append(handler)

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        self.published.append(message)
        handlers = self._subscribers.get(topic, []) + self._subscribers.get(self.WILDCARD, [])
        for handler in handlers:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                raise PublishError(
                    f"Subscriber {getattr(handler, '__name__', type(handler).__name__)} failed on {topic}: {e}",
                    context={"topic": topic, "event_id": message.get("eventId")},
                ) from e

    def messages(self, topic: Optional[str] = None) -> List[Dict[str, Any]]:
        if topic is None:
            return list(self.published)
        return [m for m in self.published if m["eventType"] == topic]


# =============================================================================
# Dead letter
# =============================================================================


class DeadLetterSink(Protocol):
    """Receives events that exhausted their delivery attempts."""

    async def dead_letter(self, event: OutboxEvent, error: str) -> None:
        ...


class LoggingDeadLetterSink:
    """Raises an operator alert through the critical log channel."""

    def __init__(self):
        self.events: List[OutboxEvent] = []

    async def dead_letter(self, event: OutboxEvent, error: str) -> None:
        self.events.append(event)
        logger.critical(
            f"ALERT dead-lettered event {event.event_id} ({event.event_type}) "
            f"for auction {event.auction_id} after {event.attempts} attempts: {error}"
        )
