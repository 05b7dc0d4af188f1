"""
Gavel Outbox Module.

Transactional outbox events, the event bus contract and the relay that
delivers them.
"""

from gavel.core.outbox.events import (
    DeadLetterSink,
    EventBus,
    EventType,
    InMemoryEventBus,
    LoggingDeadLetterSink,
    OutboxEvent,
)

from gavel.core.outbox.relay import OutboxRelay

__all__ = [
    "DeadLetterSink",
    "EventBus",
    "EventType",
    "InMemoryEventBus",
    "LoggingDeadLetterSink",
    "OutboxEvent",
    "OutboxRelay",
]
