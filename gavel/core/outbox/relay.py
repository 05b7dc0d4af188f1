"""
OutboxRelay - asynchronous delivery of outbox events.

The relay polls the outbox on a fixed cadence and publishes each due event
on the event bus:

- success marks the row processed
- failure (error or timeout) counts an attempt, records the error and
  schedules the next attempt with capped exponential backoff
- once `max_attempts` is reached the event is handed to the
  DeadLetterSink, and the row is dead-lettered only after the sink
  accepts it; a failing sink leaves the row scheduled for another attempt

A failed event holds back the later events of the same auction for the
rest of the batch. The relay only advances a partition while it holds the
partition's lease, so two relays never deliver concurrently. The lease is
renewed before every publish and the batch stops as soon as renewal fails.
A publish is bounded by `publish_timeout_seconds`, which must stay below
`lease_ttl_seconds`, so the lease cannot lapse while an event is in flight.

Delivery is at-least-once: a crash after publishing but before marking the
row redelivers it on restart.
"""

import asyncio
import uuid
from typing import TYPE_CHECKING, Callable, Dict, Optional

from gavel.core.config import EngineConfig
from gavel.core.errors import InfrastructureError, ValidationError
from gavel.core.market.types import now_ms
from gavel.core.outbox.events import DeadLetterSink, EventBus, OutboxEvent
from gavel.utils.logger import get_logger

if TYPE_CHECKING:
    from gavel.core.storage.store import AuctionStore

logger = get_logger("outbox.relay")


class OutboxRelay:
    """Polls, publishes, retries and dead-letters outbox events."""

    def __init__(
        self,
        store: "AuctionStore",
        bus: EventBus,
        dead_letters: DeadLetterSink,
        config: EngineConfig,
        owner: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
    ):
        if config.publish_timeout_seconds >= config.lease_ttl_seconds:
            raise ValidationError(
                f"publish_timeout_seconds ({config.publish_timeout_seconds}) must be below "
                f"lease_ttl_seconds ({config.lease_ttl_seconds})",
                field="publish_timeout_seconds",
                code="CONFIG_INVALID",
            )
        self.store = store
        self.bus = bus
        self.dead_letters = dead_letters
        self.config = config
        self.owner = owner or f"relay-{uuid.uuid4().hex[:8]}"
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

        self.stats: Dict[str, int] = {
            "delivered": 0,
            "failed": 0,
            "dead_lettered": 0,
            "polls": 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> int:
        """
        Replay everything pending, then poll in the background.

        Returns:
            Number of events delivered during replay
        """
        if self.running:
            return 0
        self._stopping = asyncio.Event()
        replayed = await self.replay()
        self._task = asyncio.create_task(self._run(), name=f"outbox-relay-{self.owner}")
        logger.info(
            f"Relay {self.owner} started (partition={self.config.relay_partition}, "
            f"interval={self.config.poll_interval_ms}ms, replayed={replayed})"
        )
        return replayed

    async def stop(self) -> None:
        """Finish the current poll, stop, and release the lease."""
        if self._stopping is not None:
            self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        with self.store.transaction() as tx:
            tx.release_lease(self.config.relay_partition, self.owner)
        logger.info(f"Relay {self.owner} stopped: {self.stats}")

    async def replay(self) -> int:
        """Drain every due pending event, batch by batch."""
        total = 0
        while True:
            delivered, fetched = await self._poll()
            total += delivered
            if fetched == 0 or delivered == 0:
                return total

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._poll()
            except InfrastructureError as e:
                logger.error(f"Relay poll failed, retrying next interval: {e}")
            except Exception:
                # The loop outlives any single poll; the rows stay pending
                logger.exception("Relay poll raised unexpectedly, retrying next interval")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue

    # =========================================================================
    # Polling
    # =========================================================================

    def backoff_ms(self, attempts: int) -> int:
        """Delay before the next attempt after `attempts` failures."""
        delay = self.config.backoff_base_ms * (2 ** max(0, attempts - 1))
        return min(delay, self.config.backoff_max_ms)

    async def poll_once(self) -> int:
        """Process one batch; returns the number of events delivered."""
        delivered, _ = await self._poll()
        return delivered

    def _renew_lease(self) -> bool:
        with self.store.transaction() as tx:
            return tx.acquire_lease(
                self.config.relay_partition, self.owner, self.config.lease_ttl_seconds * 1000, self.clock()
            )

    async def _poll(self):
        now = self.clock()
        ttl_ms = self.config.lease_ttl_seconds * 1000
        with self.store.transaction() as tx:
            if not tx.acquire_lease(self.config.relay_partition, self.owner, ttl_ms, now):
                logger.debug(f"Relay {self.owner} does not hold lease {self.config.relay_partition}")
                return 0, 0
            events = tx.fetch_pending_events(self.config.batch_size, now)

        self.stats["polls"] += 1
        held = set()
        delivered = 0
        for event in events:
            if event.auction_id in held:
                continue
            if not self._renew_lease():
                logger.warning(
                    f"Relay {self.owner} lost lease {self.config.relay_partition}, "
                    f"stopping batch before event {event.event_id}"
                )
                break
            error = await self._publish(event)
            if error is None:
                with self.store.transaction() as tx:
                    tx.mark_event_processed(event.event_id, self.clock())
                delivered += 1
                self.stats["delivered"] += 1
                continue
            held.add(event.auction_id)
            await self._fail(event, error)

        if events:
            logger.debug(f"Relay batch: {delivered}/{len(events)} delivered")
        return delivered, len(events)

    async def _publish(self, event: OutboxEvent) -> Optional[str]:
        """Publish one event; returns an error description on failure."""
        timeout = self.config.publish_timeout_seconds
        try:
            await asyncio.wait_for(self.bus.publish(event.topic, event.to_message()), timeout=timeout)
        except asyncio.TimeoutError:
            return f"publish timed out after {timeout}s"
        except Exception as e:
            # Any bus failure is recorded on the row and retried
            return f"{type(e).__name__}: {e}"
        return None

    async def _fail(self, event: OutboxEvent, error: str) -> None:
        now = self.clock()
        next_at = now + self.backoff_ms(event.attempts + 1)

        # Scheduled for retry until the sink has taken the event
        with self.store.transaction() as tx:
            attempts = tx.record_event_failure(event.event_id, error, next_at)

        self.stats["failed"] += 1
        if attempts < self.config.max_attempts:
            logger.warning(
                f"Event {event.event_id} ({event.event_type}) failed attempt {attempts}, "
                f"retry in {next_at - now}ms: {error}"
            )
            return

        failed = OutboxEvent(
            event_id=event.event_id,
            event_type=event.event_type,
            auction_id=event.auction_id,
            payload=event.payload,
            created_at=event.created_at,
            attempts=attempts,
            last_error=error,
            dead_lettered_at=now,
        )
        try:
            await self.dead_letters.dead_letter(failed, error)
        except Exception as e:
            logger.error(
                f"Dead-letter sink failed for event {event.event_id}, "
                f"retry in {next_at - now}ms: {type(e).__name__}: {e}"
            )
            return

        with self.store.transaction() as tx:
            tx.mark_event_dead_lettered(event.event_id, now)
        self.stats["dead_lettered"] += 1
        logger.error(f"Event {event.event_id} dead-lettered after {attempts} attempts")
