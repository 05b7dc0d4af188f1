"""
Unit tests for the outbox relay.

Time is driven by a fake clock so backoff schedules are deterministic.
"""

import asyncio
import logging

import pytest

from gavel.core.config import EngineConfig
from gavel.core.errors import ValidationError
from gavel.core.outbox import OutboxRelay
from gavel.core.outbox.events import InMemoryEventBus, LoggingDeadLetterSink
from gavel.core.storage import AuctionStore


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class RecordingBus:
    """Bus that fails selected events a given number of times."""

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.delivered = []

    async def publish(self, topic, message):
        remaining = self.failures.get(message["eventId"], 0)
        if remaining:
            self.failures[message["eventId"]] = remaining - 1
            raise ConnectionError("broker unavailable")
        self.delivered.append(message)

    def ids(self):
        return [m["eventId"] for m in self.delivered]


class BrokenBus:
    async def publish(self, topic, message):
        raise ConnectionError("broker unavailable")


class SlowBus:
    async def publish(self, topic, message):
        await asyncio.sleep(1)


class FailingSink:
    async def dead_letter(self, event, error):
        raise RuntimeError("pager offline")


class ClockBus(RecordingBus):
    """Bus whose publishes take `duration_ms` of clock time, running `during` mid-publish."""

    def __init__(self, clock, duration_ms, during=None):
        super().__init__()
        self.clock = clock
        self.duration_ms = duration_ms
        self.during = during

    async def publish(self, topic, message):
        self.clock.advance(self.duration_ms)
        if self.during is not None:
            await self.during()
        await super().publish(topic, message)


@pytest.fixture
def store(tmp_path):
    store = AuctionStore.open(tmp_path / "relay.db")
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


def make_config(tmp_path, **overrides):
    return EngineConfig(db_path=tmp_path / "relay.db", **overrides)


def append(store, auction_id, created_at, event_type="bid_placed"):
    with store.transaction() as tx:
        return tx.append_event(event_type, auction_id, {"n": created_at}, created_at=created_at)


def get_event(store, event_id):
    with store.transaction(write=False) as tx:
        return tx.get_event(event_id)


def pending(store):
    with store.transaction(write=False) as tx:
        return tx.count_pending_events()


# =============================================================================
# Retry and backoff
# =============================================================================


class TestRetry:
    """Failed publishes are retried with backoff."""

    def test_delivers_and_marks_processed(self, tmp_path, store, clock):
        """A successful publish marks the row processed."""
        event_id = append(store, "a1", 1)
        bus = RecordingBus()
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path), clock=clock)

        assert asyncio.run(relay.poll_once()) == 1
        assert bus.ids() == [event_id]
        assert bus.delivered[0]["eventType"] == "bid_placed"
        assert bus.delivered[0]["auctionId"] == "a1"
        assert get_event(store, event_id).processed_at == clock.now
        assert relay.stats["delivered"] == 1

    def test_failure_backs_off(self, tmp_path, store, clock):
        """A failure counts an attempt and waits out the backoff."""
        event_id = append(store, "a1", 1)
        bus = RecordingBus({event_id: 1})
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path), clock=clock)

        assert asyncio.run(relay.poll_once()) == 0
        event = get_event(store, event_id)
        assert event.attempts == 1
        assert event.next_attempt_at == clock.now + 200
        assert event.last_error == "ConnectionError: broker unavailable"

        clock.advance(199)
        assert asyncio.run(relay.poll_once()) == 0

        clock.advance(1)
        assert asyncio.run(relay.poll_once()) == 1
        event = get_event(store, event_id)
        assert event.processed_at is not None
        assert event.last_error is None
        assert relay.stats["failed"] == 1

    def test_failing_subscriber_fails_publish(self, tmp_path, store, clock):
        """An in-process subscriber error is a failed delivery."""
        event_id = append(store, "a1", 1)
        bus = InMemoryEventBus()
        calls = []

        def flaky(message):
            calls.append(message["eventId"])
            if len(calls) == 1:
                raise RuntimeError("consumer down")

        bus.subscribe("bid_placed", flaky)
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path), clock=clock)

        assert asyncio.run(relay.poll_once()) == 0
        assert get_event(store, event_id).last_error.startswith("PublishError: ")

        clock.advance(200)
        assert asyncio.run(relay.poll_once()) == 1
        assert calls == [event_id, event_id]

    def test_backoff_is_capped(self, tmp_path, store):
        """Delays double per attempt up to the cap."""
        relay = OutboxRelay(
            store, RecordingBus(), LoggingDeadLetterSink(),
            make_config(tmp_path, backoff_base_ms=200, backoff_max_ms=1_000),
        )
        assert [relay.backoff_ms(n) for n in (1, 2, 3, 4, 10)] == [200, 400, 800, 1_000, 1_000]

    def test_publish_timeout(self, tmp_path, store, clock):
        """A publish that outlives the timeout counts as a failure."""
        event_id = append(store, "a1", 1)
        config = make_config(tmp_path, publish_timeout_seconds=0.05)
        relay = OutboxRelay(store, SlowBus(), LoggingDeadLetterSink(), config, clock=clock)

        assert asyncio.run(relay.poll_once()) == 0
        event = get_event(store, event_id)
        assert event.attempts == 1
        assert event.last_error == "publish timed out after 0.05s"


# =============================================================================
# Dead letter
# =============================================================================


class TestDeadLetter:
    """Events that exhaust their attempts."""

    def test_dead_letters_after_max_attempts(self, tmp_path, store, clock, caplog):
        """The row is set aside and the sink alerts."""
        event_id = append(store, "a1", 1)
        sink = LoggingDeadLetterSink()
        relay = OutboxRelay(store, BrokenBus(), sink, make_config(tmp_path, max_attempts=3), clock=clock)

        with caplog.at_level(logging.WARNING):
            asyncio.run(relay.poll_once())
            clock.advance(200)
            asyncio.run(relay.poll_once())
            assert sink.events == []
            clock.advance(400)
            asyncio.run(relay.poll_once())

        [dead] = sink.events
        assert dead.event_id == event_id
        assert dead.attempts == 3
        assert dead.last_error == "ConnectionError: broker unavailable"

        row = get_event(store, event_id)
        assert row.dead_lettered_at == clock.now
        assert row.next_attempt_at is None
        assert pending(store) == 0
        assert relay.stats["dead_lettered"] == 1
        assert any(r.levelno == logging.CRITICAL and "ALERT" in r.getMessage() for r in caplog.records)

        # Never picked up again
        clock.advance(60_000)
        assert asyncio.run(relay.poll_once()) == 0
        with store.transaction(write=False) as tx:
            assert [e.event_id for e in tx.list_dead_letters()] == [event_id]

    def test_failing_sink_keeps_event_retryable(self, tmp_path, store, clock):
        """The row is set aside only once the sink has taken the event."""
        event_id = append(store, "a1", 1)
        relay = OutboxRelay(store, BrokenBus(), FailingSink(), make_config(tmp_path, max_attempts=1), clock=clock)

        assert asyncio.run(relay.poll_once()) == 0
        row = get_event(store, event_id)
        assert row.dead_lettered_at is None
        assert row.attempts == 1
        assert row.next_attempt_at == clock.now + 200
        assert pending(store) == 1
        assert relay.stats["dead_lettered"] == 0

        sink = LoggingDeadLetterSink()
        relay.dead_letters = sink
        clock.advance(200)
        asyncio.run(relay.poll_once())

        [dead] = sink.events
        assert dead.event_id == event_id
        assert dead.attempts == 2
        assert get_event(store, event_id).dead_lettered_at == clock.now
        assert pending(store) == 0
        assert relay.stats["dead_lettered"] == 1

    def test_poll_loop_survives_unexpected_errors(self, tmp_path, store, caplog):
        """An error escaping one poll is logged and the next poll still runs."""
        bus = RecordingBus()
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path, poll_interval_ms=20))
        real_poll = relay._poll
        calls = []

        async def poll_failing_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("store went away")
            return await real_poll()

        async def scenario():
            await relay.start()
            relay._poll = poll_failing_once
            event_id = append(store, "a1", None)
            for _ in range(100):
                if bus.delivered:
                    break
                await asyncio.sleep(0.02)
            assert relay.running
            await relay.stop()
            return event_id

        with caplog.at_level(logging.ERROR):
            event_id = asyncio.run(scenario())
        assert bus.ids() == [event_id]
        assert any("raised unexpectedly" in r.getMessage() for r in caplog.records)


# =============================================================================
# Ordering
# =============================================================================


class TestOrdering:
    """Per-auction order survives failures."""

    def test_failure_holds_later_events_of_same_auction(self, tmp_path, store, clock):
        """Other auctions proceed; the failed auction resumes in order."""
        first = append(store, "a1", 1)
        second = append(store, "a1", 2)
        other = append(store, "a2", 3)
        bus = RecordingBus({first: 1})
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path), clock=clock)

        assert asyncio.run(relay.poll_once()) == 1
        assert bus.ids() == [other]

        # Still backing off: the second event must wait too
        assert asyncio.run(relay.poll_once()) == 0

        clock.advance(200)
        assert asyncio.run(relay.poll_once()) == 2
        assert bus.ids() == [other, first, second]

    def test_insertion_order_beats_timestamps(self, tmp_path, store, clock):
        """Events go out in the order they were written, whatever their timestamps."""
        created = append(store, "a1", 20, event_type="auction_created")
        activated = append(store, "a1", 10, event_type="status_changed")
        bus = RecordingBus()
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path), clock=clock)
        asyncio.run(relay.poll_once())
        assert bus.ids() == [created, activated]

    def test_batch_size(self, tmp_path, store, clock):
        """One poll handles at most batch_size events."""
        for n in range(5):
            append(store, f"a{n}", n + 1)
        relay = OutboxRelay(
            store, RecordingBus(), LoggingDeadLetterSink(), make_config(tmp_path, batch_size=2), clock=clock
        )
        assert asyncio.run(relay.poll_once()) == 2
        assert pending(store) == 3


# =============================================================================
# Lifecycle and single flight
# =============================================================================


class TestLifecycle:
    """Start, stop, replay and leases."""

    def test_replays_backlog_on_start(self, tmp_path, store):
        """Events committed while no relay ran are delivered on start."""
        ids = [append(store, "a1", n) for n in (1, 2, 3)]
        bus = RecordingBus()
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path, batch_size=2))

        async def scenario():
            replayed = await relay.start()
            assert relay.running
            await relay.stop()
            return replayed

        assert asyncio.run(scenario()) == 3
        assert not relay.running
        assert bus.ids() == ids

    def test_background_polling(self, tmp_path, store):
        """Events appended while running are picked up by the poll loop."""
        bus = RecordingBus()
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), make_config(tmp_path, poll_interval_ms=20))

        async def scenario():
            assert await relay.start() == 0
            event_id = append(store, "a1", None)
            for _ in range(100):
                if bus.delivered:
                    break
                await asyncio.sleep(0.02)
            await relay.stop()
            return event_id

        event_id = asyncio.run(scenario())
        assert bus.ids() == [event_id]
        assert relay.stats["polls"] >= 1

    def test_lease_single_flight(self, tmp_path, store, clock):
        """A second relay waits until the lease expires or is released."""
        config = make_config(tmp_path)
        first_bus, second_bus = RecordingBus(), RecordingBus()
        first = OutboxRelay(store, first_bus, LoggingDeadLetterSink(), config, owner="r1", clock=clock)
        second = OutboxRelay(store, second_bus, LoggingDeadLetterSink(), config, owner="r2", clock=clock)

        assert asyncio.run(first.poll_once()) == 0
        event_id = append(store, "a1", 1)

        assert asyncio.run(second.poll_once()) == 0
        assert pending(store) == 1

        clock.advance(config.lease_ttl_seconds * 1000)
        assert asyncio.run(second.poll_once()) == 1
        assert second_bus.ids() == [event_id]

        append(store, "a1", 2)
        assert asyncio.run(first.poll_once()) == 0

        asyncio.run(second.stop())
        assert asyncio.run(first.poll_once()) == 1

    def test_lease_renewed_across_slow_batch(self, tmp_path, store, clock):
        """A batch longer than the lease keeps it; a rival polling mid-batch delivers nothing."""
        config = make_config(tmp_path, publish_timeout_seconds=8)
        ids = [append(store, "a1", n) for n in (1, 2, 3, 4)]
        rival_bus = RecordingBus()
        rival = OutboxRelay(store, rival_bus, LoggingDeadLetterSink(), config, owner="r2", clock=clock)
        # Each publish takes 6s of a 10s lease: four of them outlast any single grant
        bus = ClockBus(clock, 6_000, during=rival.poll_once)
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), config, owner="r1", clock=clock)

        assert asyncio.run(relay.poll_once()) == 4
        assert bus.ids() == ids
        assert rival_bus.delivered == []
        assert rival.stats["polls"] == 0
        assert pending(store) == 0

    def test_lost_lease_stops_batch(self, tmp_path, store, clock):
        """Once the lease moves to another relay, the batch stops and the new owner continues in order."""
        config = make_config(tmp_path)
        ids = [append(store, "a1", n) for n in (1, 2, 3)]

        async def hand_over():
            with store.transaction() as tx:
                tx.release_lease(config.relay_partition, "r1")
                assert tx.acquire_lease(config.relay_partition, "r2", config.lease_ttl_seconds * 1000, clock())

        bus = ClockBus(clock, 0, during=hand_over)
        relay = OutboxRelay(store, bus, LoggingDeadLetterSink(), config, owner="r1", clock=clock)
        assert asyncio.run(relay.poll_once()) == 1
        assert bus.ids() == ids[:1]
        assert pending(store) == 2

        successor_bus = RecordingBus()
        successor = OutboxRelay(store, successor_bus, LoggingDeadLetterSink(), config, owner="r2", clock=clock)
        assert asyncio.run(successor.poll_once()) == 2
        assert bus.ids() + successor_bus.ids() == ids

    def test_publish_timeout_must_fit_in_lease(self, tmp_path, store):
        """A publish that could outlive the lease is a configuration error."""
        config = make_config(tmp_path, publish_timeout_seconds=10, lease_ttl_seconds=10)
        with pytest.raises(ValidationError) as exc:
            OutboxRelay(store, RecordingBus(), LoggingDeadLetterSink(), config)
        assert exc.value.field == "publish_timeout_seconds"
