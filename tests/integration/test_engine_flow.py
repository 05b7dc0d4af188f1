"""
End-to-end flow: rules, bidding, settlement and outbox delivery across a
restart of the process.
"""

import asyncio

import pytest

from gavel.core.config import EngineConfig
from gavel.core.container import build_engine
from gavel.core.errors import BusinessRuleError
from gavel.core.market.types import AuctionStatus, BidStatus, now_ms
from gavel.core.outbox.events import InMemoryEventBus, LoggingDeadLetterSink
from gavel.core.storage import AuctionStore

HOUR_MS = 3_600_000


def start_engine(db_path, bus=None):
    config = EngineConfig(db_path=db_path, poll_interval_ms=20)
    return build_engine(config, AuctionStore.open(db_path), bus or InMemoryEventBus(), LoggingDeadLetterSink())


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "engine" / "gavel.db"


def test_auctions_settle_and_relay_after_restart(db_path):
    """Events committed before a crash are delivered, per auction in order, after restart."""
    # 1. First process: rules, auctions, bids, settlement. No relay runs.
    engine = start_engine(db_path)
    engine.rules.register_rule({
        "rule_code": "max_bid",
        "name": "Max bid",
        "category": "bidding",
        "severity": "error",
        "condition": {"<=": [{"var": "bid.amount"}, {"var": "config.max_amount"}]},
        "default_parameters": {"max_amount": 1_000},
        "error_message": "Bid exceeds the ceiling",
    })

    start = now_ms() + 1_000
    window = {"start_time": start, "end_time": start + HOUR_MS, "activate": True}
    english = engine.auctions.create_auction(
        {"auction_type": "english", "starting_price": 100, "min_increment": 10, **window}
    )
    vickrey = engine.auctions.create_auction(
        {"auction_type": "vickrey", "starting_price": 50, "params": {"max_bids_per_bidder": 1}, **window}
    )
    assert len(engine.auctions.activate_due(now=start)) == 2

    def bid(auction, bidder, amount, offset):
        return engine.ledger.place_bid(
            {"auction_id": auction.auction_id, "bidder_id": bidder, "amount": amount},
            idempotency_key=f"{auction.auction_id}-{bidder}-{offset}",
            now=start + offset,
        )

    alice_en = bid(english, "alice", 200, 10)
    bob_en = bid(english, "bob", 300, 20)
    with pytest.raises(BusinessRuleError):
        bid(english, "carol", 5_000, 30)
    # Retried request with the same key is not admitted twice
    assert bid(english, "bob", 300, 20) == bob_en

    bid(vickrey, "alice", 100, 10)
    bid(vickrey, "bob", 80, 20)

    records = {r.auction_id: r for r in engine.resolver.settle_due(now=start + HOUR_MS)}
    assert records[english.auction_id].winner_id == "bob"
    assert records[english.auction_id].final_price == 300
    assert records[vickrey.auction_id].winner_id == "alice"
    assert records[vickrey.auction_id].final_price == 80
    assert engine.ledger.get_bid(alice_en).status == BidStatus.LOSING

    [violation] = engine.rules.list_violations(auction_id=english.auction_id)
    assert violation.user_id == "carol"
    engine.close()

    # 2. Second process: the relay replays the backlog.
    bus = InMemoryEventBus()
    engine = start_engine(db_path, bus)

    async def run_relay():
        replayed = await engine.relay.start()
        await engine.relay.stop()
        return replayed

    assert asyncio.run(run_relay()) == 10
    with engine.store.transaction(write=False) as tx:
        assert tx.count_pending_events() == 0

    expected = ["auction_created", "status_changed", "bid_placed", "bid_placed", "auction_ended"]
    for auction in (english, vickrey):
        messages = [m for m in bus.messages() if m["auctionId"] == auction.auction_id]
        assert [m["eventType"] for m in messages] == expected
        ids = [m["eventId"] for m in messages]
        assert ids == sorted(ids)

    ended = bus.messages("auction_ended")
    assert {m["payload"]["winner_id"] for m in ended} == {"alice", "bob"}

    # 3. Settling again changes nothing and emits nothing.
    again = engine.resolver.settle(english.auction_id)
    assert again == records[english.auction_id]
    assert engine.auctions.get_auction(english.auction_id).status == AuctionStatus.COMPLETED
    with engine.store.transaction(write=False) as tx:
        assert tx.count_pending_events() == 0
    engine.close()
