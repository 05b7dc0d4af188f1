"""
Composition root.

`build_engine` wires every component from explicitly supplied
collaborators (store, event bus, dead-letter sink, config) and refuses to
build when one is missing. `open_engine` is the convenience used by the
CLI: SQLite store at the configured path and an in-process bus.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from gavel.core.cache import CacheInvalidator, SnapshotCache
from gavel.core.config import EngineConfig
from gavel.core.ledger.auctions import AuctionService
from gavel.core.ledger.bid_ledger import BidLedger
from gavel.core.market.oracle import PriceOracle
from gavel.core.market.types import Auction, Bid
from gavel.core.outbox.events import DeadLetterSink, EventBus, InMemoryEventBus, LoggingDeadLetterSink
from gavel.core.outbox.relay import OutboxRelay
from gavel.core.rules.engine import RuleEngine
from gavel.core.settlement.resolver import SettlementResolver
from gavel.core.storage.store import AuctionStore
from gavel.utils.logger import get_logger

logger = get_logger("container")


@dataclass
class Engine:
    """Every engine component, wired."""
    config: EngineConfig
    store: AuctionStore
    bus: EventBus
    oracle: PriceOracle
    rules: RuleEngine
    auctions: AuctionService
    ledger: BidLedger
    resolver: SettlementResolver
    relay: OutboxRelay
    cache: Optional[SnapshotCache] = None

    def close(self) -> None:
        self.store.close()


def build_engine(
    config: Optional[EngineConfig],
    store: Optional[AuctionStore],
    bus: Optional[EventBus],
    dead_letters: Optional[DeadLetterSink],
    with_cache: bool = True,
) -> Engine:
    """
    Wire the engine from explicit collaborators.

    Raises:
        ValueError: a required collaborator is missing
    """
    missing = [
        name for name, value in (
            ("config", config),
            ("store", store),
            ("bus", bus),
            ("dead_letters", dead_letters),
        )
        if value is None
    ]
    if missing:
        raise ValueError(f"Cannot build engine, missing collaborators: {', '.join(missing)}")

    oracle = PriceOracle()
    rules = RuleEngine(store, config)
    engine = Engine(
        config=config,
        store=store,
        bus=bus,
        oracle=oracle,
        rules=rules,
        auctions=AuctionService(store),
        ledger=BidLedger(store, oracle, rules, config),
        resolver=SettlementResolver(store, oracle),
        relay=OutboxRelay(store, bus, dead_letters, config),
    )

    if with_cache:
        def load(auction_id: str) -> Tuple[Auction, List[Bid]]:
            with store.transaction(write=False) as tx:
                return tx.require_auction(auction_id), tx.list_bids(auction_id)

        engine.cache = SnapshotCache(load, oracle, config.cache_staleness_seconds)
        if hasattr(bus, "subscribe"):
            CacheInvalidator(engine.cache).attach(bus)

    logger.debug(f"Engine built (db={store.adapter.db_path})")
    return engine


def open_engine(config: EngineConfig) -> Engine:
    """SQLite store at `config.db_path`, in-process bus, logging dead-letter sink."""
    return build_engine(
        config=config,
        store=AuctionStore.open(config.db_path),
        bus=InMemoryEventBus(),
        dead_letters=LoggingDeadLetterSink(),
    )
