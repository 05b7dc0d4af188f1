"""
Snapshot cache - staleness-bounded price and winner reads.

The cache is a read accelerator, never a source of truth: entries expire
after `staleness_seconds` and every outbox message for an auction evicts
its entry through `CacheInvalidator`. Writers never consult it.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from gavel.core.market.mechanisms import Award, Determination
from gavel.core.market.oracle import PriceOracle
from gavel.core.market.types import Auction, Bid
from gavel.utils.logger import get_logger

logger = get_logger("cache")

Loader = Callable[[str], Tuple[Auction, List[Bid]]]


@dataclass
class _Entry:
    loaded_at: float
    auction_type: str
    price: int
    determination: Determination


class SnapshotCache:
    """Per-auction snapshot of current price and provisional winner."""

    def __init__(
        self,
        loader: Loader,
        oracle: PriceOracle,
        staleness_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.loader = loader
        self.oracle = oracle
        self.staleness_seconds = staleness_seconds
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _entry(self, auction_id: str) -> _Entry:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(auction_id)
            if entry is not None and now - entry.loaded_at <= self.staleness_seconds:
                self.hits += 1
                return entry

        self.misses += 1
        auction, bids = self.loader(auction_id)
        entry = _Entry(
            loaded_at=now,
            auction_type=auction.auction_type.value,
            price=self.oracle.current_price(auction, bids),
            determination=self.oracle.determine(auction, bids),
        )
        with self._lock:
            self._entries[auction_id] = entry
        return entry

    def get_current_price(self, auction_id: str) -> int:
        return self._entry(auction_id).price

    def get_winner(self, auction_id: str) -> Optional[Award]:
        """Provisional winner if the auction were settled at snapshot time."""
        return self._entry(auction_id).determination.winner

    def invalidate(self, auction_id: str) -> None:
        with self._lock:
            self._entries.pop(auction_id, None)

    def invalidate_type(self, auction_type: str) -> None:
        auction_type = getattr(auction_type, "value", auction_type)
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.auction_type == auction_type]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cached {auction_type} auction(s)")


class CacheInvalidator:
    """Event bus subscriber that evicts the affected auction on every event."""

    def __init__(self, cache: SnapshotCache):
        self.cache = cache

    def attach(self, bus) -> "CacheInvalidator":
        bus.subscribe("*", self)
        return self

    def __call__(self, message: Dict) -> None:
        auction_id = message.get("auctionId")
        if auction_id:
            self.cache.invalidate(auction_id)
