"""
PriceOracle - mechanism dispatch for price, legality and winners.

Stateless: every call takes the auction, its bid history and the clock
reading, and delegates to the mechanism registered for the auction type.
"""

from typing import List, Optional

from gavel.core.market.mechanisms import BidCheck, Determination, Mechanism, get_mechanism
from gavel.core.market.types import Auction, Bid, now_ms


class PriceOracle:
    """Pure price / winner computation over (auction, bids, now)."""

    def mechanism(self, auction: Auction) -> Mechanism:
        return get_mechanism(auction.auction_type)

    def current_price(self, auction: Auction, bids: List[Bid], now: Optional[int] = None) -> int:
        """Visible running (or clearing) price."""
        return self.mechanism(auction).current_price(auction, bids, self._now(now))

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: Optional[int] = None) -> int:
        """Next legal bid boundary (a ceiling for reverse auctions)."""
        return self.mechanism(auction).minimum_bid(auction, bids, self._now(now))

    def check_bid(
        self,
        auction: Auction,
        bids: List[Bid],
        candidate: Bid,
        now: Optional[int] = None,
    ) -> BidCheck:
        """Mechanism legality of `candidate` against the existing bids."""
        return self.mechanism(auction).check_bid(auction, bids, candidate, self._now(now))

    def determine(self, auction: Auction, bids: List[Bid], now: Optional[int] = None) -> Determination:
        """Winner(s), quantities and final price(s)."""
        return self.mechanism(auction).determine(auction, bids, self._now(now))

    @staticmethod
    def _now(now: Optional[int]) -> int:
        return now_ms() if now is None else now
