"""
Gavel Market Module.

Pure auction mechanics:
- Auction / bid records and lifecycles
- Thirteen mechanisms (price, legality, winner determination)
- Combinatorial package valuation and allocation policies
- PriceOracle dispatch
"""

from gavel.core.market.types import (
    Auction,
    AuctionStatus,
    AuctionType,
    Bid,
    BidSide,
    BidStatus,
    ResultType,
    can_transition,
    can_transition_bid,
    live_bids,
    now_ms,
)

from gavel.core.market.mechanisms import (
    Award,
    BidCheck,
    Charge,
    Determination,
    Mechanism,
    MECHANISMS,
    get_mechanism,
)

from gavel.core.market.oracle import PriceOracle

__all__ = [
    # Types
    "Auction",
    "AuctionStatus",
    "AuctionType",
    "Bid",
    "BidSide",
    "BidStatus",
    "ResultType",
    "can_transition",
    "can_transition_bid",
    "live_bids",
    "now_ms",
    # Mechanisms
    "Award",
    "BidCheck",
    "Charge",
    "Determination",
    "Mechanism",
    "MECHANISMS",
    "get_mechanism",
    # Oracle
    "PriceOracle",
]
