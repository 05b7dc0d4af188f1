"""
Market types - auctions, bids and their lifecycles.

Amounts are integers in minor currency units; timestamps are integer
epoch milliseconds. Both records carry a `version` that storage bumps on
every mutation, which is what optimistic concurrency checks against.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def now_ms() -> int:
    """Current wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Enums
# =============================================================================


class AuctionType(str, Enum):
    """The thirteen supported market mechanisms."""
    ENGLISH = "english"
    DUTCH = "dutch"
    SEALED_BID = "sealed_bid"
    REVERSE = "reverse"
    VICKREY = "vickrey"
    BUY_IT_NOW = "buy_it_now"
    DOUBLE = "double"
    ALL_PAY = "all_pay"
    JAPANESE = "japanese"
    CHINESE = "chinese"
    PENNY = "penny"
    MULTI_UNIT = "multi_unit"
    COMBINATORIAL = "combinatorial"


class AuctionStatus(str, Enum):
    """Lifecycle state of an auction."""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class BidStatus(str, Enum):
    """Lifecycle state of a bid."""
    ACTIVE = "active"
    RETRACTED = "retracted"
    OUTBID = "outbid"
    WINNING = "winning"
    LOSING = "losing"


class BidSide(str, Enum):
    """Side of a double-auction order."""
    BUY = "buy"
    SELL = "sell"


class ResultType(str, Enum):
    """Outcome of a settlement."""
    WINNER_DETERMINED = "winner_determined"
    NO_BIDS = "no_bids"
    RESERVE_NOT_MET = "reserve_not_met"
    NO_MATCH = "no_match"


# =============================================================================
# Transition tables
# =============================================================================

AUCTION_STATUS_TRANSITIONS: Dict[AuctionStatus, Tuple[AuctionStatus, ...]] = {
    AuctionStatus.DRAFT: (AuctionStatus.SCHEDULED, AuctionStatus.CANCELLED),
    AuctionStatus.SCHEDULED: (AuctionStatus.ACTIVE, AuctionStatus.CANCELLED),
    AuctionStatus.ACTIVE: (
        AuctionStatus.PAUSED,
        AuctionStatus.COMPLETED,
        AuctionStatus.CANCELLED,
        AuctionStatus.SUSPENDED,
    ),
    AuctionStatus.PAUSED: (AuctionStatus.ACTIVE, AuctionStatus.CANCELLED),
    AuctionStatus.SUSPENDED: (AuctionStatus.ACTIVE, AuctionStatus.CANCELLED),
    AuctionStatus.COMPLETED: (),
    AuctionStatus.CANCELLED: (),
}

TERMINAL_STATUSES = frozenset({AuctionStatus.COMPLETED, AuctionStatus.CANCELLED})

BID_STATUS_TRANSITIONS: Dict[BidStatus, Tuple[BidStatus, ...]] = {
    BidStatus.ACTIVE: (BidStatus.RETRACTED, BidStatus.OUTBID, BidStatus.WINNING, BidStatus.LOSING),
    BidStatus.OUTBID: (BidStatus.ACTIVE, BidStatus.WINNING, BidStatus.LOSING, BidStatus.RETRACTED),
    BidStatus.WINNING: (BidStatus.LOSING,),
    BidStatus.LOSING: (BidStatus.WINNING,),
    BidStatus.RETRACTED: (),
}


def can_transition(current: AuctionStatus, target: AuctionStatus) -> bool:
    """Check the auction status transition table."""
    return target in AUCTION_STATUS_TRANSITIONS.get(current, ())


def can_transition_bid(current: BidStatus, target: BidStatus) -> bool:
    """Check the bid status transition table."""
    return target in BID_STATUS_TRANSITIONS.get(current, ())


# =============================================================================
# Records
# =============================================================================


@dataclass
class Auction:
    """
    An auction and its static parameters.

    Attributes:
        auction_id: Unique identifier
        auction_type: Market mechanism
        starting_price: Opening price (minor units)
        reserve_price: Optional floor (ceiling for reverse auctions)
        min_increment: Minimum price step
        start_time / end_time: Bidding window in epoch ms
        status: Lifecycle state
        version: Optimistic concurrency version
        params: Type-specific parameter bag
    """
    auction_id: str
    auction_type: AuctionType
    starting_price: int
    min_increment: int
    start_time: int
    end_time: int
    title: str = ""
    reserve_price: Optional[int] = None
    status: AuctionStatus = AuctionStatus.DRAFT
    version: int = 1
    params: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    idempotency_key: Optional[str] = None
    extension_count: int = 0
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def param(self, name: str, default: Any = None) -> Any:
        """Read a type-specific parameter with a default."""
        value = self.params.get(name)
        return default if value is None else value

    def is_open_at(self, at: int) -> bool:
        """Active and inside the bidding window."""
        return (
            self.status == AuctionStatus.ACTIVE
            and self.start_time <= at <= self.end_time
        )

    def has_ended(self, at: int) -> bool:
        return at >= self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "auction_type": self.auction_type.value,
            "title": self.title,
            "starting_price": self.starting_price,
            "reserve_price": self.reserve_price,
            "min_increment": self.min_increment,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
            "version": self.version,
            "params": dict(self.params),
        }


@dataclass
class Bid:
    """
    A bid against an auction.

    `sequence` is assigned by storage on insert and gives a total order
    between bids that share a millisecond timestamp.
    """
    bid_id: str
    auction_id: str
    bidder_id: str
    amount: int
    quantity: int = 1
    timestamp: int = field(default_factory=now_ms)
    status: BidStatus = BidStatus.ACTIVE
    version: int = 1
    idempotency_key: Optional[str] = None
    side: Optional[BidSide] = None
    package: Optional[List[str]] = None
    fee_charged: int = 0
    sequence: int = 0

    @property
    def is_live(self) -> bool:
        """Counts towards price and winner computation."""
        return self.status != BidStatus.RETRACTED

    @property
    def order_key(self) -> Tuple[int, int]:
        """Earliest-first ordering key."""
        return (self.timestamp, self.sequence)

    def with_status(self, status: BidStatus) -> "Bid":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "auction_id": self.auction_id,
            "bidder_id": self.bidder_id,
            "amount": self.amount,
            "quantity": self.quantity,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "version": self.version,
            "side": self.side.value if self.side else None,
            "package": list(self.package) if self.package else None,
            "fee_charged": self.fee_charged,
        }


def live_bids(bids: List[Bid]) -> List[Bid]:
    """Non-retracted bids in earliest-first order."""
    return sorted((b for b in bids if b.is_live), key=lambda b: b.order_key)
