"""
Mechanisms - per-auction-type price and winner rules.

Each of the thirteen auction types is a `Mechanism` subclass exposing four
pure operations over (auction, bid history, now):

1. current_price  - the visible running / clearing price
2. minimum_bid    - the legal boundary for the next bid (a ceiling for
                    reverse auctions)
3. check_bid      - legality of a candidate bid for the mechanism
4. determine      - winner(s), quantities and final price(s) at the end

Only non-retracted bids take part. Ties between equal amounts always go to
the earliest bid (timestamp, then storage sequence).

Nothing here touches storage or the clock; `now` is passed in so the same
inputs always give the same answer.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from gavel.core.errors import UnsupportedMechanismError
from gavel.core.market import combinatorial
from gavel.core.market.types import (
    Auction,
    AuctionType,
    Bid,
    BidSide,
    ResultType,
    live_bids,
)

# Result codes for rejected bids
BID_TOO_LOW = "BID_TOO_LOW"
BID_INVALID = "BID_INVALID"

DEFAULT_TOTAL_UNITS = 10
DEFAULT_PENNY_EXTENSION_SECONDS = 10
DEFAULT_PENNY_MAX_EXTENSIONS = 100


# =============================================================================
# Results
# =============================================================================


@dataclass
class BidCheck:
    """Outcome of a mechanism legality check."""
    accepted: bool
    code: str = ""
    message: str = ""
    boundary: Optional[int] = None        # Minimum (or maximum) legal amount
    closes_auction: bool = False          # Dutch/Chinese acceptance, buy-now
    acceptance_price: Optional[int] = None
    fee: int = 0                          # Penny bid fee
    extend_by_ms: int = 0                 # Penny clock extension

    @classmethod
    def reject(cls, code: str, message: str, boundary: Optional[int] = None) -> "BidCheck":
        return cls(accepted=False, code=code, message=message, boundary=boundary)


@dataclass
class Award:
    """A winning allocation."""
    bid_id: str
    bidder_id: str
    quantity: int
    price: int
    side: Optional[str] = None
    package: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "bidder_id": self.bidder_id,
            "quantity": self.quantity,
            "price": self.price,
            "side": self.side,
            "package": self.package,
        }


@dataclass
class Charge:
    """An amount owed regardless of winning (all-pay bids, penny fees)."""
    bid_id: str
    bidder_id: str
    amount: int
    kind: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "bidder_id": self.bidder_id,
            "amount": self.amount,
            "kind": self.kind,
        }


@dataclass
class Determination:
    """Winner determination for an auction."""
    result_type: ResultType
    method: str
    awards: List[Award] = field(default_factory=list)
    charges: List[Charge] = field(default_factory=list)
    clearing_price: Optional[int] = None
    total_value: Optional[int] = None

    @property
    def winner(self) -> Optional[Award]:
        return self.awards[0] if self.awards else None

    @property
    def final_price(self) -> Optional[int]:
        if self.clearing_price is not None and self.result_type == ResultType.WINNER_DETERMINED:
            return self.clearing_price
        return self.winner.price if self.winner else None


# =============================================================================
# Helpers
# =============================================================================


def _rank_high(bids: List[Bid]) -> List[Bid]:
    """Highest amount first, earliest first on ties."""
    return sorted(bids, key=lambda b: (-b.amount, b.order_key))


def _rank_low(bids: List[Bid]) -> List[Bid]:
    """Lowest amount first, earliest first on ties."""
    return sorted(bids, key=lambda b: (b.amount, b.order_key))


def _meets_reserve(auction: Auction, amount: int) -> bool:
    return auction.reserve_price is None or amount >= auction.reserve_price


def _award(bid: Bid, price: int) -> Award:
    return Award(
        bid_id=bid.bid_id,
        bidder_id=bid.bidder_id,
        quantity=bid.quantity,
        price=price,
        side=bid.side.value if bid.side else None,
        package=list(bid.package) if bid.package else None,
    )


# =============================================================================
# Base mechanism
# =============================================================================


class Mechanism:
    """
    Base class: English-style ascending open outcry.

    Subclasses override whichever operations differ.
    """

    auction_type: AuctionType = AuctionType.ENGLISH
    method: str = "highest_bid"
    ascending: bool = True          # Price direction over the bid sequence
    tracks_leader: bool = True      # Earlier leaders become OUTBID
    allows_quantity: bool = False

    # -- price ---------------------------------------------------------------

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        bids = live_bids(bids)
        if not bids:
            return auction.starting_price
        return max(b.amount for b in bids)

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        if not live_bids(bids):
            return auction.starting_price
        return self.current_price(auction, bids, now) + auction.min_increment

    # -- admission -----------------------------------------------------------

    def check_shape(self, auction: Auction, candidate: Bid) -> Optional[BidCheck]:
        """Structural checks shared by all mechanisms."""
        if candidate.amount <= 0:
            return BidCheck.reject(BID_INVALID, "Bid amount must be positive")
        if candidate.quantity < 1:
            return BidCheck.reject(BID_INVALID, "Bid quantity must be at least 1")
        if candidate.quantity != 1 and not self.allows_quantity:
            return BidCheck.reject(
                BID_INVALID,
                f"{auction.auction_type.value} auctions accept single-unit bids only",
            )
        if candidate.side is not None and self.auction_type != AuctionType.DOUBLE:
            return BidCheck.reject(BID_INVALID, "Bid side is only valid in double auctions")
        if candidate.package and self.auction_type != AuctionType.COMBINATORIAL:
            return BidCheck.reject(BID_INVALID, "Packages are only valid in combinatorial auctions")
        return None

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        shape = self.check_shape(auction, candidate)
        if shape:
            return shape
        minimum = self.minimum_bid(auction, bids, now)
        if candidate.amount < minimum:
            return BidCheck.reject(
                BID_TOO_LOW,
                f"Bid {candidate.amount} below minimum {minimum}",
                boundary=minimum,
            )
        return BidCheck(accepted=True, boundary=minimum)

    # -- settlement ----------------------------------------------------------

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        bids = live_bids(bids)
        if not bids:
            return Determination(ResultType.NO_BIDS, self.method)
        top = _rank_high(bids)[0]
        if not _meets_reserve(auction, top.amount):
            return Determination(ResultType.RESERVE_NOT_MET, self.method)
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=[_award(top, top.amount)],
        )


# =============================================================================
# Ascending family
# =============================================================================


class EnglishMechanism(Mechanism):
    """Open ascending; highest bid wins and pays its bid."""


class BuyItNowMechanism(EnglishMechanism):
    """English auction with a list price that ends bidding immediately."""

    auction_type = AuctionType.BUY_IT_NOW

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        buy_now = auction.param("buy_now_price")
        shape = self.check_shape(auction, candidate)
        if shape:
            return shape
        if buy_now is not None and candidate.amount >= buy_now:
            return BidCheck(
                accepted=True,
                boundary=self.minimum_bid(auction, bids, now),
                closes_auction=True,
                acceptance_price=buy_now,
            )
        return super().check_bid(auction, bids, candidate, now)

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        buy_now = auction.param("buy_now_price")
        if buy_now is not None:
            for bid in live_bids(bids):
                if bid.amount >= buy_now:
                    return Determination(
                        ResultType.WINNER_DETERMINED,
                        "buy_now",
                        awards=[_award(bid, buy_now)],
                    )
        return super().determine(auction, bids, now)


class AllPayMechanism(EnglishMechanism):
    """Highest bid wins; every bidder pays their own highest bid."""

    auction_type = AuctionType.ALL_PAY
    method = "all_pay"

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        result = super().determine(auction, bids, now)
        best_by_bidder: Dict[str, Bid] = {}
        for bid in _rank_high(live_bids(bids)):
            best_by_bidder.setdefault(bid.bidder_id, bid)
        result.charges = [
            Charge(b.bid_id, b.bidder_id, b.amount, "all_pay")
            for b in sorted(best_by_bidder.values(), key=lambda b: b.order_key)
        ]
        return result


class PennyMechanism(EnglishMechanism):
    """
    Every bid raises the price by the increment, costs a fixed fee and
    pushes the clock back. The last (highest) bidder when time runs out wins.
    """

    auction_type = AuctionType.PENNY
    method = "last_bidder"

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        check = super().check_bid(auction, bids, candidate, now)
        if not check.accepted:
            return check
        max_extensions = int(auction.param("max_extensions", DEFAULT_PENNY_MAX_EXTENSIONS))
        seconds = int(auction.param("time_extension_seconds", DEFAULT_PENNY_EXTENSION_SECONDS))
        check.fee = int(auction.param("bid_fee", 0))
        if auction.extension_count < max_extensions:
            check.extend_by_ms = seconds * 1000
        return check

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        result = super().determine(auction, bids, now)
        result.charges = [
            Charge(b.bid_id, b.bidder_id, b.fee_charged, "bid_fee")
            for b in live_bids(bids)
            if b.fee_charged > 0
        ]
        return result


class JapaneseMechanism(Mechanism):
    """
    Ascending clock in fixed steps. Bidders confirm each level to stay in;
    missing a level drops them out. The last bidder standing at the highest
    confirmed level wins.
    """

    auction_type = AuctionType.JAPANESE
    method = "last_highest"
    tracks_leader = False

    @staticmethod
    def _bidders_at(bids: List[Bid], level: int) -> set:
        return {b.bidder_id for b in bids if b.amount == level}

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        return self.current_price(auction, bids, now)

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        shape = self.check_shape(auction, candidate)
        if shape:
            return shape

        step = auction.min_increment
        start = auction.starting_price
        amount = candidate.amount
        if amount < start:
            return BidCheck.reject(BID_TOO_LOW, f"Bid {amount} below starting level {start}", boundary=start)
        if (amount - start) % step != 0:
            return BidCheck.reject(BID_INVALID, f"Bid {amount} is not a price level", boundary=start)

        bids = live_bids(bids)
        if not bids:
            if amount != start:
                return BidCheck.reject(BID_INVALID, f"First round opens at {start}", boundary=start)
            return BidCheck(accepted=True, boundary=start)

        top = max(b.amount for b in bids)
        if amount < top:
            return BidCheck.reject(BID_TOO_LOW, f"Bid {amount} below current level {top}", boundary=top)
        if amount > top + step:
            return BidCheck.reject(BID_INVALID, "Price rises one level at a time", boundary=top)

        if amount == top:
            if candidate.bidder_id in self._bidders_at(bids, top):
                return BidCheck.reject(BID_INVALID, f"Level {top} already confirmed", boundary=top)
            if top > start and candidate.bidder_id not in self._bidders_at(bids, top - step):
                return BidCheck.reject(BID_INVALID, "Bidder dropped out in an earlier round", boundary=top)
            return BidCheck(accepted=True, boundary=top)

        if candidate.bidder_id not in self._bidders_at(bids, top):
            return BidCheck.reject(BID_INVALID, f"Bidder not active at level {top}", boundary=top)
        return BidCheck(accepted=True, boundary=top)

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        bids = live_bids(bids)
        if not bids:
            return Determination(ResultType.NO_BIDS, self.method)
        top = max(b.amount for b in bids)
        last_round = [b for b in bids if b.amount == top]
        winner = min(last_round, key=lambda b: b.order_key)
        if not _meets_reserve(auction, top):
            return Determination(ResultType.RESERVE_NOT_MET, self.method)
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=[_award(winner, top)],
        )


# =============================================================================
# Sealed family
# =============================================================================


class SealedBidMechanism(Mechanism):
    """First-price sealed bid: no visible running price, highest at reveal."""

    auction_type = AuctionType.SEALED_BID
    method = "sealed_highest"
    tracks_leader = False

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        return auction.starting_price

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        return auction.starting_price

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        limit = int(auction.param("max_bids_per_bidder", 1))
        placed = sum(1 for b in live_bids(bids) if b.bidder_id == candidate.bidder_id)
        if placed >= limit:
            return BidCheck.reject(
                BID_INVALID,
                f"Bidder already placed {placed} sealed bid(s), limit {limit}",
            )
        return super().check_bid(auction, bids, candidate, now)


class VickreyMechanism(SealedBidMechanism):
    """Second-price sealed bid: highest bidder wins, pays the runner-up's bid."""

    auction_type = AuctionType.VICKREY
    method = "second_price"

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        bids = live_bids(bids)
        if not bids:
            return auction.starting_price
        return max(b.amount for b in bids)

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        ranked = _rank_high(live_bids(bids))
        if not ranked:
            return Determination(ResultType.NO_BIDS, self.method)
        top = ranked[0]
        if not _meets_reserve(auction, top.amount):
            return Determination(ResultType.RESERVE_NOT_MET, self.method)
        rivals = [b for b in ranked[1:] if b.bidder_id != top.bidder_id]
        second = rivals[0].amount if rivals else auction.starting_price
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=[_award(top, second)],
        )


# =============================================================================
# Descending family
# =============================================================================


class ReverseMechanism(Mechanism):
    """Procurement auction: lowest offer wins; reserve is the buyer's ceiling."""

    auction_type = AuctionType.REVERSE
    method = "lowest_bid"
    ascending = False

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        bids = live_bids(bids)
        if not bids:
            return auction.starting_price
        return min(b.amount for b in bids)

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        # Acts as a ceiling: the next offer must undercut by the increment
        if not live_bids(bids):
            return auction.starting_price
        return self.current_price(auction, bids, now) - auction.min_increment

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        shape = self.check_shape(auction, candidate)
        if shape:
            return shape
        ceiling = self.minimum_bid(auction, bids, now)
        if candidate.amount > ceiling:
            return BidCheck.reject(
                BID_TOO_LOW,
                f"Offer {candidate.amount} does not undercut {ceiling}",
                boundary=ceiling,
            )
        return BidCheck(accepted=True, boundary=ceiling)

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        ranked = _rank_low(live_bids(bids))
        if not ranked:
            return Determination(ResultType.NO_BIDS, self.method)
        best = ranked[0]
        if auction.reserve_price is not None and best.amount > auction.reserve_price:
            return Determination(ResultType.RESERVE_NOT_MET, self.method)
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=[_award(best, best.amount)],
        )


class DutchMechanism(Mechanism):
    """
    Descending clock. The price drops by `decrement_amount` every
    `decrement_interval_seconds` down to max(reserve, minimum_price); the
    first bid at or above the clock price takes the item at that price.
    """

    auction_type = AuctionType.DUTCH
    method = "descending_price"
    ascending = False
    tracks_leader = False
    default_interval_seconds = 1

    def floor_price(self, auction: Auction) -> int:
        return max(auction.reserve_price or 0, int(auction.param("minimum_price", 0)))

    def clock_price(self, auction: Auction, at: int) -> int:
        decrement = int(auction.param("decrement_amount", auction.min_increment))
        interval_ms = int(auction.param("decrement_interval_seconds", self.default_interval_seconds)) * 1000
        steps = max(0, at - auction.start_time) // max(1, interval_ms)
        return max(self.floor_price(auction), auction.starting_price - steps * decrement)

    def _acceptance(self, auction: Auction, bids: List[Bid]) -> Optional[Bid]:
        for bid in live_bids(bids):
            if bid.amount >= self.clock_price(auction, bid.timestamp):
                return bid
        return None

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        accepted = self._acceptance(auction, bids)
        if accepted is not None:
            return self.clock_price(auction, accepted.timestamp)
        return self.clock_price(auction, now)

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        return self.current_price(auction, bids, now)

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        shape = self.check_shape(auction, candidate)
        if shape:
            return shape
        if self._acceptance(auction, bids) is not None:
            return BidCheck.reject(BID_INVALID, "Price already accepted")
        price = self.clock_price(auction, now)
        if candidate.amount < price:
            return BidCheck.reject(
                BID_TOO_LOW,
                f"Bid {candidate.amount} below clock price {price}",
                boundary=price,
            )
        return BidCheck(
            accepted=True,
            boundary=price,
            closes_auction=True,
            acceptance_price=price,
        )

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        if not live_bids(bids):
            return Determination(ResultType.NO_BIDS, self.method)
        accepted = self._acceptance(auction, bids)
        if accepted is None:
            return Determination(ResultType.RESERVE_NOT_MET, self.method)
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=[_award(accepted, self.clock_price(auction, accepted.timestamp))],
        )


class ChineseMechanism(DutchMechanism):
    """Ticket-style descending price in coarse steps; first acceptance wins."""

    auction_type = AuctionType.CHINESE
    method = "winning_bid"
    default_interval_seconds = 60


# =============================================================================
# Multi-unit family
# =============================================================================


class MultiUnitMechanism(Mechanism):
    """
    Uniform-price multi-unit auction. Bids are filled highest amount first
    until `total_units` run out; everyone pays the lowest filled amount.
    """

    auction_type = AuctionType.MULTI_UNIT
    method = "market_clearing"
    tracks_leader = False
    allows_quantity = True

    @staticmethod
    def supply(auction: Auction) -> int:
        return int(auction.param("total_units", DEFAULT_TOTAL_UNITS))

    def allocate(self, bids: List[Bid], supply: int) -> List[tuple]:
        remaining = supply
        filled = []
        for bid in _rank_high(bids):
            if remaining <= 0:
                break
            qty = min(bid.quantity, remaining)
            filled.append((bid, qty))
            remaining -= qty
        return filled

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        bids = live_bids(bids)
        supply = self.supply(auction)
        if sum(b.quantity for b in bids) < supply:
            return auction.starting_price
        return min(b.amount for b, _ in self.allocate(bids, supply))

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        bids = live_bids(bids)
        if sum(b.quantity for b in bids) < self.supply(auction):
            return auction.starting_price
        return self.current_price(auction, bids, now) + auction.min_increment

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        supply = self.supply(auction)
        if candidate.quantity > supply:
            return BidCheck.reject(BID_INVALID, f"Quantity {candidate.quantity} exceeds supply {supply}")
        return super().check_bid(auction, bids, candidate, now)

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        bids = live_bids(bids)
        if not bids:
            return Determination(ResultType.NO_BIDS, self.method)
        eligible = [b for b in bids if _meets_reserve(auction, b.amount)]
        if not eligible:
            return Determination(ResultType.RESERVE_NOT_MET, self.method)
        filled = self.allocate(eligible, self.supply(auction))
        clearing = min(b.amount for b, _ in filled)
        awards = [
            Award(
                bid_id=b.bid_id,
                bidder_id=b.bidder_id,
                quantity=qty,
                price=clearing,
            )
            for b, qty in filled
        ]
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=awards,
            clearing_price=clearing,
            total_value=clearing * sum(qty for _, qty in filled),
        )


class DoubleMechanism(Mechanism):
    """
    Two-sided call market. Buy orders (highest first) are matched unit by
    unit against sell orders (lowest first) while the buy price covers the
    ask; every matched unit trades at the midpoint of the last matched pair.
    """

    auction_type = AuctionType.DOUBLE
    method = "double_clearing"
    tracks_leader = False
    allows_quantity = True

    @staticmethod
    def _split(bids: List[Bid]):
        buys = _rank_high([b for b in bids if b.side == BidSide.BUY])
        sells = _rank_low([b for b in bids if b.side == BidSide.SELL])
        return buys, sells

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        buys, sells = self._split(live_bids(bids))
        if buys and sells and buys[0].amount >= sells[0].amount:
            return (buys[0].amount + sells[0].amount) // 2
        if buys:
            return buys[0].amount
        return auction.starting_price

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        return 1

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        shape = self.check_shape(auction, candidate)
        if shape:
            return shape
        if candidate.side is None:
            return BidCheck.reject(BID_INVALID, "Double auction orders need a side (buy/sell)")
        return BidCheck(accepted=True, boundary=1)

    def match(self, bids: List[Bid]):
        """Return ([(buy, sell, qty)], clearing_price or None)."""
        buys, sells = self._split(bids)
        matches = []
        i = j = 0
        buy_left = buys[0].quantity if buys else 0
        sell_left = sells[0].quantity if sells else 0
        while i < len(buys) and j < len(sells) and buys[i].amount >= sells[j].amount:
            qty = min(buy_left, sell_left)
            matches.append((buys[i], sells[j], qty))
            buy_left -= qty
            sell_left -= qty
            if buy_left == 0:
                i += 1
                buy_left = buys[i].quantity if i < len(buys) else 0
            if sell_left == 0:
                j += 1
                sell_left = sells[j].quantity if j < len(sells) else 0
        if not matches:
            return matches, None
        last_buy, last_sell, _ = matches[-1]
        return matches, (last_buy.amount + last_sell.amount) // 2

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        bids = live_bids(bids)
        if not bids:
            return Determination(ResultType.NO_BIDS, self.method)
        matches, clearing = self.match(bids)
        if clearing is None:
            return Determination(ResultType.NO_MATCH, self.method)
        if not _meets_reserve(auction, clearing):
            return Determination(ResultType.RESERVE_NOT_MET, self.method, clearing_price=clearing)

        filled: Dict[str, List] = {}
        for buy, sell, qty in matches:
            for bid in (buy, sell):
                entry = filled.setdefault(bid.bid_id, [bid, 0])
                entry[1] += qty
        buy_awards = []
        sell_awards = []
        for bid, qty in filled.values():
            award = Award(
                bid_id=bid.bid_id,
                bidder_id=bid.bidder_id,
                quantity=qty,
                price=clearing,
                side=bid.side.value,
            )
            (buy_awards if bid.side == BidSide.BUY else sell_awards).append(award)
        volume = sum(qty for _, _, qty in matches)
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=buy_awards + sell_awards,
            clearing_price=clearing,
            total_value=clearing * volume,
        )


class CombinatorialMechanism(Mechanism):
    """Package bidding over item sets; winners are item-disjoint, pay as bid."""

    auction_type = AuctionType.COMBINATORIAL
    method = "total_value"
    tracks_leader = False
    allows_quantity = True

    def current_price(self, auction: Auction, bids: List[Bid], now: int) -> int:
        bids = live_bids(bids)
        if not bids:
            return auction.starting_price
        _, total = combinatorial.allocate(auction, bids)
        return total

    def minimum_bid(self, auction: Auction, bids: List[Bid], now: int) -> int:
        return auction.starting_price

    def check_bid(self, auction: Auction, bids: List[Bid], candidate: Bid, now: int) -> BidCheck:
        shape = self.check_shape(auction, candidate)
        if shape:
            return shape
        package = candidate.package or []
        if not package:
            return BidCheck.reject(BID_INVALID, "Combinatorial bids need a non-empty package")
        if len(set(package)) != len(package):
            return BidCheck.reject(BID_INVALID, "Package lists an item twice")
        max_size = int(auction.param("max_package_size", combinatorial.DEFAULT_MAX_PACKAGE_SIZE))
        if len(package) > max_size:
            return BidCheck.reject(BID_INVALID, f"Package size {len(package)} exceeds {max_size}")
        items = auction.param("items")
        if items:
            unknown = sorted(set(package) - set(items))
            if unknown:
                return BidCheck.reject(BID_INVALID, f"Unknown items in package: {', '.join(unknown)}")
        if candidate.amount < auction.starting_price:
            return BidCheck.reject(
                BID_TOO_LOW,
                f"Bid {candidate.amount} below minimum {auction.starting_price}",
                boundary=auction.starting_price,
            )
        return BidCheck(accepted=True, boundary=auction.starting_price)

    def determine(self, auction: Auction, bids: List[Bid], now: int) -> Determination:
        bids = live_bids(bids)
        if not bids:
            return Determination(ResultType.NO_BIDS, self.method)
        chosen, total = combinatorial.allocate(auction, bids)
        if not _meets_reserve(auction, total):
            return Determination(ResultType.RESERVE_NOT_MET, self.method, total_value=total)
        return Determination(
            ResultType.WINNER_DETERMINED,
            self.method,
            awards=[_award(bid, value) for bid, value in chosen],
            total_value=total,
        )


# =============================================================================
# Registry
# =============================================================================

MECHANISMS: Dict[AuctionType, Mechanism] = {
    m.auction_type: m
    for m in (
        EnglishMechanism(),
        DutchMechanism(),
        SealedBidMechanism(),
        ReverseMechanism(),
        VickreyMechanism(),
        BuyItNowMechanism(),
        DoubleMechanism(),
        AllPayMechanism(),
        JapaneseMechanism(),
        ChineseMechanism(),
        PennyMechanism(),
        MultiUnitMechanism(),
        CombinatorialMechanism(),
    )
}


def get_mechanism(auction_type) -> Mechanism:
    """
    Look up the mechanism for an auction type.

    Raises:
        UnsupportedMechanismError: no mechanism is registered for the type
    """
    mechanism = MECHANISMS.get(auction_type)
    if mechanism is None:
        raise UnsupportedMechanismError(
            f"Unsupported auction type: {getattr(auction_type, 'value', auction_type)}",
            field="auction_type",
        )
    return mechanism
