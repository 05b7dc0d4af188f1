"""
BidLedger - idempotent bid admission.

Admission runs in a single store transaction:

1. Idempotency: a key seen before returns the earlier bid id untouched
2. Auction state: ACTIVE, inside its window, not closed by an accepted bid
3. Mechanism legality through the PriceOracle
4. Business rules: ERROR/CRITICAL failures abort, WARNING failures admit
   and record a soft violation, INFO failures are only logged
5. Bid row, outbid statuses, auction version bump and clock extensions
6. `bid_placed` (and `auction_extended`) outbox rows

Nothing is retried internally: a `ConcurrencyConflict` goes back to the
caller, who retries with the same idempotency key.
"""

import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from gavel.core.config import EngineConfig
from gavel.core.errors import (
    AuctionStateError,
    BidRejectedError,
    BusinessRuleError,
    NotFoundError,
    ValidationError,
)
from gavel.core.ledger.auctions import (
    ANTI_SNIPING_TYPES,
    DEFAULT_EXTENSION_DURATION_SECONDS,
    DEFAULT_EXTENSION_TRIGGER_SECONDS,
    DEFAULT_MAX_AUTO_EXTENSIONS,
)
from gavel.core.market.oracle import PriceOracle
from gavel.core.market.types import (
    Auction,
    AuctionStatus,
    Bid,
    BidStatus,
    live_bids,
    now_ms,
)
from gavel.core.outbox.events import EventType
from gavel.core.rules.engine import RuleEngine
from gavel.core.rules.models import RuleResult, Severity
from gavel.utils.logger import get_logger
from gavel.utils.validation import PlaceBidRequest, parse_request, validate_idempotency_key

if TYPE_CHECKING:
    from gavel.core.storage.store import AuctionStore, StoreTransaction

logger = get_logger("ledger.bids")


class _AdmissionBlocked(Exception):
    """Unwinds the admission transaction when a blocking rule fails."""

    def __init__(self, failures: List[RuleResult]):
        super().__init__(failures[0].message)
        self.failures = failures


class BidLedger:
    """Bid admission, retraction and history."""

    def __init__(
        self,
        store: "AuctionStore",
        oracle: PriceOracle,
        rules: RuleEngine,
        config: EngineConfig,
    ):
        self.store = store
        self.oracle = oracle
        self.rules = rules
        self.config = config

    # =========================================================================
    # Admission
    # =========================================================================

    @staticmethod
    def _require_open(auction: Auction, at: int) -> None:
        context = {"auction_id": auction.auction_id, "status": auction.status.value}
        if auction.status != AuctionStatus.ACTIVE:
            raise AuctionStateError(
                f"Auction {auction.auction_id} is {auction.status.value}",
                code="AUCTION_NOT_ACTIVE",
                context=context,
            )
        if at < auction.start_time:
            raise AuctionStateError(
                f"Auction {auction.auction_id} has not started",
                code="AUCTION_NOT_STARTED",
                context={**context, "start_time": auction.start_time},
            )
        if auction.param("closing_bid_id") or at > auction.end_time:
            raise AuctionStateError(
                f"Auction {auction.auction_id} has ended",
                code="AUCTION_ENDED",
                context={**context, "end_time": auction.end_time},
            )

    def _rule_context(
        self,
        auction: Auction,
        bids: List[Bid],
        candidate: Bid,
        user_groups: Sequence[str],
        at: int,
    ) -> Dict[str, Any]:
        live = live_bids(bids)
        own = [b for b in live if b.bidder_id == candidate.bidder_id]
        last_own = own[-1].timestamp if own else None
        current = self.oracle.current_price(auction, bids, at)
        return {
            "bid": candidate.to_dict(),
            "auction": {
                **auction.to_dict(),
                "current_price": current,
                "minimum_bid": self.oracle.minimum_bid(auction, bids, at),
                "bid_count": len(live),
                "bidder_count": len({b.bidder_id for b in live}),
                "time_remaining_ms": auction.end_time - at,
                "elapsed_ms": at - auction.start_time,
            },
            "bidder": {
                "id": candidate.bidder_id,
                "groups": list(user_groups),
                "bid_count": len(own),
                "last_bid_at": last_own,
                "ms_since_last_bid": at - last_own if last_own is not None else None,
                "is_leading": bool(live) and self._leader(auction, live) == candidate.bidder_id,
            },
            "now": at,
        }

    def _leader(self, auction: Auction, live: List[Bid]) -> Optional[str]:
        if not self.oracle.mechanism(auction).tracks_leader:
            return None
        if self.oracle.mechanism(auction).ascending:
            best = max(live, key=lambda b: (b.amount, -b.timestamp, -b.sequence))
        else:
            best = min(live, key=lambda b: (b.amount, b.order_key))
        return best.bidder_id

    def _extend(self, auction: Auction, check_extend_ms: int, at: int) -> Auction:
        """Apply penny and anti-sniping clock extensions."""
        if check_extend_ms:
            return replace(
                auction,
                end_time=auction.end_time + check_extend_ms,
                extension_count=auction.extension_count + 1,
            )

        if auction.auction_type not in ANTI_SNIPING_TYPES or not auction.param("auto_extend", False):
            return auction
        trigger_ms = int(auction.param("extension_trigger_seconds", DEFAULT_EXTENSION_TRIGGER_SECONDS)) * 1000
        duration_ms = int(auction.param("extension_duration_seconds", DEFAULT_EXTENSION_DURATION_SECONDS)) * 1000
        limit = int(auction.param("max_auto_extensions", DEFAULT_MAX_AUTO_EXTENSIONS))
        if auction.end_time - at > trigger_ms or auction.extension_count >= limit:
            return auction
        return replace(
            auction,
            end_time=auction.end_time + duration_ms,
            extension_count=auction.extension_count + 1,
        )

    def place_bid(
        self,
        request: Any,
        idempotency_key: Optional[str] = None,
        now: Optional[int] = None,
    ) -> str:
        """
        Admit a bid.

        Args:
            request: PlaceBidRequest or mapping with the same fields
            idempotency_key: Client key; a repeat returns the first bid id
            now: Clock override (epoch ms)

        Returns:
            bid_id

        Raises:
            ValidationError / BidRejectedError: malformed or illegal bid
            AuctionStateError: auction not accepting bids
            BusinessRuleError: blocking rule failed (violation recorded)
            ConcurrencyConflict: auction changed concurrently
        """
        req = parse_request(PlaceBidRequest, request)
        key = validate_idempotency_key(idempotency_key)
        at = now_ms() if now is None else now

        try:
            with self.store.transaction() as tx:
                if key is not None:
                    prior = tx.find_bid_by_key(key)
                    if prior is not None:
                        logger.debug(f"Idempotent replay of bid {prior.bid_id[:8]} ({key})")
                        return prior.bid_id

                auction = tx.require_auction(req.auction_id)
                self._require_open(auction, at)
                bids = tx.list_bids(auction.auction_id)

                candidate = Bid(
                    bid_id=uuid.uuid4().hex,
                    auction_id=auction.auction_id,
                    bidder_id=req.bidder_id,
                    amount=req.amount,
                    quantity=req.quantity,
                    timestamp=at,
                    idempotency_key=key,
                    side=req.side,
                    package=list(req.package) if req.package else None,
                )

                check = self.oracle.check_bid(auction, bids, candidate, at)
                if not check.accepted:
                    logger.warning(
                        f"Bid rejected on {auction.auction_id[:8]}: {check.code} {check.message}"
                    )
                    raise BidRejectedError(
                        check.message,
                        field="amount",
                        code=check.code,
                        context={
                            "auction_id": auction.auction_id,
                            "amount": candidate.amount,
                            "boundary": check.boundary,
                        },
                    )

                context = self._rule_context(auction, bids, candidate, req.user_groups, at)
                results = self.rules.evaluate_bid(tx, auction, context, req.user_groups, at)
                failures = self.rules.failures(results)
                blocking = [f for f in failures if f.rule.severity.blocking]
                if blocking:
                    raise _AdmissionBlocked(blocking)

                bid = tx.insert_bid(replace(candidate, fee_charged=check.fee))
                self._mark_outbid(tx, auction, bids, bid)
                updated = self._write_auction(tx, auction, check, bid, at)

                for failure in failures:
                    if failure.rule.severity == Severity.WARNING:
                        self.rules.record_violation(tx, failure, auction.auction_id, bid.bidder_id, bid.bid_id, at)
                    else:
                        logger.info(f"Rule {failure.rule.rule_code} (info) failed for bid {bid.bid_id[:8]}")

                current = self.oracle.current_price(updated, bids + [bid], at)
                tx.append_event(
                    EventType.BID_PLACED,
                    auction.auction_id,
                    {
                        "bid": bid.to_dict(),
                        "current_price": current,
                        "auction_version": updated.version,
                        "closes_auction": check.closes_auction,
                    },
                    created_at=at,
                )
                if updated.end_time != auction.end_time and not check.closes_auction:
                    tx.append_event(
                        EventType.AUCTION_EXTENDED,
                        auction.auction_id,
                        {
                            "previous_end_time": auction.end_time,
                            "end_time": updated.end_time,
                            "extension_count": updated.extension_count,
                            "bid_id": bid.bid_id,
                        },
                        created_at=at,
                    )
        except _AdmissionBlocked as blocked:
            self._record_blocked(blocked.failures, req.auction_id, req.bidder_id, at)
            first = blocked.failures[0]
            raise BusinessRuleError(
                first.message,
                rule_id=first.rule.rule_id,
                rule_code=first.rule.rule_code,
                severity=first.rule.severity.value,
                context={
                    "auction_id": req.auction_id,
                    "bidder_id": req.bidder_id,
                    "expected": first.expected,
                    "actual": first.actual,
                    "violations": [f.rule.rule_code for f in blocked.failures],
                },
            ) from None

        logger.info(
            f"Bid {bid.bid_id[:8]} placed on {auction.auction_id[:8]} "
            f"by {bid.bidder_id}: {bid.amount} x{bid.quantity}"
        )
        return bid.bid_id

    def _mark_outbid(self, tx: "StoreTransaction", auction: Auction, bids: List[Bid], bid: Bid) -> None:
        """Earlier leaders of ascending / reverse mechanisms become OUTBID."""
        if not self.oracle.mechanism(auction).tracks_leader:
            return
        for earlier in bids:
            if earlier.status == BidStatus.ACTIVE:
                tx.update_bid_status(earlier, BidStatus.OUTBID)

    def _write_auction(self, tx: "StoreTransaction", auction: Auction, check, bid: Bid, at: int) -> Auction:
        updated = auction
        if check.closes_auction:
            params = dict(auction.params)
            params["closing_bid_id"] = bid.bid_id
            params["acceptance_price"] = check.acceptance_price
            updated = replace(auction, params=params, end_time=max(at, auction.start_time + 1))
        else:
            updated = self._extend(auction, check.extend_by_ms, at)
        return tx.update_auction(updated, expected_version=auction.version)

    def _record_blocked(self, failures: List[RuleResult], auction_id: str, bidder_id: str, at: int) -> None:
        with self.store.transaction() as tx:
            for failure in failures:
                self.rules.record_violation(tx, failure, auction_id, bidder_id, None, at)

    # =========================================================================
    # Retraction
    # =========================================================================

    def retract_bid(
        self,
        bid_id: str,
        bidder_id: str,
        reason: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Bid:
        """
        Withdraw a bid.

        Allowed while the auction is ACTIVE, retraction is enabled for it and
        more than `retraction_cutoff_seconds` remain before the end.
        """
        at = now_ms() if now is None else now
        with self.store.transaction() as tx:
            bid = tx.get_bid(bid_id)
            if bid is None:
                raise NotFoundError(f"Bid {bid_id} not found", field="bid_id")
            if bid.bidder_id != bidder_id:
                raise ValidationError(
                    f"Bid {bid_id} does not belong to {bidder_id}",
                    field="bidder_id",
                    code="NOT_BID_OWNER",
                )
            if bid.status == BidStatus.RETRACTED:
                return bid

            auction = tx.require_auction(bid.auction_id)
            if auction.status != AuctionStatus.ACTIVE:
                raise AuctionStateError(
                    f"Auction {auction.auction_id} is {auction.status.value}",
                    code="AUCTION_NOT_ACTIVE",
                    context={"auction_id": auction.auction_id},
                )
            if not auction.param("allow_bid_retraction", True):
                raise AuctionStateError(
                    "Bid retraction is disabled for this auction",
                    code="RETRACTION_NOT_ALLOWED",
                    context={"auction_id": auction.auction_id},
                )
            if auction.param("closing_bid_id") == bid.bid_id:
                raise AuctionStateError(
                    "An accepted closing bid cannot be retracted",
                    code="RETRACTION_NOT_ALLOWED",
                    context={"auction_id": auction.auction_id, "bid_id": bid_id},
                )
            cutoff_ms = self.config.retraction_cutoff_seconds * 1000
            if auction.end_time - at <= cutoff_ms:
                raise AuctionStateError(
                    f"Bids cannot be retracted within {self.config.retraction_cutoff_seconds}s of the end",
                    code="RETRACTION_WINDOW_CLOSED",
                    context={"auction_id": auction.auction_id, "end_time": auction.end_time},
                )

            retracted = tx.update_bid_status(bid, BidStatus.RETRACTED)
            self._restore_leader(tx, auction, bid_id)
            updated = tx.update_auction(auction, expected_version=auction.version)
            tx.append_event(
                EventType.BID_RETRACTED,
                auction.auction_id,
                {
                    "bid_id": bid_id,
                    "bidder_id": bidder_id,
                    "reason": reason,
                    "auction_version": updated.version,
                },
                created_at=at,
            )

        logger.info(f"Bid {bid_id[:8]} retracted by {bidder_id}")
        return retracted

    def _restore_leader(self, tx: "StoreTransaction", auction: Auction, retracted_id: str) -> None:
        """After a retraction the best remaining bid leads again."""
        if not self.oracle.mechanism(auction).tracks_leader:
            return
        remaining = [b for b in tx.list_bids(auction.auction_id) if b.is_live and b.bid_id != retracted_id]
        if not remaining:
            return
        if any(b.status == BidStatus.ACTIVE for b in remaining):
            return
        ascending = self.oracle.mechanism(auction).ascending
        if ascending:
            best = sorted(remaining, key=lambda b: (-b.amount, b.order_key))[0]
        else:
            best = sorted(remaining, key=lambda b: (b.amount, b.order_key))[0]
        tx.update_bid_status(best, BidStatus.ACTIVE)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_bid(self, bid_id: str) -> Bid:
        with self.store.transaction(write=False) as tx:
            bid = tx.get_bid(bid_id)
        if bid is None:
            raise NotFoundError(f"Bid {bid_id} not found", field="bid_id")
        return bid

    def get_bid_history(self, auction_id: str) -> List[Bid]:
        with self.store.transaction(write=False) as tx:
            tx.require_auction(auction_id)
            return tx.list_bids(auction_id)

    def get_bids_by_bidder(self, bidder_id: str) -> List[Bid]:
        with self.store.transaction(write=False) as tx:
            return tx.list_bids_by_bidder(bidder_id)

    def current_price(self, auction_id: str, now: Optional[int] = None) -> int:
        with self.store.transaction(write=False) as tx:
            auction = tx.require_auction(auction_id)
            bids = tx.list_bids(auction_id)
        return self.oracle.current_price(auction, bids, now)
