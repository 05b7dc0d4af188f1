"""
SettlementResolver - idempotent auction settlement.

Settling an auction determines its outcome through the PriceOracle and, in
one transaction, writes:

- status COMPLETED (version checked)
- the immutable settlement record
- WINNING / LOSING status for every live bid
- one `auction_ended` outbox event

Settling an already completed auction returns the stored record unchanged.
"""

from dataclasses import replace
from typing import TYPE_CHECKING, List, Optional

from gavel.core.errors import AuctionStateError, ConcurrencyConflict
from gavel.core.market.oracle import PriceOracle
from gavel.core.market.types import AuctionStatus, BidStatus, can_transition_bid, now_ms
from gavel.core.outbox.events import EventType
from gavel.core.settlement.record import SettlementRecord
from gavel.utils.logger import get_logger

if TYPE_CHECKING:
    from gavel.core.storage.store import AuctionStore

logger = get_logger("settlement")


class SettlementResolver:
    """Determines and records auction outcomes."""

    def __init__(self, store: "AuctionStore", oracle: PriceOracle):
        self.store = store
        self.oracle = oracle

    def settle(self, auction_id: str, force: bool = False, now: Optional[int] = None) -> SettlementRecord:
        """
        Settle an auction.

        Args:
            auction_id: Auction to settle
            force: Settle before the end time (the auction must still be ACTIVE)
            now: Clock override (epoch ms)

        Returns:
            The settlement record (the stored one if already settled)

        Raises:
            AuctionStateError: not ACTIVE, cancelled, or not yet ended
            ConcurrencyConflict: auction changed while settling
        """
        at = now_ms() if now is None else now

        with self.store.transaction() as tx:
            auction = tx.require_auction(auction_id)

            if auction.status == AuctionStatus.COMPLETED:
                record = tx.get_settlement(auction_id)
                if record is None:
                    raise AuctionStateError(
                        f"Auction {auction_id} is completed without a settlement record",
                        code="SETTLEMENT_MISSING",
                        context={"auction_id": auction_id},
                    )
                logger.debug(f"Auction {auction_id[:8]} already settled")
                return record

            if auction.status != AuctionStatus.ACTIVE:
                raise AuctionStateError(
                    f"Auction {auction_id} is {auction.status.value} and cannot be settled",
                    code="AUCTION_NOT_ACTIVE",
                    context={"auction_id": auction_id, "status": auction.status.value},
                )
            closed = auction.param("closing_bid_id") is not None
            if not force and not closed and not auction.has_ended(at):
                raise AuctionStateError(
                    f"Auction {auction_id} ends at {auction.end_time}",
                    code="AUCTION_NOT_ENDED",
                    context={"auction_id": auction_id, "end_time": auction.end_time, "now": at},
                )

            bids = tx.list_bids(auction_id)
            determination = self.oracle.determine(auction, bids, at)
            record = SettlementRecord.from_determination(auction_id, determination, force, at)

            awarded = set(record.awarded_bid_ids)
            for bid in bids:
                if not bid.is_live:
                    continue
                target = BidStatus.WINNING if bid.bid_id in awarded else BidStatus.LOSING
                if bid.status != target and can_transition_bid(bid.status, target):
                    tx.update_bid_status(bid, target)

            updated = tx.update_auction(
                replace(auction, status=AuctionStatus.COMPLETED),
                expected_version=auction.version,
            )
            tx.insert_settlement(record)
            tx.append_event(
                EventType.AUCTION_ENDED,
                auction_id,
                {**record.to_dict(), "auction_version": updated.version},
                created_at=at,
            )

        logger.info(
            f"Settled {auction.auction_type.value} auction {auction_id[:8]}: "
            f"{record.result_type.value} winner={record.winner_id} price={record.final_price}"
            + (" (forced)" if force else "")
        )
        return record

    def get_settlement(self, auction_id: str) -> Optional[SettlementRecord]:
        with self.store.transaction(write=False) as tx:
            tx.require_auction(auction_id)
            return tx.get_settlement(auction_id)

    def settle_due(self, now: Optional[int] = None) -> List[SettlementRecord]:
        """
        Settle every ACTIVE auction whose end time has passed.

        Each auction settles in its own transaction; one that changed under
        us is left for the next sweep.
        """
        at = now_ms() if now is None else now
        with self.store.transaction(write=False) as tx:
            due = [a.auction_id for a in tx.list_auctions(status=AuctionStatus.ACTIVE, ends_before=at)]

        records = []
        for auction_id in due:
            try:
                records.append(self.settle(auction_id, now=at))
            except ConcurrencyConflict as e:
                logger.warning(f"Settlement of {auction_id[:8]} deferred: {e}")
        if records:
            logger.info(f"Settled {len(records)} due auction(s)")
        return records
