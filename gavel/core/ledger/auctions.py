"""
AuctionService - auction creation and lifecycle.

Creation validates the request and the type-specific parameter bag, then
writes the auction row and an `auction_created` outbox event in one
transaction. Repeating a creation with the same idempotency key returns
the auction created the first time.
"""

import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from gavel.core.errors import AuctionStateError, ConcurrencyConflict, ValidationError
from gavel.core.market import combinatorial
from gavel.core.market.mechanisms import get_mechanism
from gavel.core.market.types import (
    Auction,
    AuctionStatus,
    AuctionType,
    can_transition,
    now_ms,
)
from gavel.core.outbox.events import EventType
from gavel.utils.logger import get_logger
from gavel.utils.validation import CreateAuctionRequest, parse_request, validate_idempotency_key

if TYPE_CHECKING:
    from gavel.core.storage.store import AuctionStore, StoreTransaction

logger = get_logger("ledger.auctions")

# Types that honour the anti-sniping parameters
ANTI_SNIPING_TYPES = frozenset({
    AuctionType.ENGLISH,
    AuctionType.BUY_IT_NOW,
    AuctionType.ALL_PAY,
    AuctionType.JAPANESE,
})

DEFAULT_EXTENSION_TRIGGER_SECONDS = 300
DEFAULT_EXTENSION_DURATION_SECONDS = 300
DEFAULT_MAX_AUTO_EXTENSIONS = 10


# =============================================================================
# Parameter validation
# =============================================================================


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _positive_int(params: Dict[str, Any], name: str, errors: List[str], required: bool = False) -> None:
    value = params.get(name)
    if value is None:
        if required:
            errors.append(f"{name} is required")
        return
    if not _is_int(value) or value <= 0:
        errors.append(f"{name} must be a positive integer")


def _non_negative_int(params: Dict[str, Any], name: str, errors: List[str]) -> None:
    value = params.get(name)
    if value is not None and (not _is_int(value) or value < 0):
        errors.append(f"{name} must be a non-negative integer")


def _boolean(params: Dict[str, Any], name: str, errors: List[str]) -> None:
    value = params.get(name)
    if value is not None and not isinstance(value, bool):
        errors.append(f"{name} must be a boolean")


def validate_auction_params(
    auction_type: AuctionType,
    params: Dict[str, Any],
    starting_price: int,
    reserve_price: Optional[int] = None,
) -> Tuple[List[str], List[str]]:
    """
    Check the type-specific parameter bag.

    Returns:
        (errors, warnings)
    """
    errors: List[str] = []
    warnings: List[str] = []

    # Common
    _boolean(params, "allow_bid_retraction", errors)
    _boolean(params, "auto_extend", errors)
    _positive_int(params, "extension_trigger_seconds", errors)
    _positive_int(params, "extension_duration_seconds", errors)
    _non_negative_int(params, "max_auto_extensions", errors)
    if params.get("auto_extend") and auction_type not in ANTI_SNIPING_TYPES:
        warnings.append(f"auto_extend has no effect on {auction_type.value} auctions")

    if auction_type in (AuctionType.DUTCH, AuctionType.CHINESE):
        _positive_int(params, "decrement_amount", errors, required=True)
        _positive_int(params, "decrement_interval_seconds", errors)
        _non_negative_int(params, "minimum_price", errors)
        floor = max(reserve_price or 0, params.get("minimum_price") or 0)
        if _is_int(floor) and floor > starting_price:
            errors.append("minimum_price / reserve_price must not exceed starting_price")

    elif auction_type in (AuctionType.SEALED_BID, AuctionType.VICKREY):
        _positive_int(params, "max_bids_per_bidder", errors)
        if params.get("max_bids_per_bidder") is None:
            warnings.append("max_bids_per_bidder not specified, defaulting to 1")

    elif auction_type == AuctionType.BUY_IT_NOW:
        _positive_int(params, "buy_now_price", errors, required=True)
        buy_now = params.get("buy_now_price")
        if _is_int(buy_now) and buy_now <= starting_price:
            errors.append("buy_now_price must exceed starting_price")

    elif auction_type == AuctionType.PENNY:
        _positive_int(params, "bid_fee", errors, required=True)
        _positive_int(params, "time_extension_seconds", errors)
        _positive_int(params, "max_extensions", errors)

    elif auction_type == AuctionType.MULTI_UNIT:
        _positive_int(params, "total_units", errors)
        if params.get("total_units") is None:
            warnings.append("total_units not specified, defaulting to 10")

    elif auction_type == AuctionType.COMBINATORIAL:
        _positive_int(params, "max_package_size", errors)
        _non_negative_int(params, "synergy_bps", errors)
        items = params.get("items")
        if items is not None and (
            not isinstance(items, list) or not items or not all(isinstance(i, str) for i in items)
        ):
            errors.append("items must be a non-empty list of item ids")
        method = params.get("package_valuation_method", "additive")
        if method not in combinatorial.VALUATION_METHODS:
            errors.append(
                f"package_valuation_method must be one of: {', '.join(combinatorial.VALUATION_METHODS)}"
            )
        if method == "custom" and not params.get("custom_valuation"):
            errors.append("custom_valuation is required for the custom valuation method")
        policy = params.get("winner_determination", "greedy")
        if policy not in ("greedy", "exact"):
            errors.append("winner_determination must be 'greedy' or 'exact'")

    return errors, warnings


# =============================================================================
# Service
# =============================================================================


class AuctionService:
    """Auction creation, status transitions and scheduled activation."""

    def __init__(self, store: "AuctionStore"):
        self.store = store

    def create_auction(self, request: Any, idempotency_key: Optional[str] = None) -> Auction:
        """
        Create an auction.

        Returns the auction already created under `idempotency_key` when the
        key was seen before.

        Raises:
            ValidationError: malformed request or parameter bag
            UnsupportedMechanismError: unknown auction type
        """
        req = parse_request(CreateAuctionRequest, request)
        key = validate_idempotency_key(idempotency_key)
        get_mechanism(req.auction_type)

        errors, warnings = validate_auction_params(
            req.auction_type, req.params, req.starting_price, req.reserve_price
        )
        if errors:
            raise ValidationError(
                f"Invalid {req.auction_type.value} configuration: {errors[0]}",
                field="params",
                code="AUCTION_CONFIG_INVALID",
                context={"errors": errors, "warnings": warnings},
            )
        for warning in warnings:
            logger.debug(f"Auction config warning: {warning}")

        now = now_ms()
        auction = Auction(
            auction_id=uuid.uuid4().hex,
            auction_type=req.auction_type,
            title=req.title,
            starting_price=req.starting_price,
            reserve_price=req.reserve_price,
            min_increment=req.min_increment,
            start_time=req.start_time,
            end_time=req.end_time,
            status=AuctionStatus.SCHEDULED if req.activate else AuctionStatus.DRAFT,
            params=dict(req.params),
            created_by=req.created_by,
            idempotency_key=key,
            created_at=now,
            updated_at=now,
        )

        with self.store.transaction() as tx:
            if key is not None:
                prior = tx.find_auction_by_key(key)
                if prior is not None:
                    logger.debug(f"Idempotent replay of auction creation {key}")
                    return prior
            tx.insert_auction(auction)
            tx.append_event(
                EventType.AUCTION_CREATED,
                auction.auction_id,
                {
                    "auction": auction.to_dict(),
                    "created_by": auction.created_by,
                },
                created_at=now,
            )

        logger.info(
            f"Created {auction.auction_type.value} auction {auction.auction_id[:8]} "
            f"({auction.status.value})"
        )
        return auction

    def get_auction(self, auction_id: str) -> Auction:
        with self.store.transaction(write=False) as tx:
            return tx.require_auction(auction_id)

    def list_auctions(self, status: Optional[AuctionStatus] = None) -> List[Auction]:
        with self.store.transaction(write=False) as tx:
            return tx.list_auctions(status=status)

    def _apply_transition(
        self,
        tx: "StoreTransaction",
        auction: Auction,
        target: AuctionStatus,
        reason: Optional[str],
        now: int,
    ) -> Auction:
        if not can_transition(auction.status, target):
            raise AuctionStateError(
                f"Cannot move auction {auction.auction_id} from {auction.status.value} to {target.value}",
                code="INVALID_TRANSITION",
                context={
                    "auction_id": auction.auction_id,
                    "from": auction.status.value,
                    "to": target.value,
                },
            )
        updated = tx.update_auction(replace(auction, status=target), expected_version=auction.version)
        tx.append_event(
            EventType.STATUS_CHANGED,
            auction.auction_id,
            {
                "from": auction.status.value,
                "to": target.value,
                "reason": reason,
                "version": updated.version,
            },
            created_at=now,
        )
        return updated

    def transition_status(
        self,
        auction_id: str,
        new_status: AuctionStatus,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Auction:
        """
        Move an auction along the status table.

        Completion goes through settlement, which also writes the outcome.

        Raises:
            AuctionStateError: transition not allowed
            ConcurrencyConflict: `expected_version` is stale
        """
        target = AuctionStatus(new_status)
        if target == AuctionStatus.COMPLETED:
            raise AuctionStateError(
                "Auctions are completed by settlement",
                code="INVALID_TRANSITION",
                context={"auction_id": auction_id, "to": target.value},
            )

        now = now_ms()
        with self.store.transaction() as tx:
            auction = tx.require_auction(auction_id)
            if expected_version is not None and expected_version != auction.version:
                raise ConcurrencyConflict(
                    "auction",
                    auction_id,
                    expected_version=expected_version,
                    actual_version=auction.version,
                )
            updated = self._apply_transition(tx, auction, target, reason, now)

        logger.info(f"Auction {auction_id[:8]} {auction.status.value} -> {target.value}")
        return updated

    def activate_due(self, now: Optional[int] = None) -> List[Auction]:
        """Activate every SCHEDULED auction whose start time has passed."""
        at = now_ms() if now is None else now
        activated = []
        with self.store.transaction() as tx:
            for auction in tx.list_auctions(status=AuctionStatus.SCHEDULED, starts_before=at):
                activated.append(self._apply_transition(tx, auction, AuctionStatus.ACTIVE, "start_time reached", at))
        if activated:
            logger.info(f"Activated {len(activated)} auction(s)")
        return activated
