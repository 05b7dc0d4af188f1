"""
Gavel Ledger Module.

Auction creation / lifecycle and idempotent bid admission.
"""

from gavel.core.ledger.auctions import AuctionService, validate_auction_params
from gavel.core.ledger.bid_ledger import BidLedger

__all__ = ["AuctionService", "BidLedger", "validate_auction_params"]
