"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Auctions and bids
- Rule catalog, configurations and violations
- Outbox events, settlements and relay leases
"""

from gavel.core.storage.sqlite_adapter import SQLiteAdapter
from gavel.core.storage.store import AuctionStore, StoreTransaction

__all__ = ["SQLiteAdapter", "AuctionStore", "StoreTransaction"]
