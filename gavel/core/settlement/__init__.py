"""
Gavel Settlement Module.

Idempotent settlement of ended auctions and the settlement record.
"""

from gavel.core.settlement.record import SettlementRecord
from gavel.core.settlement.resolver import SettlementResolver

__all__ = ["SettlementRecord", "SettlementResolver"]
