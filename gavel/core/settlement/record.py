"""
Settlement record - the immutable outcome of settling an auction.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from gavel.core.market.mechanisms import Determination
from gavel.core.market.types import ResultType, now_ms


@dataclass(frozen=True)
class SettlementRecord:
    auction_id: str
    result_type: ResultType
    determination_method: str
    winner_id: Optional[str] = None
    winning_bid_id: Optional[str] = None
    final_price: Optional[int] = None
    clearing_price: Optional[int] = None
    total_value: Optional[int] = None
    awards: List[Dict[str, Any]] = field(default_factory=list)
    charges: List[Dict[str, Any]] = field(default_factory=list)
    forced: bool = False
    settled_at: int = field(default_factory=now_ms)

    @classmethod
    def from_determination(
        cls,
        auction_id: str,
        determination: Determination,
        forced: bool,
        settled_at: int,
    ) -> "SettlementRecord":
        winner = determination.winner
        return cls(
            auction_id=auction_id,
            result_type=determination.result_type,
            determination_method=determination.method,
            winner_id=winner.bidder_id if winner else None,
            winning_bid_id=winner.bid_id if winner else None,
            final_price=determination.final_price,
            clearing_price=determination.clearing_price,
            total_value=determination.total_value,
            awards=[a.to_dict() for a in determination.awards],
            charges=[c.to_dict() for c in determination.charges],
            forced=forced,
            settled_at=settled_at,
        )

    @property
    def awarded_bid_ids(self) -> List[str]:
        return [a["bid_id"] for a in self.awards]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "result_type": self.result_type.value,
            "determination_method": self.determination_method,
            "winner_id": self.winner_id,
            "winning_bid_id": self.winning_bid_id,
            "final_price": self.final_price,
            "clearing_price": self.clearing_price,
            "total_value": self.total_value,
            "awards": list(self.awards),
            "charges": list(self.charges),
            "forced": self.forced,
            "settled_at": self.settled_at,
        }
