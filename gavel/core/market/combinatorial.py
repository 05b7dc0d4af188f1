"""
Combinatorial package valuation and winner determination.

A combinatorial bid names a package of item ids. Its value depends on the
auction's `package_valuation_method`:

- additive:        amount * quantity
- multiplicative:  additive value compounded by `synergy_bps` basis points
                   for every item beyond the first
- custom:          a valuation function registered under `custom_valuation`

Winner determination picks a set of item-disjoint packages. The default
policy is greedy by value; `winner_determination = "exact"` maximizes total
accepted value as a maximum-weight clique over the compatibility graph
(two bids are adjacent when their packages do not overlap). Exact winner
determination is NP-hard, so the exact policy falls back to greedy above
`max_exact_bids` candidates.
"""

from typing import Callable, Dict, List, Protocol, Tuple

import networkx as nx

from gavel.core.errors import ValidationError
from gavel.core.market.types import Auction, Bid
from gavel.utils.logger import get_logger

logger = get_logger("market.combinatorial")


# =============================================================================
# Constants
# =============================================================================

VALUATION_METHODS = ("additive", "multiplicative", "custom")

BPS_DENOMINATOR = 10_000

DEFAULT_MAX_PACKAGE_SIZE = 10

# Exact search above this many candidate bids is refused
DEFAULT_MAX_EXACT_BIDS = 64

Allocation = List[Tuple[Bid, int]]


# =============================================================================
# Valuation
# =============================================================================

_CUSTOM_VALUATIONS: Dict[str, Callable[[Auction, Bid], int]] = {}


def register_valuation(name: str, fn: Callable[[Auction, Bid], int]) -> None:
    """Register a custom package valuation function."""
    _CUSTOM_VALUATIONS[name] = fn


def package_value(auction: Auction, bid: Bid) -> int:
    """
    Value of a package bid under the auction's valuation method.

    Args:
        auction: Auction carrying the valuation parameters
        bid: Package bid

    Returns:
        Integer value in minor units
    """
    method = auction.param("package_valuation_method", "additive")
    base = bid.amount * bid.quantity

    if method == "additive":
        return base

    if method == "multiplicative":
        extra_items = max(0, len(bid.package or []) - 1)
        synergy = int(auction.param("synergy_bps", 0))
        numerator = (BPS_DENOMINATOR + synergy) ** extra_items
        return base * numerator // (BPS_DENOMINATOR ** extra_items)

    if method == "custom":
        name = auction.param("custom_valuation")
        fn = _CUSTOM_VALUATIONS.get(name)
        if fn is None:
            raise ValidationError(
                f"No custom valuation registered under {name!r}",
                field="params.custom_valuation",
                context={"auction_id": auction.auction_id},
            )
        return int(fn(auction, bid))

    raise ValidationError(
        f"package_valuation_method must be one of: {', '.join(VALUATION_METHODS)}",
        field="params.package_valuation_method",
        context={"auction_id": auction.auction_id, "actual": method},
    )


def _disjoint(a: Bid, b: Bid) -> bool:
    return not set(a.package or ()) & set(b.package or ())


# =============================================================================
# Winner determination policies
# =============================================================================


class WinnerDeterminationPolicy(Protocol):
    """Selects an item-disjoint set of (bid, value) entries."""

    def allocate(self, entries: Allocation) -> Allocation:
        ...


class GreedyPolicy:
    """Highest value first, earliest bid breaks ties, skip overlapping packages."""

    def allocate(self, entries: Allocation) -> Allocation:
        chosen: Allocation = []
        taken: set = set()
        for bid, value in sorted(entries, key=lambda e: (-e[1], e[0].order_key)):
            items = set(bid.package or ())
            if items & taken:
                continue
            chosen.append((bid, value))
            taken |= items
        return chosen


class ExactPolicy:
    """
    Maximize total accepted value.

    Builds the compatibility graph (edge = disjoint packages) and takes its
    maximum-weight clique. Ties between equally valued allocations resolve
    to whatever networkx returns first; results are re-sorted for output.
    """

    def __init__(self, max_bids: int = DEFAULT_MAX_EXACT_BIDS):
        self.max_bids = max_bids
        self._fallback = GreedyPolicy()

    def allocate(self, entries: Allocation) -> Allocation:
        if len(entries) > self.max_bids:
            logger.warning(
                f"Exact winner determination skipped for {len(entries)} bids "
                f"(limit {self.max_bids}), using greedy"
            )
            return self._fallback.allocate(entries)

        graph = nx.Graph()
        for idx, (_, value) in enumerate(entries):
            graph.add_node(idx, weight=value)
        for i in range(len(entries)):
            for j in range(i + 1, len(entries)):
                if _disjoint(entries[i][0], entries[j][0]):
                    graph.add_edge(i, j)

        clique, total = nx.max_weight_clique(graph, weight="weight")
        logger.debug(f"Exact allocation picked {len(clique)} packages, value={total}")
        chosen = [entries[i] for i in clique]
        return sorted(chosen, key=lambda e: (-e[1], e[0].order_key))


_POLICIES: Dict[str, WinnerDeterminationPolicy] = {
    "greedy": GreedyPolicy(),
    "exact": ExactPolicy(),
}


def register_policy(name: str, policy: WinnerDeterminationPolicy) -> None:
    """Register a winner determination policy by name."""
    _POLICIES[name] = policy


def get_policy(name: str) -> WinnerDeterminationPolicy:
    policy = _POLICIES.get(name)
    if policy is None:
        raise ValidationError(
            f"Unknown winner determination policy {name!r}",
            field="params.winner_determination",
        )
    return policy


def allocate(auction: Auction, bids: List[Bid]) -> Tuple[Allocation, int]:
    """
    Run the auction's winner determination policy over package bids.

    Returns:
        (allocation, total_value)
    """
    entries = [(bid, package_value(auction, bid)) for bid in bids]
    policy = get_policy(auction.param("winner_determination", "greedy"))
    chosen = policy.allocate(entries)
    return chosen, sum(value for _, value in chosen)
