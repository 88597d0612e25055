"""
Allocation node ranking.

Nodes are ordered by value per unit of cost and split into tiers of
decreasing value. Tier sizes follow a power-of-two portioning so every
tier holds roughly twice as many nodes as the tier above it.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Iterator, Optional, Sequence
import logging

from dynamic_allocation.config.schema import AllocationParameters
from .models import AllocationNode

logger = logging.getLogger(__name__)

# Lower bound on eCPM when scoring, so a zero cost never divides
MIN_SCORING_COST_PER_MILLE = Decimal("0.0001")


@dataclass(frozen=True)
class RankedNode:
    """A node with its position, tier and resolved cost."""
    node: AllocationNode
    tier: int
    rank: int  # 1-based position in the full ordering
    score: Decimal
    cost_per_mille: Decimal

    @property
    def allocation_id(self) -> str:
        return self.node.allocation_id

    @property
    def valuation(self) -> Decimal:
        return self.node.valuation


@dataclass(frozen=True)
class Ranking:
    """
    Result of ranking a pass's nodes.

    ``ranked`` holds the nodes within the node cap, best first.
    ``dropped`` holds the rest, with the tier they would have had; they are
    candidates for under-spend experiments.
    """

    ranked: tuple[RankedNode, ...] = ()
    dropped: tuple[RankedNode, ...] = ()
    number_of_tiers: int = 1

    def __iter__(self) -> Iterator[RankedNode]:
        return iter(self.ranked)

    def __len__(self) -> int:
        return len(self.ranked)

    @property
    def is_empty(self) -> bool:
        return not self.ranked

    def tier(self, tier: int) -> list[RankedNode]:
        return [r for r in self.ranked if r.tier == tier]

    def tiers(self) -> dict[int, list[RankedNode]]:
        """Ranked nodes grouped by tier (funded tiers only, empty ones included)."""
        grouped: dict[int, list[RankedNode]] = {k: [] for k in range(1, self.number_of_tiers + 1)}
        for r in self.ranked:
            if r.tier in grouped:
                grouped[r.tier].append(r)
        return grouped

    def tier_counts(self) -> dict[int, int]:
        return {tier: len(nodes) for tier, nodes in self.tiers().items()}


def score_node(node: AllocationNode, params: AllocationParameters) -> tuple[Decimal, Decimal]:
    """Return ``(score, cost_per_mille)`` for a node."""
    cost = node.cost_per_mille(params.default_estimated_cost_per_mille)
    return node.valuation / max(cost, MIN_SCORING_COST_PER_MILLE), cost


def tier_sizes(node_count: int, number_of_tiers: int, top_tier_cap: int) -> list[int]:
    """
    Number of nodes in each tier for ``node_count`` ordered nodes.

    Tier k (k < T) gets ``round_half_even(n * 2**(k-1) / (2**T - 1))``
    nodes, but at least one while nodes remain; tier T takes the rest.
    Tier 1 is capped at ``top_tier_cap`` and its overflow moves to tier 2.
    With a single tier the overflow is left untiered.

    Returns
    -------
    list[int]
        Sizes for tiers 1..T; the sum may be below ``node_count`` only in
        the single-tier overflow case.
    """
    if node_count <= 0:
        return [0] * number_of_tiers

    portions = Decimal(2 ** number_of_tiers - 1)
    sizes = []
    remaining = node_count
    for k in range(1, number_of_tiers):
        share = (Decimal(node_count) * Decimal(2 ** (k - 1)) / portions).quantize(Decimal(1), ROUND_HALF_EVEN)
        size = min(max(int(share), 1), remaining)
        sizes.append(size)
        remaining -= size
    sizes.append(remaining)

    if sizes[0] > top_tier_cap:
        overflow = sizes[0] - top_tier_cap
        sizes[0] = top_tier_cap
        if number_of_tiers > 1:
            sizes[1] += overflow

    return sizes


def rank(
    nodes: Sequence[AllocationNode],
    params: AllocationParameters,
    node_cap: Optional[int] = None,
) -> Ranking:
    """
    Rank nodes by value and assign tiers.

    Parameters
    ----------
    nodes : Sequence[AllocationNode]
        Candidate nodes for the pass.
    params : AllocationParameters
        Allocation knobs (tier count, top tier cap, default eCPM).
    node_cap : int, optional
        Maximum number of ranked nodes. Defaults to
        ``allocation_number_of_nodes``; the lifecycle controller passes
        ``initial_max_number_of_nodes`` during the initial phase.

    Returns
    -------
    Ranking
        Ranked nodes (within the cap) and dropped nodes. An empty node
        list gives an empty ranking.
    """
    number_of_tiers = params.number_of_tiers_to_allocate_to
    if node_cap is None:
        node_cap = params.allocation_number_of_nodes

    scored = []
    for node in nodes:
        score, cost = score_node(node, params)
        scored.append((score, cost, node))
    scored.sort(key=lambda item: (-item[0], item[2].allocation_id))

    sizes = tier_sizes(len(scored), number_of_tiers, params.allocation_top_tier)
    tier_of_position = []
    for tier, size in enumerate(sizes, start=1):
        tier_of_position.extend([tier] * size)
    # Single-tier overflow sits below every funded tier
    tier_of_position.extend([number_of_tiers + 1] * (len(scored) - len(tier_of_position)))

    ordered = [
        RankedNode(node=node, tier=tier_of_position[i], rank=i + 1, score=score, cost_per_mille=cost)
        for i, (score, cost, node) in enumerate(scored)
    ]

    in_cap = ordered[:node_cap]
    ranked = tuple(r for r in in_cap if r.tier <= number_of_tiers)
    dropped = tuple(r for r in in_cap if r.tier > number_of_tiers) + tuple(ordered[node_cap:])

    ranking = Ranking(ranked=ranked, dropped=dropped, number_of_tiers=number_of_tiers)
    logger.debug(
        f"Ranked {len(ranked)} of {len(ordered)} node(s) into {number_of_tiers} tier(s) "
        f"(cap {node_cap}, tier sizes {ranking.tier_counts()}, dropped {len(dropped)})"
    )
    return ranking
