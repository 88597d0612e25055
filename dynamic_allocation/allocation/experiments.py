"""
Under-spend experimentation.

A few nodes that the node cap left out of the pass are funded with the
minimum budget anyway, so the engine keeps learning about low-tier
nodes it has barely delivered on.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_EVEN
from typing import Mapping, Optional, Sequence
import logging

from dynamic_allocation.config.schema import AllocationParameters
from dynamic_allocation.measures.catalog import estimated_volume
from dynamic_allocation.measures.sources import UNKNOWN_VOLUME
from .models import CENTS
from .ranker import RankedNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExperimentSlot:
    """A node funded for exploration, and its fixed media budget."""
    candidate: RankedNode
    budget: Decimal
    estimated_volume: int = UNKNOWN_VOLUME

    @property
    def allocation_id(self) -> str:
        return self.candidate.allocation_id


def experiment_sort_key(candidate: RankedNode, volumes: Mapping[int, int]) -> tuple:
    """Least-delivered first, then larger estimated volume, unknown volume last, then id."""
    volume = estimated_volume(candidate.node.measure_set, volumes)
    return (
        candidate.node.lifetime_impressions,
        0 if volume != UNKNOWN_VOLUME else 1,
        -volume,
        candidate.allocation_id,
    )


def select_experiments(
    candidates: Sequence[RankedNode],
    params: AllocationParameters,
    slot_budget: Decimal,
    historical_volumes: Optional[Mapping[int, int]] = None,
) -> tuple[ExperimentSlot, ...]:
    """
    Choose nodes for under-spend experiments.

    Parameters
    ----------
    candidates : Sequence[RankedNode]
        Nodes excluded from the ranked set (``Ranking.dropped``).
    params : AllocationParameters
        Supplies the experiment tier, the slot count and ``min_budget``.
    slot_budget : Decimal
        Budget available for experiments (the pass's spendable budget).
    historical_volumes : Mapping[int, int], optional
        Measure id to volume estimate (-1 unknown), used as a tie-break.

    Returns
    -------
    tuple[ExperimentSlot, ...]
        Selected slots in selection order, each funded with ``min_budget``.
    """
    budget_per_slot = params.min_budget.quantize(CENTS, ROUND_HALF_EVEN)
    if budget_per_slot <= 0 or params.under_spend_experiment_node_count <= 0:
        return ()

    affordable = int((slot_budget / budget_per_slot).to_integral_value(ROUND_FLOOR)) if slot_budget > 0 else 0
    limit = min(params.under_spend_experiment_node_count, affordable)
    if limit <= 0:
        return ()

    volumes = historical_volumes or {}
    eligible = [
        c for c in candidates
        if c.tier == params.under_spend_experiment_tier and c.valuation > 0
    ]
    eligible.sort(key=lambda c: experiment_sort_key(c, volumes))

    slots = tuple(
        ExperimentSlot(
            candidate=c,
            budget=budget_per_slot,
            estimated_volume=estimated_volume(c.node.measure_set, volumes),
        )
        for c in eligible[:limit]
    )
    if slots:
        logger.debug(
            f"Selected {len(slots)} experiment node(s) from {len(eligible)} eligible "
            f"tier-{params.under_spend_experiment_tier} candidate(s)"
        )
    return slots
