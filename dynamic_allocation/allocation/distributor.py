"""
Budget distribution.

Turns a ranking into per-node media budgets, impression caps and bids.

Order of operations for one pass:

1. pace the remaining budget over the remaining periods and apply the
   budget buffer (never above the remaining budget);
2. carve out the under-spend experiment slots;
3. split the rest into tier pools weighted ``2**(T - k)``;
4. weight nodes inside a tier by valuation times their lineage factor;
5. cap nodes at ``largest_budget_percent_allowed`` of the spendable budget,
   water-filling the excess onto uncapped nodes of the same tier;
6. drop the smallest node below ``min_budget`` and redistribute its tier,
   until every survivor clears the floor;
7. round to cents, settling the rounding residual a cent at a time from
   the largest top-tier node down, so the total never exceeds the exact
   (floored) total and no node falls below ``min_budget``.

Money that cannot be placed (every node capped, empty tiers) stays
unspent.
"""

from datetime import datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_EVEN
from typing import Optional, Sequence
import logging

from dynamic_allocation.config.schema import AllocationParameters
from dynamic_allocation.core.errors import AllocationInvariantError
from dynamic_allocation.core.timing import period_budget
from .experiments import ExperimentSlot
from .models import (
    CENTS,
    BudgetAllocationInputs,
    BudgetAllocationOutput,
    LineageIndex,
    PerNodeResult,
)
from .ranker import MIN_SCORING_COST_PER_MILLE, RankedNode, Ranking

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def spendable_budget(inputs: BudgetAllocationInputs, params: AllocationParameters) -> Decimal:
    """
    Media budget available to one pass.

    The remaining budget paced over the remaining campaign time, times the
    budget buffer, and never more than the remaining budget.
    """
    paced = period_budget(inputs.remaining_budget, inputs.remaining_time, inputs.period_duration)
    return max(min(paced * params.budget_buffer, inputs.remaining_budget), ZERO)


def tier_pools(ranking: Ranking, budget: Decimal) -> dict[int, Decimal]:
    """Split ``budget`` across the non-empty tiers with weight ``2**(T - k)`` for tier k."""
    T = ranking.number_of_tiers
    weights = {
        tier: Decimal(2 ** (T - tier))
        for tier, nodes in ranking.tiers().items()
        if nodes
    }
    total_weight = sum(weights.values(), ZERO)
    if total_weight == 0 or budget <= 0:
        return {tier: ZERO for tier in weights}
    return {tier: budget * w / total_weight for tier, w in weights.items()}


def water_fill(pool: Decimal, weights: dict[str, Decimal], cap: Optional[Decimal]) -> dict[str, Decimal]:
    """
    Split ``pool`` proportionally to ``weights`` with a per-node ``cap``.

    Nodes whose share exceeds the cap are pinned at the cap and the rest of
    the pool is re-split among the others until no share exceeds the cap.
    Zero-weight nodes get nothing. What cannot be placed is left over.
    """
    budgets = {node_id: ZERO for node_id in weights}
    active = {node_id: w for node_id, w in weights.items() if w > 0}
    remaining = pool

    while active and remaining > 0:
        total_weight = sum(active.values(), ZERO)
        shares = {node_id: remaining * w / total_weight for node_id, w in active.items()}
        if cap is None:
            budgets.update(shares)
            break

        over = sorted(node_id for node_id, share in shares.items() if share > cap)
        if not over:
            budgets.update(shares)
            break

        for node_id in over:
            budgets[node_id] = cap
            remaining -= cap
            del active[node_id]

    return budgets


def lineage_factor(node_id: str, lineage: LineageIndex, params: AllocationParameters) -> Decimal:
    if lineage.is_penalized(node_id):
        return params.lineage_penalty
    return params.lineage_penalty_neutral


def _fund_tier(
    tier: int,
    nodes: list[RankedNode],
    pool: Decimal,
    cap: Optional[Decimal],
    lineage: LineageIndex,
    params: AllocationParameters,
) -> dict[str, Decimal]:
    """Exact budgets for one tier after lineage weighting, capping and the floor."""
    survivors = list(nodes)
    budgets: dict[str, Decimal] = {}

    while survivors:
        weights = {
            r.allocation_id: r.valuation * lineage_factor(r.allocation_id, lineage, params)
            for r in survivors
        }
        budgets = water_fill(pool, weights, cap)

        below = [r for r in survivors if budgets[r.allocation_id] <= 0 or budgets[r.allocation_id] < params.min_budget]
        if not below:
            break

        # Smallest first; among equals the lower-ranked node goes first
        lowest = min(below, key=lambda r: (budgets[r.allocation_id], -r.rank))
        logger.debug(
            f"Tier {tier}: dropping {lowest.allocation_id} "
            f"(budget {budgets[lowest.allocation_id]:.4f} below minimum {params.min_budget})"
        )
        survivors.remove(lowest)
        budgets = {}

    placed = sum(budgets.values(), ZERO)
    logger.debug(
        f"Tier {tier}: pool {pool:.2f}, funded {len(budgets)}/{len(nodes)}, "
        f"placed {placed:.2f}, cap {'none' if cap is None else f'{cap:.2f}'}"
    )
    return budgets


def _round_budgets(exact: dict[str, Decimal], order: list[tuple[int, str]]) -> dict[str, Decimal]:
    """
    Round half-even to cents and settle the residual.

    The residual is taken against the floored exact total and settled one
    cent per node, starting with the largest budget in the best funded tier
    (ties by id). Cents are added only to nodes that rounded down and taken
    only from nodes that rounded up, so every node stays within a cent of
    its exact budget and never below its floored exact budget. ``order`` is
    the list of ``(tier, allocation_id)`` for the funded nodes.
    """
    rounded = {node_id: budget.quantize(CENTS, ROUND_HALF_EVEN) for node_id, budget in exact.items()}
    target = sum(exact.values(), ZERO).quantize(CENTS, ROUND_FLOOR)
    residual = target - sum(rounded.values(), ZERO)
    if residual == 0 or not order:
        return rounded

    ranked = [node_id for _, node_id in sorted(order, key=lambda entry: (entry[0], -rounded[entry[1]], entry[1]))]
    if residual > 0:
        adjustable = [node_id for node_id in ranked if rounded[node_id] < exact[node_id]]
        step = CENTS
    else:
        adjustable = [node_id for node_id in ranked if rounded[node_id] > exact[node_id]]
        step = -CENTS

    # The residual never exceeds one cent per adjustable node
    for node_id in adjustable[: int(abs(residual) / CENTS)]:
        rounded[node_id] += step
    return rounded


def _impression_cap(media_budget: Decimal, cost_per_mille: Decimal, params: AllocationParameters) -> int:
    cost = max(cost_per_mille, MIN_SCORING_COST_PER_MILLE)
    impressions = int((media_budget * 1000 / cost).quantize(Decimal(1), ROUND_HALF_EVEN))
    return max(impressions, params.minimum_impression_cap)


def _max_bid(candidate: RankedNode, inputs: BudgetAllocationInputs, params: AllocationParameters) -> Decimal:
    ceiling = max(candidate.valuation - inputs.per_mille_fees, ZERO)
    return min(candidate.cost_per_mille * params.export_budget_boost, ceiling).quantize(CENTS, ROUND_HALF_EVEN)


def _check_invariants(output: BudgetAllocationOutput, inputs: BudgetAllocationInputs) -> None:
    problems = []
    negative = [r.allocation_id for r in output.per_node_results if r.period_media_budget < 0 or r.period_total_budget < 0]
    if negative:
        problems.append(f"negative budget for {negative}")
    if output.total_media_budget > inputs.remaining_budget:
        problems.append(
            f"media budget {output.total_media_budget} exceeds remaining budget {inputs.remaining_budget}"
        )
    if not problems:
        return

    # Imported here; the wire module depends on this package's models
    from .serialization import inputs_to_wire, output_to_wire

    snapshot = {"inputs": inputs_to_wire(inputs), "output": output_to_wire(output)}
    message = "Allocation invariant violated: " + "; ".join(problems)
    logger.error(f"{message}. Input snapshot: {snapshot}")
    raise AllocationInvariantError(message, snapshot)


def distribute(
    ranking: Ranking,
    inputs: BudgetAllocationInputs,
    params: AllocationParameters,
    experiments: Sequence[ExperimentSlot] = (),
    modified_at: Optional[datetime] = None,
    lineage: Optional[LineageIndex] = None,
) -> BudgetAllocationOutput:
    """
    Compute per-node budgets for one pass.

    Parameters
    ----------
    ranking : Ranking
        Ranked, tiered nodes for the pass.
    inputs : BudgetAllocationInputs
        Campaign budget, timing, margin and fees for the pass.
    params : AllocationParameters
        Allocation knobs.
    experiments : Sequence[ExperimentSlot]
        Under-spend experiment slots, funded before the tiers.
    modified_at : datetime, optional
        Timestamp for the output; defaults to ``inputs.period_start``.
    lineage : LineageIndex, optional
        Lineage lookups; built from ``inputs.per_node_inputs`` when omitted.

    Returns
    -------
    BudgetAllocationOutput
        Funded nodes only. An empty ranking without experiments gives a
        zero-spend output.

    Raises
    ------
    AllocationInvariantError
        If the result contains a negative budget or exceeds the remaining
        budget.
    """
    modified_at = modified_at or inputs.period_start
    if lineage is None:
        lineage = LineageIndex(inputs.per_node_inputs)

    spendable = spendable_budget(inputs, params)

    ranked_ids = {r.allocation_id for r in ranking.ranked}
    funded_experiments = []
    experiment_total = ZERO
    for slot in experiments:
        if slot.allocation_id in ranked_ids:
            continue
        if experiment_total + slot.budget > spendable:
            logger.warning(f"Experiment slot for {slot.allocation_id} does not fit the pass budget, skipping")
            continue
        funded_experiments.append(slot)
        experiment_total += slot.budget

    normal = spendable - experiment_total
    pools = tier_pools(ranking, normal)
    cap = params.largest_budget_percent_allowed * spendable

    exact: dict[str, Decimal] = {}
    candidates: dict[str, RankedNode] = {}
    for tier, nodes in ranking.tiers().items():
        if not nodes:
            continue
        tier_cap = cap if tier < params.neutral_budget_capping_tier else None
        budgets = _fund_tier(tier, nodes, pools[tier], tier_cap, lineage, params)
        for r in nodes:
            if r.allocation_id in budgets:
                exact[r.allocation_id] = budgets[r.allocation_id]
                candidates[r.allocation_id] = r

    for slot in funded_experiments:
        exact[slot.allocation_id] = slot.budget
        candidates[slot.allocation_id] = slot.candidate

    order = [(candidates[node_id].tier, node_id) for node_id in exact]
    # Budgets that round to nothing are not delivered
    media = {node_id: budget for node_id, budget in _round_budgets(exact, order).items() if budget > 0}

    exported_ids = {
        node_id
        for node_id in sorted(media, key=lambda node_id: (-media[node_id], node_id))[: params.max_nodes_to_export]
    }

    results = []
    ordered_ids = [r.allocation_id for r in ranking.ranked if r.allocation_id in media]
    ordered_ids += [slot.allocation_id for slot in funded_experiments]
    for node_id in ordered_ids:
        candidate = candidates[node_id]
        budget = media[node_id]
        results.append(
            PerNodeResult(
                allocation_id=node_id,
                measure_set=candidate.node.measure_set,
                period_impression_cap=_impression_cap(budget, candidate.cost_per_mille, params),
                period_media_budget=budget,
                period_total_budget=(budget / inputs.margin).quantize(CENTS, ROUND_HALF_EVEN),
                max_bid=_max_bid(candidate, inputs, params) if node_id in exported_ids else ZERO.quantize(CENTS),
            )
        )

    output = BudgetAllocationOutput(
        last_modified_date=modified_at,
        anticipated_spend_for_day=sum((r.period_total_budget for r in results), ZERO).quantize(CENTS),
        per_node_results=tuple(results),
    )
    _check_invariants(output, inputs)

    logger.debug(
        f"Distributed {output.total_media_budget} of spendable {spendable:.2f} "
        f"across {len(results)} node(s) ({len(funded_experiments)} experiment(s))"
    )
    return output
