"""
Tests for allocation/ranker.py - scoring, ordering and tiering.
"""

import pytest
from decimal import Decimal

from dynamic_allocation.allocation.models import AllocationNode
from dynamic_allocation.allocation.ranker import rank, score_node, tier_sizes
from dynamic_allocation.config.schema import AllocationParameters


# =============================================================================
# Tier Size Tests
# =============================================================================

class TestTierSizes:
    """Tests for power-of-two tier portioning."""

    @pytest.mark.parametrize("count,tiers,expected", [
        (7, 3, [1, 2, 4]),
        (20, 3, [3, 6, 11]),
        (2, 3, [1, 1, 0]),
        (1, 3, [1, 0, 0]),
        (0, 3, [0, 0, 0]),
        (3, 1, [3]),
    ])
    def test_sizes(self, count, tiers, expected):
        assert tier_sizes(count, tiers, top_tier_cap=6) == expected

    def test_top_tier_overflow_moves_to_tier_two(self):
        assert tier_sizes(70, 3, top_tier_cap=6) == [6, 24, 40]

    def test_single_tier_overflow_is_untiered(self):
        sizes = tier_sizes(10, 1, top_tier_cap=6)
        assert sizes == [6]

    @pytest.mark.parametrize("count", [1, 5, 13, 64, 149, 150])
    def test_sizes_cover_every_node(self, count):
        sizes = tier_sizes(count, 3, top_tier_cap=200)
        assert sum(sizes) == count
        assert all(size >= 0 for size in sizes)


# =============================================================================
# Ranking Tests
# =============================================================================

class TestRank:
    """Tests for rank()."""

    @pytest.fixture
    def nodes(self):
        return [
            AllocationNode("cheap", [1], Decimal("10"), estimated_cost_per_mille=Decimal("1")),
            AllocationNode("pricey", [2], Decimal("30"), estimated_cost_per_mille=Decimal("6")),
            AllocationNode("valuable", [3], Decimal("40"), estimated_cost_per_mille=Decimal("2")),
        ]

    def test_orders_by_value_per_cost(self, nodes, params):
        ranking = rank(nodes, params)
        assert [r.allocation_id for r in ranking.ranked] == ["valuable", "cheap", "pricey"]
        assert [r.rank for r in ranking.ranked] == [1, 2, 3]
        assert ranking.ranked[0].score == Decimal("20")

    def test_ties_broken_by_allocation_id(self, params):
        nodes = [
            AllocationNode("b", [1], Decimal("10"), estimated_cost_per_mille=Decimal("1")),
            AllocationNode("a", [2], Decimal("20"), estimated_cost_per_mille=Decimal("2")),
            AllocationNode("c", [3], Decimal("10"), estimated_cost_per_mille=Decimal("1")),
        ]
        assert [r.allocation_id for r in rank(nodes, params)] == ["a", "b", "c"]

    def test_order_independent_of_input_order(self, nodes, params):
        forward = rank(nodes, params)
        backward = rank(list(reversed(nodes)), params)
        assert forward == backward

    def test_default_cost_used_without_estimate(self, params):
        node = AllocationNode("n", [1], Decimal("3"))
        score, cost = score_node(node, params)
        assert cost == Decimal("1.5")
        assert score == Decimal("2")

    def test_zero_cost_does_not_divide_by_zero(self, params):
        node = AllocationNode("n", [1], Decimal("3"), estimated_cost_per_mille=Decimal("0"))
        score, cost = score_node(node, params)
        assert cost == Decimal("1.5")

    def test_tiers_assigned(self, params):
        nodes = [AllocationNode(f"n{i:02d}", [i], Decimal(100 - i)) for i in range(7)]
        ranking = rank(nodes, params)
        assert ranking.tier_counts() == {1: 1, 2: 2, 3: 4}
        assert ranking.tier(1)[0].allocation_id == "n00"
        assert ranking.dropped == ()

    def test_top_tier_capped(self):
        params = AllocationParameters(allocation_top_tier=2)
        nodes = [AllocationNode(f"n{i:02d}", [i], Decimal(100 - i)) for i in range(21)]
        ranking = rank(nodes, params)
        assert ranking.tier_counts()[1] == 2

    def test_node_cap_drops_lowest(self, params):
        nodes = [AllocationNode(f"n{i:02d}", [i], Decimal(100 - i)) for i in range(20)]
        ranking = rank(nodes, params, node_cap=10)

        assert len(ranking) == 10
        assert [r.allocation_id for r in ranking.dropped] == [f"n{i:02d}" for i in range(10, 20)]
        # Dropped nodes keep the tier they would have had
        assert {r.tier for r in ranking.dropped} == {3}

    def test_default_node_cap(self):
        params = AllocationParameters(allocation_number_of_nodes=4)
        nodes = [AllocationNode(f"n{i:02d}", [i], Decimal(100 - i)) for i in range(6)]
        assert len(rank(nodes, params)) == 4

    def test_zero_valuation_ranked_last_and_dropped_by_cap(self, params):
        nodes = [
            AllocationNode("zero", [1], Decimal("0")),
            AllocationNode("a", [2], Decimal("5")),
            AllocationNode("b", [3], Decimal("4")),
        ]
        ranking = rank(nodes, params, node_cap=2)
        assert [r.allocation_id for r in ranking.ranked] == ["a", "b"]
        assert [r.allocation_id for r in ranking.dropped] == ["zero"]

    def test_single_tier_overflow_dropped(self):
        params = AllocationParameters(number_of_tiers_to_allocate_to=1, under_spend_experiment_tier=1)
        nodes = [AllocationNode(f"n{i:02d}", [i], Decimal(100 - i)) for i in range(10)]
        ranking = rank(nodes, params)

        assert len(ranking) == 6
        assert len(ranking.dropped) == 4
        assert {r.tier for r in ranking.dropped} == {2}

    def test_empty(self, params):
        ranking = rank([], params)
        assert ranking.is_empty
        assert ranking.tier_counts() == {1: 0, 2: 0, 3: 0}
