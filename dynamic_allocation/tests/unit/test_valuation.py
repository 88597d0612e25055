"""
Tests for allocation/valuation.py - node valuations from measure valuations.
"""

import pytest
from decimal import Decimal

from dynamic_allocation.allocation.models import AllocationNode, derive_allocation_id
from dynamic_allocation.allocation.valuation import (
    ValuationDefinition,
    closest_override,
    get_valuations,
    group_measures,
    persona_measure_set,
    value_nodes,
)
from dynamic_allocation.core.errors import InvalidParameters
from dynamic_allocation.measures.measure_set import MeasureSet


def ms(*measures):
    return MeasureSet(measures)


@pytest.fixture
def simple_definition():
    """Three ungrouped measures; the persona {1, 2, 3} is worth 15."""
    return ValuationDefinition(
        max_persona_valuation=Decimal("15"),
        explicit_valuations={ms(1): 10, ms(2): 6, ms(3): 4},
    )


@pytest.fixture
def grouped_definition():
    """Measures 2 and 3 are alternatives; {1, 3} carries an override."""
    return ValuationDefinition(
        max_persona_valuation=Decimal("14"),
        explicit_valuations={ms(1): 10, ms(2): 6, ms(3): 4, ms(4): 2, ms(1, 3): "13.5"},
        measure_groupings={2: "age", 3: "age"},
    )


# =============================================================================
# Graph Building
# =============================================================================

class TestGraph:
    def test_group_measures(self):
        groups = group_measures([1, 2, 3, 4], {2: "age", 3: "age"})
        assert groups == {"1": ms(1), "age": ms(2, 3), "4": ms(4)}

    def test_persona_takes_best_of_each_group(self):
        groups = {"1": ms(1), "age": ms(2, 3)}
        assert persona_measure_set(groups, {1: Decimal(1), 2: Decimal(5), 3: Decimal(7)}) == ms(1, 3)

    def test_persona_tie_takes_lowest_id(self):
        groups = {"age": ms(2, 3)}
        assert persona_measure_set(groups, {2: Decimal(5), 3: Decimal(5)}) == ms(2)

    def test_closest_override_prefers_largest_then_cheapest(self):
        overrides = {ms(1, 2): Decimal("9"), ms(1, 3): Decimal("8"), ms(1, 2, 3): Decimal("12")}
        values = {1: Decimal(5), 2: Decimal(3), 3: Decimal(2), 4: Decimal(1)}

        assert closest_override(ms(1, 2, 3, 4), overrides, values) == (ms(1, 2, 3), Decimal("12"))
        assert closest_override(ms(1, 2, 4), overrides, values) == (ms(1, 2), Decimal("9"))
        assert closest_override(ms(2, 4), overrides, values) == (ms(2), Decimal(3))

    def test_closest_override_tie_takes_lower_valuation(self):
        overrides = {ms(1, 2): Decimal("9"), ms(1, 3): Decimal("8")}
        values = {1: Decimal(5), 2: Decimal(3), 3: Decimal(2)}
        assert closest_override(ms(1, 2, 3), overrides, values) == (ms(1, 3), Decimal("8"))


# =============================================================================
# Valuations
# =============================================================================

class TestGetValuations:
    def test_ungrouped_measures(self, simple_definition):
        valuations = get_valuations(simple_definition)

        # Joining bonus (15 - 10) / (20 - 10)
        assert valuations == {
            ms(1): Decimal("10.00"),
            ms(2): Decimal("6.00"),
            ms(3): Decimal("4.00"),
            ms(1, 2): Decimal("13.00"),
            ms(1, 3): Decimal("12.00"),
            ms(2, 3): Decimal("8.00"),
            ms(1, 2, 3): Decimal("15.00"),
        }
        assert list(valuations)[0] == ms(1)

    def test_override_inside_persona_keeps_persona_valuation(self):
        definition = ValuationDefinition(
            max_persona_valuation=Decimal("15"),
            explicit_valuations={ms(1): 10, ms(2): 6, ms(3): 4, ms(1, 2): 14},
        )
        valuations = get_valuations(definition)

        assert valuations[ms(1, 2)] == Decimal("14.00")
        assert valuations[ms(1, 2, 3)] == Decimal("15.00")
        assert valuations[ms(1, 3)] == Decimal("12.00")

    def test_grouped_measures_never_combine(self, grouped_definition):
        valuations = get_valuations(grouped_definition)

        assert len(valuations) == 11
        assert ms(2, 3) not in valuations
        assert valuations[ms(1, 2, 4)] == Decimal("14.00")
        assert valuations[ms(3, 4)] == Decimal("5.00")

    def test_override_outside_persona_limited_by_persona_valuation(self, grouped_definition):
        valuations = get_valuations(grouped_definition)

        # The default bonus would value {1, 3, 4} at 14.50
        assert valuations[ms(1, 3)] == Decimal("13.50")
        assert valuations[ms(1, 3, 4)] == Decimal("14.00")
        assert max(valuations.values()) == grouped_definition.max_persona_valuation

    def test_pinned_measures(self, grouped_definition):
        definition = ValuationDefinition(
            max_persona_valuation=grouped_definition.max_persona_valuation,
            explicit_valuations=grouped_definition.explicit_valuations,
            measure_groupings=grouped_definition.measure_groupings,
            pinned_measures=(4,),
        )
        valuations = get_valuations(definition)

        assert len(valuations) == 6
        assert all(4 in measure_set for measure_set in valuations)

    def test_pinned_group_accepts_any_member(self, grouped_definition):
        definition = ValuationDefinition(
            max_persona_valuation=grouped_definition.max_persona_valuation,
            explicit_valuations=grouped_definition.explicit_valuations,
            measure_groupings=grouped_definition.measure_groupings,
            pinned_measures=(2, 3),
        )
        valuations = get_valuations(definition)

        assert ms(2) in valuations and ms(3, 4) in valuations
        assert ms(1, 4) not in valuations

    def test_single_group_uses_unit_bonus(self):
        definition = ValuationDefinition(
            max_persona_valuation=Decimal("20"),
            explicit_valuations={ms(1): 10, ms(2): 6},
            measure_groupings={1: "geo", 2: "geo"},
        )
        assert get_valuations(definition) == {ms(1): Decimal("10.00"), ms(2): Decimal("6.00")}

    def test_rounded_half_even_to_cents(self):
        definition = ValuationDefinition(
            max_persona_valuation=Decimal("10"),
            explicit_valuations={ms(1): 9, ms(2): 3},
        )
        # Bonus 1/3 values {1, 2} at exactly the persona valuation
        assert get_valuations(definition)[ms(1, 2)] == Decimal("10.00")

    @pytest.mark.parametrize("persona, explicit", [
        ("0", {ms(1): 1, ms(2): 2}),
        ("-5", {ms(1): 1, ms(2): 2}),
        ("10", {ms(1): 1}),
        ("10", {ms(1): 1, ms(1, 2): 5}),
    ])
    def test_invalid_definition(self, persona, explicit):
        definition = ValuationDefinition(max_persona_valuation=Decimal(persona), explicit_valuations=explicit)
        with pytest.raises(InvalidParameters) as exc_info:
            get_valuations(definition)
        assert exc_info.value.errors

    def test_definition_normalizes_inputs(self):
        definition = ValuationDefinition(
            max_persona_valuation="12",
            explicit_valuations={"2, 1": "7.5"},
            measure_groupings={"3": "geo"},
            pinned_measures=["4"],
        )
        assert definition.max_persona_valuation == Decimal("12")
        assert definition.explicit_valuations == {ms(1, 2): Decimal("7.5")}
        assert definition.measure_groupings == {3: "geo"}
        assert definition.pinned_measures == (4,)


# =============================================================================
# Campaign Nodes
# =============================================================================

class TestValueNodes:
    def test_new_nodes_get_derived_ids(self, simple_definition):
        nodes = value_nodes(simple_definition)

        assert len(nodes) == 7
        first = nodes[0]
        assert first.measure_set == ms(1)
        assert first.allocation_id == derive_allocation_id(ms(1))
        assert first.valuation == Decimal("10.00")

    def test_existing_nodes_keep_identity_and_delivery(self, simple_definition):
        existing = AllocationNode(
            allocation_id="legacy",
            measure_set=ms(1, 2),
            valuation=Decimal("1"),
            lifetime_impressions=500,
            lineage="parent",
        )
        outside = AllocationNode(allocation_id="other", measure_set=ms(9), valuation=Decimal("3"))

        nodes = {n.allocation_id: n for n in value_nodes(simple_definition, [existing, outside])}

        assert len(nodes) == 8
        assert nodes["legacy"].valuation == Decimal("13.00")
        assert nodes["legacy"].lifetime_impressions == 500
        assert nodes["legacy"].lineage == "parent"
        assert nodes["other"].valuation == Decimal("3")
