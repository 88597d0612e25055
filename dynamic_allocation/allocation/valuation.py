"""
Node valuations from per-measure valuations.

A campaign prices single measures and, optionally, a few explicit measure
combinations (overrides). Every other node in the valuation graph is
valued from those:

- measures sharing a grouping are alternatives and never combine, while
  measures in different groups combine;
- the persona is the best-valued measure from each group, and the persona
  node is worth ``max_persona_valuation``;
- a node is worth its closest override (or its best single measure) plus
  a joining bonus times the value of its remaining measures, with the bonus
  chosen so no node is pushed past the persona valuation.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Iterable, Mapping, Optional, Sequence
import logging

from dynamic_allocation.core.errors import InvalidParameters
from dynamic_allocation.measures.measure_set import MeasureSet
from .models import CENTS, AllocationNode, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValuationDefinition:
    """A campaign's pricing inputs for the valuation graph."""

    max_persona_valuation: Decimal
    explicit_valuations: Mapping[MeasureSet, Decimal]
    # Measure id -> grouping name; measures in one grouping are alternatives
    measure_groupings: Mapping[int, str] = field(default_factory=dict)
    # Every valued node must contain a measure from each pinned group
    pinned_measures: tuple[int, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "max_persona_valuation", to_decimal(self.max_persona_valuation))
        object.__setattr__(self, "explicit_valuations", {
            MeasureSet.parse(ms): to_decimal(v) for ms, v in self.explicit_valuations.items()
        })
        object.__setattr__(self, "measure_groupings", {int(m): g for m, g in self.measure_groupings.items()})
        object.__setattr__(self, "pinned_measures", tuple(int(m) for m in self.pinned_measures))


def group_measures(measures: Iterable[int], groupings: Mapping[int, str]) -> dict[str, MeasureSet]:
    """Grouping name -> its measures; an ungrouped measure is a group of its own."""
    groups: dict[str, list[int]] = {}
    for measure in measures:
        groups.setdefault(groupings.get(measure, str(measure)), []).append(measure)
    return {name: MeasureSet(members) for name, members in groups.items()}


def persona_measure_set(groups: Mapping[str, MeasureSet], measure_valuations: Mapping[int, Decimal]) -> MeasureSet:
    """The best-valued measure of each group, lowest id on ties."""
    persona = []
    for members in groups.values():
        best = max(measure_valuations[m] for m in members)
        persona.append(next(m for m in members if measure_valuations[m] == best))
    return MeasureSet(persona)


def closest_override(
    measure_set: MeasureSet,
    overrides: Mapping[MeasureSet, Decimal],
    measure_valuations: Mapping[int, Decimal],
) -> tuple[MeasureSet, Decimal]:
    """
    The override a node is valued from.

    The largest override contained in ``measure_set`` (the lowest valuation
    among equally large ones), else the node's best single measure.
    """
    relevant = [(ms, v) for ms, v in overrides.items() if ms.issubset(measure_set)]
    if relevant:
        size = max(len(ms) for ms, _ in relevant)
        return min(((ms, v) for ms, v in relevant if len(ms) == size), key=lambda item: (item[1], item[0].measures))

    best = max(measure_valuations[m] for m in measure_set)
    measure = next(m for m in measure_set if measure_valuations[m] == best)
    return MeasureSet([measure]), best


def _sum_outside(measure_set: MeasureSet, base: MeasureSet, measure_valuations: Mapping[int, Decimal]) -> Decimal:
    return sum((measure_valuations[m] for m in measure_set if m not in base), Decimal("0"))


def _bonus_for_limit(
    limit_set: MeasureSet,
    base: tuple[MeasureSet, Decimal],
    max_persona_valuation: Decimal,
    measure_valuations: Mapping[int, Decimal],
    default: Decimal,
) -> Decimal:
    """Bonus that values ``limit_set`` at exactly the persona valuation."""
    rest = _sum_outside(limit_set, base[0], measure_valuations)
    if rest <= 0:
        return default
    return (max_persona_valuation - base[1]) / rest


def joining_bonus(
    measure_set: MeasureSet,
    base: tuple[MeasureSet, Decimal],
    persona: MeasureSet,
    definition: ValuationDefinition,
    measure_valuations: Mapping[int, Decimal],
    default: Decimal,
) -> Decimal:
    """
    Joining bonus for one node.

    Nodes valued from a single measure use the campaign-wide default. A
    node valued from an override inside the persona gets the bonus that
    values the persona at ``max_persona_valuation``. Any other override
    node gets the default unless that would push its persona-level
    superset past the persona valuation.
    """
    if len(base[0]) == 1:
        return default

    if measure_set.issubset(persona):
        return _bonus_for_limit(persona, base, definition.max_persona_valuation, measure_valuations, default)

    # Fill in a persona measure for every group the node does not cover
    groupings = definition.measure_groupings
    persona_level = set(measure_set)
    for measure in persona:
        group = groupings.get(measure)
        if group is None or not any(groupings.get(m) == group for m in persona_level):
            persona_level.add(measure)
    persona_level = MeasureSet(persona_level)

    projected = base[1] + default * _sum_outside(persona_level, base[0], measure_valuations)
    if projected > definition.max_persona_valuation:
        return _bonus_for_limit(persona_level, base, definition.max_persona_valuation, measure_valuations, default)
    return default


def _pinned(measure_sets: Sequence[MeasureSet], definition: ValuationDefinition) -> list[MeasureSet]:
    if not definition.pinned_measures:
        return list(measure_sets)
    pinned_groups = group_measures(definition.pinned_measures, definition.measure_groupings).values()
    return [
        ms for ms in measure_sets
        if all(any(m in ms for m in group) for group in pinned_groups)
    ]


def get_valuations(definition: ValuationDefinition) -> dict[MeasureSet, Decimal]:
    """
    Value every node of a campaign's valuation graph.

    Parameters
    ----------
    definition : ValuationDefinition
        Per-measure valuations, overrides, groupings and pinned measures.

    Returns
    -------
    dict[MeasureSet, Decimal]
        Node measure set -> valuation rounded half-even to cents, smallest
        sets first.

    Raises
    ------
    InvalidParameters
        If the persona valuation is not positive or fewer than two single
        measures are valued.
    """
    errors = []
    if definition.max_persona_valuation <= 0:
        errors.append(f"maxPersonaValuation must be > 0, got {definition.max_persona_valuation}")
    measure_valuations = {
        ms.measures[0]: v for ms, v in definition.explicit_valuations.items() if len(ms) == 1
    }
    if len(measure_valuations) < 2:
        errors.append("at least two single-measure valuations are required")
    if errors:
        raise InvalidParameters("Invalid valuation definition: " + "; ".join(errors), errors)

    overrides = {ms: v for ms, v in definition.explicit_valuations.items() if len(ms) > 1}
    groups = group_measures(sorted(measure_valuations), definition.measure_groupings)
    persona = persona_measure_set(groups, measure_valuations)

    persona_total = sum((measure_valuations[m] for m in persona), Decimal("0"))
    top_measure = max(measure_valuations.values())
    if persona_total == top_measure:
        default_bonus = Decimal("1")
    else:
        default_bonus = (definition.max_persona_valuation - top_measure) / (persona_total - top_measure)

    valuations = {}
    for measure_set in _pinned(MeasureSet.set_product(groups.values()), definition):
        base = closest_override(measure_set, overrides, measure_valuations)
        bonus = joining_bonus(measure_set, base, persona, definition, measure_valuations, default_bonus)
        value = base[1] + bonus * _sum_outside(measure_set, base[0], measure_valuations)
        valuations[measure_set] = value.quantize(CENTS, ROUND_HALF_EVEN)

    logger.debug(
        f"Valued {len(valuations)} node(s) from {len(measure_valuations)} measure(s), "
        f"{len(overrides)} override(s); persona {persona}, joining bonus {default_bonus:.4f}"
    )
    return valuations


def value_nodes(
    definition: ValuationDefinition,
    nodes: Iterable[AllocationNode] = (),
) -> tuple[AllocationNode, ...]:
    """
    Campaign nodes with valuations taken from the valuation graph.

    Existing nodes keep their id, delivery and lineage and take the graph's
    valuation for their measure set. Graph nodes without an existing node
    are created with a derived id. Existing nodes outside the graph keep
    their own valuation.
    """
    existing = {node.measure_set: node for node in nodes}
    result = []
    for measure_set, valuation in get_valuations(definition).items():
        node: Optional[AllocationNode] = existing.pop(measure_set, None)
        if node is None:
            result.append(AllocationNode.create(measure_set, valuation))
        else:
            result.append(replace(node, valuation=valuation))
    if existing:
        logger.debug(f"{len(existing)} node(s) outside the valuation graph keep their own valuation")
    result.extend(existing.values())
    return tuple(result)
