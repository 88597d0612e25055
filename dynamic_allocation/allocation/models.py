"""
Data model for allocation passes.

Inputs are assembled fresh for every pass, outputs are produced once per
pass, and both are kept in an append-only history. Everything here is
immutable once built.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Optional, Union
import logging
import uuid

import pandas as pd

from dynamic_allocation.core.errors import InvalidParameters
from dynamic_allocation.core.timing import ensure_utc
from dynamic_allocation.core.validation import InputValidator
from dynamic_allocation.measures.measure_set import MeasureSet
from dynamic_allocation.measures.sources import UNKNOWN_VOLUME

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Namespace for allocation ids derived from measure sets
ALLOCATION_ID_NAMESPACE = uuid.UUID("6f1c1d52-8a3e-4c57-9d0e-2b7a4f3c9e11")

DecimalLike = Union[Decimal, int, str]


def to_decimal(value: DecimalLike) -> Decimal:
    """Convert to Decimal without passing through binary floating point."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def derive_allocation_id(
    measure_set: MeasureSet,
    known_ids: Optional[Mapping[MeasureSet, str]] = None,
) -> str:
    """
    Stable allocation id for a measure set.

    An id already recorded for the measure set is kept; otherwise the id
    is the uuid5 of the canonical measure set string, in hex form.
    """
    if known_ids and measure_set in known_ids:
        return known_ids[measure_set]
    return uuid.uuid5(ALLOCATION_ID_NAMESPACE, str(measure_set)).hex


# =============================================================================
# Nodes
# =============================================================================

@dataclass(frozen=True)
class AllocationNode:
    """A distinct combination of targeting measures competing for budget."""

    allocation_id: str
    measure_set: MeasureSet
    valuation: Decimal

    estimated_cost_per_mille: Decimal | None = None

    # Cumulative delivery through the end of the previous period
    lifetime_impressions: int = 0
    lifetime_media_spend: Decimal = Decimal("0")

    # Parent allocation id; used only for penalty eligibility
    lineage: str | None = None
    lineage_neutral: bool = False
    export_count: int = 0

    def __post_init__(self):
        object.__setattr__(self, "measure_set", MeasureSet.parse(self.measure_set))
        object.__setattr__(self, "valuation", to_decimal(self.valuation))
        object.__setattr__(self, "lifetime_media_spend", to_decimal(self.lifetime_media_spend))
        if self.estimated_cost_per_mille is not None:
            object.__setattr__(self, "estimated_cost_per_mille", to_decimal(self.estimated_cost_per_mille))

    @classmethod
    def create(
        cls,
        measure_set: Union[MeasureSet, Iterable[int], str],
        valuation: DecimalLike,
        known_ids: Optional[Mapping[MeasureSet, str]] = None,
        **kwargs,
    ) -> "AllocationNode":
        """Create a node, deriving its allocation id from the measure set."""
        measure_set = MeasureSet.parse(measure_set)
        return cls(
            allocation_id=derive_allocation_id(measure_set, known_ids),
            measure_set=measure_set,
            valuation=valuation,
            **kwargs,
        )

    @property
    def is_lineage_exempt(self) -> bool:
        """True when the lineage penalty can never apply to this node."""
        return self.lineage is None or self.lineage_neutral or self.export_count > 0

    def cost_per_mille(self, default: Decimal) -> Decimal:
        """Explicit cost estimate when positive, else ``default``."""
        if self.estimated_cost_per_mille is not None and self.estimated_cost_per_mille > 0:
            return self.estimated_cost_per_mille
        return default


@dataclass(frozen=True)
class PerNodeInput(AllocationNode):
    """A node as seen by one pass, with the previous period's delivery."""

    period_impressions: int = 0
    period_media_spend: Decimal = Decimal("0")

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "period_media_spend", to_decimal(self.period_media_spend))

    @classmethod
    def from_node(
        cls,
        node: AllocationNode,
        period_impressions: int = 0,
        period_media_spend: DecimalLike = Decimal("0"),
        lifetime_impressions: Optional[int] = None,
        lifetime_media_spend: Optional[DecimalLike] = None,
    ) -> "PerNodeInput":
        return cls(
            allocation_id=node.allocation_id,
            measure_set=node.measure_set,
            valuation=node.valuation,
            estimated_cost_per_mille=node.estimated_cost_per_mille,
            lifetime_impressions=node.lifetime_impressions if lifetime_impressions is None else lifetime_impressions,
            lifetime_media_spend=(
                node.lifetime_media_spend if lifetime_media_spend is None else lifetime_media_spend
            ),
            lineage=node.lineage,
            lineage_neutral=node.lineage_neutral,
            export_count=node.export_count,
            period_impressions=period_impressions,
            period_media_spend=period_media_spend,
        )

    def cost_per_mille(self, default: Decimal) -> Decimal:
        """
        Resolve the node's eCPM.

        Explicit estimate if positive, else the observed eCPM of the
        previous period when it delivered, else ``default``.
        """
        if self.estimated_cost_per_mille is not None and self.estimated_cost_per_mille > 0:
            return self.estimated_cost_per_mille
        if self.period_impressions > 0 and self.period_media_spend > 0:
            return self.period_media_spend * 1000 / self.period_impressions
        return default


class LineageIndex:
    """
    Parent-id lookups over a set of nodes.

    Lineage forms a forest: building the index fails on a cycle, while a
    parent id that no longer resolves (a pruned ancestor) is tolerated.
    """

    def __init__(self, nodes: Iterable[AllocationNode]):
        self._nodes = {node.allocation_id: node for node in nodes}
        self._check_acyclic()

    def _check_acyclic(self) -> None:
        done = set()
        for start in self._nodes:
            path = []
            on_path = set()
            current = start
            while current is not None and current in self._nodes and current not in done:
                if current in on_path:
                    cycle = " -> ".join(path[path.index(current):] + [current])
                    raise InvalidParameters(f"Lineage cycle detected: {cycle}", [f"Lineage cycle: {cycle}"])
                path.append(current)
                on_path.add(current)
                current = self._nodes[current].lineage
            done.update(path)

    def __contains__(self, allocation_id: object) -> bool:
        return allocation_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, allocation_id: str) -> Optional[AllocationNode]:
        return self._nodes.get(allocation_id)

    def parent(self, allocation_id: str) -> Optional[AllocationNode]:
        node = self._nodes.get(allocation_id)
        if node is None or node.lineage is None:
            return None
        return self._nodes.get(node.lineage)

    def is_penalized(self, allocation_id: str) -> bool:
        """
        Whether the lineage penalty applies to a node.

        Nodes without a parent, flagged neutral, or already exported are
        exempt. So is a node valued above its (resolvable) parent.
        """
        node = self._nodes.get(allocation_id)
        if node is None or node.is_lineage_exempt:
            return False
        parent = self.parent(allocation_id)
        if parent is not None and node.valuation > parent.valuation:
            return False
        return True


# =============================================================================
# Pass inputs
# =============================================================================

@dataclass(frozen=True)
class HistoricalMeasureVolume:
    """Estimated delivery volume for one measure (-1 when unknown)."""
    measure_id: int
    volume: int = UNKNOWN_VOLUME


@dataclass(frozen=True)
class BudgetAllocationInputs:
    """Everything one allocation pass needs."""

    total_budget: Decimal
    remaining_budget: Decimal
    start_time: datetime
    end_time: datetime
    period_start: datetime
    period_duration: timedelta
    reallocation_start_time: datetime
    per_mille_fees: Decimal = Decimal("0")
    margin: Decimal = Decimal("1")
    historical_measure_volumes: tuple[HistoricalMeasureVolume, ...] = ()
    per_node_inputs: tuple[PerNodeInput, ...] = ()

    def __post_init__(self):
        for name in ("total_budget", "remaining_budget", "per_mille_fees", "margin"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        for name in ("start_time", "end_time", "period_start", "reallocation_start_time"):
            object.__setattr__(self, name, ensure_utc(getattr(self, name)))
        object.__setattr__(self, "historical_measure_volumes", tuple(self.historical_measure_volumes))
        object.__setattr__(self, "per_node_inputs", tuple(self.per_node_inputs))

    @property
    def remaining_time(self) -> timedelta:
        """Campaign time left from the start of this pass's period."""
        return self.end_time - self.period_start

    @property
    def period_end(self) -> datetime:
        return self.period_start + self.period_duration

    def volumes(self) -> dict[int, int]:
        return {v.measure_id: v.volume for v in self.historical_measure_volumes}

    def node(self, allocation_id: str) -> Optional[PerNodeInput]:
        for node in self.per_node_inputs:
            if node.allocation_id == allocation_id:
                return node
        return None

    def validate(self) -> None:
        """
        Check ranges and identities.

        Raises
        ------
        InvalidParameters
            If any check fails; the message lists every failure.
        """
        InputValidator().validate_all(self).raise_if_invalid("allocation inputs")


# =============================================================================
# Pass outputs
# =============================================================================

@dataclass(frozen=True)
class PerNodeResult:
    """Budget, impression cap and bid for one funded node."""
    allocation_id: str
    measure_set: MeasureSet
    period_impression_cap: int
    period_media_budget: Decimal
    period_total_budget: Decimal
    max_bid: Decimal = Decimal("0")

    @property
    def exported(self) -> bool:
        return self.max_bid > 0


@dataclass(frozen=True)
class BudgetAllocationOutput:
    """
    Result of one allocation pass.

    ``per_node_results`` only contains funded nodes; nodes that were
    dropped or fell below the minimum budget are absent.
    """

    last_modified_date: datetime
    anticipated_spend_for_day: Decimal
    per_node_results: tuple[PerNodeResult, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "last_modified_date", ensure_utc(self.last_modified_date))
        object.__setattr__(self, "anticipated_spend_for_day", to_decimal(self.anticipated_spend_for_day))
        object.__setattr__(self, "per_node_results", tuple(self.per_node_results))

    @classmethod
    def empty(cls, modified_at: datetime) -> "BudgetAllocationOutput":
        """Zero-spend output."""
        return cls(last_modified_date=modified_at, anticipated_spend_for_day=Decimal("0.00"))

    @property
    def total_media_budget(self) -> Decimal:
        return sum((r.period_media_budget for r in self.per_node_results), Decimal("0"))

    @property
    def total_budget(self) -> Decimal:
        return sum((r.period_total_budget for r in self.per_node_results), Decimal("0"))

    def result_for(self, allocation_id: str) -> Optional[PerNodeResult]:
        for result in self.per_node_results:
            if result.allocation_id == allocation_id:
                return result
        return None

    def to_dataframe(self) -> pd.DataFrame:
        """
        Per-node results as a DataFrame, largest media budget first.

        Returns:
            DataFrame with columns: allocation_id, measure_set,
            period_impression_cap, period_media_budget, period_total_budget,
            max_bid
        """
        columns = [
            "allocation_id",
            "measure_set",
            "period_impression_cap",
            "period_media_budget",
            "period_total_budget",
            "max_bid",
        ]
        rows = [
            {
                "allocation_id": r.allocation_id,
                "measure_set": str(r.measure_set),
                "period_impression_cap": r.period_impression_cap,
                "period_media_budget": r.period_media_budget,
                "period_total_budget": r.period_total_budget,
                "max_bid": r.max_bid,
            }
            for r in self.per_node_results
        ]
        df = pd.DataFrame(rows, columns=columns)
        if df.empty:
            return df
        return df.sort_values(
            ["period_media_budget", "allocation_id"], ascending=[False, True]
        ).reset_index(drop=True)


# =============================================================================
# History
# =============================================================================

@dataclass(frozen=True)
class AllocationHistoryEntry:
    """One completed pass."""
    inputs: BudgetAllocationInputs
    output: BudgetAllocationOutput

    @property
    def period_start(self) -> datetime:
        return self.inputs.period_start


@dataclass
class AllocationHistory:
    """
    Append-only sequence of completed passes, ordered by period start.

    Entries are never replaced or removed. Used to seed lifetime counters
    and historical volumes for the next pass.
    """

    entries: list[AllocationHistoryEntry] = field(default_factory=list)

    def __post_init__(self):
        entries, self.entries = list(self.entries), []
        for entry in entries:
            self.append(entry)

    def append(self, entry: AllocationHistoryEntry) -> None:
        """
        Append a pass.

        Raises
        ------
        ValueError
            If the entry's period start is not after the latest entry's.
        """
        if self.entries and entry.period_start <= self.entries[-1].period_start:
            raise ValueError(
                f"History entry for {entry.period_start.isoformat()} is not after "
                f"the latest entry ({self.entries[-1].period_start.isoformat()})"
            )
        self.entries.append(entry)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def range(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list[AllocationHistoryEntry]:
        """Entries with ``start <= period_start < end``; either bound may be omitted."""
        start = ensure_utc(start) if start is not None else None
        end = ensure_utc(end) if end is not None else None
        return [
            e for e in self.entries
            if (start is None or e.period_start >= start) and (end is None or e.period_start < end)
        ]

    def latest(self) -> Optional[AllocationHistoryEntry]:
        return self.entries[-1] if self.entries else None

    def lifetime_counters(self) -> dict[str, tuple[int, Decimal]]:
        """Lifetime (impressions, media spend) per allocation id, from the latest inputs."""
        latest = self.latest()
        if latest is None:
            return {}
        return {
            node.allocation_id: (node.lifetime_impressions, node.lifetime_media_spend)
            for node in latest.inputs.per_node_inputs
        }

    def historical_volumes(self) -> dict[int, int]:
        """Latest known volume per measure; unknown volumes never replace known ones."""
        volumes: dict[int, int] = {}
        for entry in self.entries:
            for item in entry.inputs.historical_measure_volumes:
                if item.volume != UNKNOWN_VOLUME or item.measure_id not in volumes:
                    volumes[item.measure_id] = item.volume
        return volumes

    def to_dataframe(self) -> pd.DataFrame:
        """One summary row per pass."""
        columns = [
            "period_start",
            "remaining_budget",
            "node_count",
            "funded_node_count",
            "total_media_budget",
            "anticipated_spend_for_day",
        ]
        rows = [
            {
                "period_start": e.period_start,
                "remaining_budget": e.inputs.remaining_budget,
                "node_count": len(e.inputs.per_node_inputs),
                "funded_node_count": len(e.output.per_node_results),
                "total_media_budget": e.output.total_media_budget,
                "anticipated_spend_for_day": e.output.anticipated_spend_for_day,
            }
            for e in self.entries
        ]
        return pd.DataFrame(rows, columns=columns)


# =============================================================================
# Persisted state
# =============================================================================

class AllocationMode(str, Enum):
    """Lifecycle phase of a campaign's allocation."""
    INITIAL = "InitialAllocation"
    STEADY_STATE = "SteadyState"


@dataclass(frozen=True)
class AllocationRecord:
    """
    Versioned allocation state for one campaign.

    Passed into and returned from each pass; the store compares
    ``version`` on write.
    """

    campaign_id: str
    version: int = 0
    mode: AllocationMode = AllocationMode.INITIAL
    reallocation_start_time: datetime | None = None  # next period boundary
    last_period_start: datetime | None = None
    completed: bool = False
    output: BudgetAllocationOutput | None = None

    def __post_init__(self):
        object.__setattr__(self, "mode", AllocationMode(self.mode))
        for name in ("reallocation_start_time", "last_period_start"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, ensure_utc(value))

    def advance(
        self,
        output: BudgetAllocationOutput,
        period_start: datetime,
        next_start: datetime,
        mode: AllocationMode,
        completed: bool,
    ) -> "AllocationRecord":
        """The record after a completed pass, one version later."""
        return replace(
            self,
            version=self.version + 1,
            mode=mode,
            reallocation_start_time=next_start,
            last_period_start=period_start,
            completed=completed,
            output=output,
        )
