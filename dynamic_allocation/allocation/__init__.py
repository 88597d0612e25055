"""Allocation engine: ranking, distribution, experiments and lifecycle."""

from dynamic_allocation.core.errors import (
    AllocationError,
    InvalidParameters,
    PersistConflict,
    UpstreamUnavailable,
    AllocationInvariantError,
    CampaignNotFound,
)
from .models import (
    AllocationNode,
    PerNodeInput,
    HistoricalMeasureVolume,
    BudgetAllocationInputs,
    PerNodeResult,
    BudgetAllocationOutput,
    AllocationHistoryEntry,
    AllocationHistory,
    AllocationMode,
    AllocationRecord,
    LineageIndex,
    derive_allocation_id,
)
from .ranker import RankedNode, Ranking, rank
from .experiments import ExperimentSlot, select_experiments
from .distributor import distribute, spendable_budget
from .store import (
    AllocationStore,
    CampaignSource,
    CampaignSnapshot,
    NodeDelivery,
    InMemoryAllocationStore,
    InMemoryCampaignSource,
)
from .lifecycle import AllocationLifecycleController, CampaignLocks, PassResult, PassStatus
from .valuation import ValuationDefinition, get_valuations, value_nodes

__all__ = [
    "AllocationError",
    "InvalidParameters",
    "PersistConflict",
    "UpstreamUnavailable",
    "AllocationInvariantError",
    "CampaignNotFound",
    "AllocationNode",
    "PerNodeInput",
    "HistoricalMeasureVolume",
    "BudgetAllocationInputs",
    "PerNodeResult",
    "BudgetAllocationOutput",
    "AllocationHistoryEntry",
    "AllocationHistory",
    "AllocationMode",
    "AllocationRecord",
    "LineageIndex",
    "derive_allocation_id",
    "RankedNode",
    "Ranking",
    "rank",
    "ExperimentSlot",
    "select_experiments",
    "distribute",
    "spendable_budget",
    "AllocationStore",
    "CampaignSource",
    "CampaignSnapshot",
    "NodeDelivery",
    "InMemoryAllocationStore",
    "InMemoryCampaignSource",
    "AllocationLifecycleController",
    "CampaignLocks",
    "PassResult",
    "PassStatus",
    "ValuationDefinition",
    "get_valuations",
    "value_nodes",
]
