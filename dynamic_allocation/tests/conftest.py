"""
Global pytest fixtures for allocation engine tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from dynamic_allocation.config.schema import AllocationParameters, EngineSettings
from dynamic_allocation.allocation.models import AllocationNode, BudgetAllocationInputs, PerNodeInput
from dynamic_allocation.allocation.store import (
    CampaignSnapshot,
    InMemoryAllocationStore,
    InMemoryCampaignSource,
)
from dynamic_allocation.allocation.lifecycle import AllocationLifecycleController


START = datetime(2024, 3, 1, tzinfo=timezone.utc)


# =============================================================================
# Parameters
# =============================================================================

@pytest.fixture
def start() -> datetime:
    """Campaign start used across tests."""
    return START


@pytest.fixture
def params() -> AllocationParameters:
    """Default allocation parameters."""
    return AllocationParameters()


@pytest.fixture
def single_tier_params() -> AllocationParameters:
    """One tier, no per-node cap, no experiments."""
    return AllocationParameters(
        number_of_tiers_to_allocate_to=1,
        under_spend_experiment_tier=1,
        under_spend_experiment_node_count=0,
        largest_budget_percent_allowed=Decimal("1.0"),
    )


# =============================================================================
# Nodes and Inputs
# =============================================================================

@pytest.fixture
def make_node():
    """Factory for PerNodeInput with readable ids."""
    def _make(allocation_id, measures, valuation, cost_per_mille=Decimal("1"), **kwargs):
        return PerNodeInput(
            allocation_id=allocation_id,
            measure_set=measures,
            valuation=Decimal(str(valuation)),
            estimated_cost_per_mille=None if cost_per_mille is None else Decimal(str(cost_per_mille)),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_inputs():
    """Factory for single-period BudgetAllocationInputs (remaining time equals one period)."""
    def _make(
        nodes,
        remaining_budget=Decimal("10000"),
        total_budget=None,
        margin=Decimal("1"),
        per_mille_fees=Decimal("0"),
        campaign_days=1,
        period_duration=timedelta(days=1),
        period_start=START,
        volumes=(),
    ):
        remaining_budget = Decimal(str(remaining_budget))
        return BudgetAllocationInputs(
            total_budget=remaining_budget if total_budget is None else Decimal(str(total_budget)),
            remaining_budget=remaining_budget,
            start_time=START,
            end_time=START + timedelta(days=campaign_days),
            period_start=period_start,
            period_duration=period_duration,
            reallocation_start_time=period_start,
            per_mille_fees=Decimal(str(per_mille_fees)),
            margin=Decimal(str(margin)),
            historical_measure_volumes=tuple(volumes),
            per_node_inputs=tuple(nodes),
        )
    return _make


# =============================================================================
# Campaigns and Controller
# =============================================================================

@pytest.fixture
def campaign_nodes() -> tuple:
    """Twelve nodes with spread valuations; n01 has lifetime delivery."""
    nodes = []
    for i in range(1, 13):
        nodes.append(AllocationNode(
            allocation_id=f"n{i:02d}",
            measure_set=[i, 100 + i],
            valuation=Decimal(str(60 - 4 * i)),
            estimated_cost_per_mille=Decimal("2"),
            lifetime_impressions=5000 if i == 1 else 0,
            lifetime_media_spend=Decimal("10") if i == 1 else Decimal("0"),
        ))
    return tuple(nodes)


@pytest.fixture
def snapshot(campaign_nodes) -> CampaignSnapshot:
    """Ten-day campaign with 10000 to spend."""
    return CampaignSnapshot(
        campaign_id="campaign-1",
        total_budget=Decimal("10000"),
        remaining_budget=Decimal("10000"),
        start_time=START,
        end_time=START + timedelta(days=10),
        nodes=campaign_nodes,
        margin=Decimal("0.85"),
    )


@pytest.fixture
def campaigns(snapshot) -> InMemoryCampaignSource:
    source = InMemoryCampaignSource()
    source.add(snapshot)
    return source


@pytest.fixture
def store() -> InMemoryAllocationStore:
    return InMemoryAllocationStore()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def controller(store, campaigns, settings) -> AllocationLifecycleController:
    """Controller over in-memory collaborators with a clock fixed at the campaign start."""
    return AllocationLifecycleController(
        store=store,
        campaigns=campaigns,
        settings=settings,
        clock=lambda: START,
    )
