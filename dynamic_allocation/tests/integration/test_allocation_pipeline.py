"""
Integration tests for the full allocation lifecycle.

Runs a three-day campaign pass by pass over the SQL store, feeding each
pass's budgets back as delivery for the next one.
"""
import pytest
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

from conftest import START
from dynamic_allocation.allocation.lifecycle import AllocationLifecycleController, PassStatus
from dynamic_allocation.allocation.models import AllocationMode, AllocationNode
from dynamic_allocation.allocation.store import CampaignSnapshot, InMemoryCampaignSource, NodeDelivery
from dynamic_allocation.config.schema import EngineSettings
from dynamic_allocation.database.connection import DatabaseConnection
from dynamic_allocation.database.repository import SqlAllocationStore
from dynamic_allocation.measures import MeasureCatalog, StaticMeasureSource


HOUR = timedelta(hours=1)
PASS_HOURS = [0, 6, 12, 18, 24, 48]


@pytest.fixture
def pipeline_snapshot():
    nodes = tuple(
        AllocationNode(
            allocation_id=f"n{i:02d}",
            measure_set=[i, 50 + i],
            valuation=Decimal(40 - 2 * i),
            estimated_cost_per_mille=Decimal("2"),
        )
        for i in range(1, 16)
    )
    return CampaignSnapshot(
        campaign_id="campaign-1",
        total_budget=Decimal("3000"),
        remaining_budget=Decimal("3000"),
        start_time=START,
        end_time=START + timedelta(days=3),
        nodes=nodes,
        margin=Decimal("0.85"),
        per_mille_fees=Decimal("0.10"),
    )


@pytest.fixture
def pipeline_controller(tmp_path, pipeline_snapshot):
    db = DatabaseConnection(f"sqlite:///{tmp_path / 'pipeline.db'}")
    db.create_tables()
    catalog = MeasureCatalog([StaticMeasureSource("volumes", {
        i: {"historical_volume": 1000 * i} for i in range(1, 16)
    })])
    settings = EngineSettings(parameters={"initialMaxNumberOfNodes": 12, "allocationNumberOfNodes": 10})
    controller = AllocationLifecycleController(
        store=SqlAllocationStore(db),
        campaigns=InMemoryCampaignSource({"campaign-1": pipeline_snapshot}),
        settings=settings,
        catalog=catalog,
    )
    yield controller
    db.dispose()


def run_campaign(controller, snapshot):
    """Run every pass, delivering each pass's full media budget before the next."""
    results = []
    delivered = {}
    for hours in PASS_HOURS:
        result = controller.run("campaign-1", now=START + hours * HOUR)
        results.append(result)

        delivery = {
            r.allocation_id: NodeDelivery(r.period_impression_cap, r.period_media_budget)
            for r in result.output.per_node_results
        }
        for node_id, d in delivery.items():
            delivered[node_id] = delivered.get(node_id, 0) + d.impressions
        snapshot = replace(
            snapshot,
            remaining_budget=snapshot.remaining_budget - result.output.total_media_budget,
            delivery=delivery,
        )
        controller.campaigns.add(snapshot)
    return results, delivered


class TestAllocationPipeline:
    """Tests for a campaign run from first pass to completion."""

    def test_pass_schedule(self, pipeline_controller, pipeline_snapshot):
        results, _ = run_campaign(pipeline_controller, pipeline_snapshot)

        assert [r.status for r in results] == [PassStatus.ALLOCATED] * len(PASS_HOURS)
        assert [r.record.version for r in results] == list(range(1, len(PASS_HOURS) + 1))
        assert [r.record.mode for r in results] == [AllocationMode.INITIAL] * 4 + [AllocationMode.STEADY_STATE] * 2
        assert [r.record.reallocation_start_time for r in results] == [
            START + hours * HOUR for hours in (6, 12, 18, 24, 48, 72)
        ]
        assert [r.record.completed for r in results] == [False] * 5 + [True]

    def test_campaign_ends(self, pipeline_controller, pipeline_snapshot):
        results, _ = run_campaign(pipeline_controller, pipeline_snapshot)

        after = pipeline_controller.run("campaign-1", now=START + 60 * HOUR)
        assert after.status == PassStatus.CAMPAIGN_ENDED
        assert after.output == results[-1].output

    def test_invariants_hold_every_pass(self, pipeline_controller, pipeline_snapshot):
        results, _ = run_campaign(pipeline_controller, pipeline_snapshot)
        spent = Decimal("0")

        for result in results:
            inputs, output = result.inputs, result.output
            params = pipeline_controller.settings.parameters_for("campaign-1")

            assert Decimal("0") < output.total_media_budget <= inputs.remaining_budget
            assert all(r.period_media_budget > 0 for r in output.per_node_results)
            assert output.anticipated_spend_for_day == sum(
                (r.period_total_budget for r in output.per_node_results), Decimal("0")
            )
            for r in output.per_node_results:
                node = inputs.node(r.allocation_id)
                assert node is not None
                assert r.max_bid <= node.valuation - inputs.per_mille_fees
                assert r.period_impression_cap >= params.minimum_impression_cap
            spent += output.total_media_budget

        assert spent <= pipeline_snapshot.total_budget

    def test_node_caps_and_experiments(self, pipeline_controller, pipeline_snapshot):
        results, _ = run_campaign(pipeline_controller, pipeline_snapshot)

        initial, steady = results[0], results[-1]
        assert len(initial.ranking) == 12
        assert len(steady.ranking) == 10

        for result in (initial, steady):
            assert result.experiments
            funded = {r.allocation_id for r in result.output.per_node_results}
            assert {slot.allocation_id for slot in result.experiments} <= funded

    def test_history_carries_delivery(self, pipeline_controller, pipeline_snapshot):
        results, delivered = run_campaign(pipeline_controller, pipeline_snapshot)

        history = pipeline_controller.store.history("campaign-1")
        assert len(history) == len(PASS_HOURS)
        assert list(history.to_dataframe()["period_start"]) == [START + hours * HOUR for hours in PASS_HOURS]

        # The last pass saw delivery from every earlier pass
        last_inputs = results[-1].inputs
        delivered_before_last = {
            node_id: total - (results[-1].output.result_for(node_id).period_impression_cap
                              if results[-1].output.result_for(node_id) else 0)
            for node_id, total in delivered.items()
        }
        for node_id, impressions in delivered_before_last.items():
            assert last_inputs.node(node_id).lifetime_impressions == impressions

    def test_catalog_volumes_used(self, pipeline_controller, pipeline_snapshot):
        result = pipeline_controller.run("campaign-1", now=START)
        volumes = result.inputs.volumes()

        assert volumes[3] == 3000
        assert volumes[53] == -1
