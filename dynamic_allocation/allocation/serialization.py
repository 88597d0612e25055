"""
JSON wire format for allocation inputs, outputs and records.

Field names are camelCase. Decimals are written as strings and accepted
as strings or numbers. Timestamps are ISO-8601 UTC with microseconds and
a ``Z`` suffix; durations are ``days.HH:MM:SS``.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Annotated, Any, Optional
import json

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, ValidationError
from pydantic.alias_generators import to_camel

from dynamic_allocation.core.errors import InvalidParameters
from dynamic_allocation.core.timing import format_duration, format_timestamp, parse_duration, parse_timestamp
from dynamic_allocation.measures.measure_set import MeasureSet
from dynamic_allocation.measures.sources import UNKNOWN_VOLUME
from .models import (
    AllocationMode,
    AllocationNode,
    AllocationRecord,
    BudgetAllocationInputs,
    BudgetAllocationOutput,
    HistoricalMeasureVolume,
    PerNodeInput,
    PerNodeResult,
    derive_allocation_id,
)
from .store import CampaignSnapshot, NodeDelivery
from .valuation import ValuationDefinition, value_nodes

Timestamp = Annotated[
    datetime,
    BeforeValidator(parse_timestamp),
    PlainSerializer(format_timestamp, return_type=str, when_used="json"),
]

Duration = Annotated[
    timedelta,
    BeforeValidator(parse_duration),
    PlainSerializer(format_duration, return_type=str, when_used="json"),
]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# =============================================================================
# Inputs
# =============================================================================

class HistoricalMeasureVolumeModel(WireModel):
    measure_id: int
    volume: int = UNKNOWN_VOLUME


class PerNodeInputModel(WireModel):
    """A node on the wire; the allocation id is derived from the measure set when omitted."""
    allocation_id: Optional[str] = None
    measure_set: list[int] = Field(..., min_length=1)
    valuation: Decimal
    estimated_cost_per_mille: Optional[Decimal] = None
    period_impressions: int = 0
    period_media_spend: Decimal = Decimal("0")
    lifetime_impressions: int = 0
    lifetime_media_spend: Decimal = Decimal("0")
    lineage: Optional[str] = None
    lineage_neutral: bool = False
    export_count: int = 0

    @classmethod
    def from_domain(cls, node: PerNodeInput) -> "PerNodeInputModel":
        return cls(
            allocation_id=node.allocation_id,
            measure_set=node.measure_set.to_list(),
            valuation=node.valuation,
            estimated_cost_per_mille=node.estimated_cost_per_mille,
            period_impressions=node.period_impressions,
            period_media_spend=node.period_media_spend,
            lifetime_impressions=node.lifetime_impressions,
            lifetime_media_spend=node.lifetime_media_spend,
            lineage=node.lineage,
            lineage_neutral=node.lineage_neutral,
            export_count=node.export_count,
        )

    def to_domain(self) -> PerNodeInput:
        measure_set = MeasureSet(self.measure_set)
        return PerNodeInput(
            allocation_id=self.allocation_id or derive_allocation_id(measure_set),
            measure_set=measure_set,
            valuation=self.valuation,
            estimated_cost_per_mille=self.estimated_cost_per_mille,
            lifetime_impressions=self.lifetime_impressions,
            lifetime_media_spend=self.lifetime_media_spend,
            lineage=self.lineage,
            lineage_neutral=self.lineage_neutral,
            export_count=self.export_count,
            period_impressions=self.period_impressions,
            period_media_spend=self.period_media_spend,
        )


class BudgetAllocationInputsModel(WireModel):
    total_budget: Decimal
    remaining_budget: Decimal
    start_time: Timestamp
    end_time: Timestamp
    period_start: Timestamp
    period_duration: Duration
    reallocation_start_time: Optional[Timestamp] = None
    per_mille_fees: Decimal = Decimal("0")
    margin: Decimal = Decimal("1")
    historical_measure_volumes: list[HistoricalMeasureVolumeModel] = Field(default_factory=list)
    per_node_inputs: list[PerNodeInputModel] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, inputs: BudgetAllocationInputs) -> "BudgetAllocationInputsModel":
        return cls(
            total_budget=inputs.total_budget,
            remaining_budget=inputs.remaining_budget,
            start_time=inputs.start_time,
            end_time=inputs.end_time,
            period_start=inputs.period_start,
            period_duration=inputs.period_duration,
            reallocation_start_time=inputs.reallocation_start_time,
            per_mille_fees=inputs.per_mille_fees,
            margin=inputs.margin,
            historical_measure_volumes=[
                HistoricalMeasureVolumeModel(measure_id=v.measure_id, volume=v.volume)
                for v in inputs.historical_measure_volumes
            ],
            per_node_inputs=[PerNodeInputModel.from_domain(n) for n in inputs.per_node_inputs],
        )

    def to_domain(self) -> BudgetAllocationInputs:
        return BudgetAllocationInputs(
            total_budget=self.total_budget,
            remaining_budget=self.remaining_budget,
            start_time=self.start_time,
            end_time=self.end_time,
            period_start=self.period_start,
            period_duration=self.period_duration,
            reallocation_start_time=self.reallocation_start_time or self.period_start,
            per_mille_fees=self.per_mille_fees,
            margin=self.margin,
            historical_measure_volumes=tuple(
                HistoricalMeasureVolume(measure_id=v.measure_id, volume=v.volume)
                for v in self.historical_measure_volumes
            ),
            per_node_inputs=tuple(n.to_domain() for n in self.per_node_inputs),
        )


# =============================================================================
# Outputs
# =============================================================================

class PerNodeResultModel(WireModel):
    allocation_id: str
    measure_set: list[int]
    period_impression_cap: int
    period_media_budget: Decimal
    period_total_budget: Decimal
    max_bid: Decimal

    @classmethod
    def from_domain(cls, result: PerNodeResult) -> "PerNodeResultModel":
        return cls(
            allocation_id=result.allocation_id,
            measure_set=result.measure_set.to_list(),
            period_impression_cap=result.period_impression_cap,
            period_media_budget=result.period_media_budget,
            period_total_budget=result.period_total_budget,
            max_bid=result.max_bid,
        )

    def to_domain(self) -> PerNodeResult:
        return PerNodeResult(
            allocation_id=self.allocation_id,
            measure_set=MeasureSet(self.measure_set),
            period_impression_cap=self.period_impression_cap,
            period_media_budget=self.period_media_budget,
            period_total_budget=self.period_total_budget,
            max_bid=self.max_bid,
        )


class BudgetAllocationOutputModel(WireModel):
    last_modified_date: Timestamp
    anticipated_spend_for_day: Decimal
    per_node_results: list[PerNodeResultModel] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, output: BudgetAllocationOutput) -> "BudgetAllocationOutputModel":
        return cls(
            last_modified_date=output.last_modified_date,
            anticipated_spend_for_day=output.anticipated_spend_for_day,
            per_node_results=[PerNodeResultModel.from_domain(r) for r in output.per_node_results],
        )

    def to_domain(self) -> BudgetAllocationOutput:
        return BudgetAllocationOutput(
            last_modified_date=self.last_modified_date,
            anticipated_spend_for_day=self.anticipated_spend_for_day,
            per_node_results=tuple(r.to_domain() for r in self.per_node_results),
        )


class AllocationRecordModel(WireModel):
    campaign_id: str
    version: int = 0
    mode: AllocationMode = AllocationMode.INITIAL
    reallocation_start_time: Optional[Timestamp] = None
    last_period_start: Optional[Timestamp] = None
    completed: bool = False
    output: Optional[BudgetAllocationOutputModel] = None

    @classmethod
    def from_domain(cls, record: AllocationRecord) -> "AllocationRecordModel":
        return cls(
            campaign_id=record.campaign_id,
            version=record.version,
            mode=record.mode,
            reallocation_start_time=record.reallocation_start_time,
            last_period_start=record.last_period_start,
            completed=record.completed,
            output=BudgetAllocationOutputModel.from_domain(record.output) if record.output else None,
        )

    def to_domain(self) -> AllocationRecord:
        return AllocationRecord(
            campaign_id=self.campaign_id,
            version=self.version,
            mode=self.mode,
            reallocation_start_time=self.reallocation_start_time,
            last_period_start=self.last_period_start,
            completed=self.completed,
            output=self.output.to_domain() if self.output else None,
        )


# =============================================================================
# Campaigns
# =============================================================================

class ExplicitValuationModel(WireModel):
    measure_set: list[int] = Field(..., min_length=1)
    valuation: Decimal


class ValuationDefinitionModel(WireModel):
    max_persona_valuation: Decimal
    explicit_valuations: list[ExplicitValuationModel] = Field(default_factory=list)
    measure_groupings: dict[int, str] = Field(default_factory=dict)
    pinned_measures: list[int] = Field(default_factory=list)

    def to_domain(self) -> ValuationDefinition:
        return ValuationDefinition(
            max_persona_valuation=self.max_persona_valuation,
            explicit_valuations={MeasureSet(v.measure_set): v.valuation for v in self.explicit_valuations},
            measure_groupings=self.measure_groupings,
            pinned_measures=tuple(self.pinned_measures),
        )


class CampaignSnapshotModel(WireModel):
    """
    Campaign state as exported by the campaign system.

    Node entries use the node wire shape; ``periodImpressions`` and
    ``periodMediaSpend`` carry the delivery since the previous pass. With a
    ``valuation`` block the nodes are valued from the valuation graph, and
    graph nodes missing from ``nodes`` are added.
    """
    campaign_id: str
    total_budget: Decimal
    remaining_budget: Decimal
    start_time: Timestamp
    end_time: Timestamp
    margin: Optional[Decimal] = None
    per_mille_fees: Optional[Decimal] = None
    nodes: list[PerNodeInputModel] = Field(default_factory=list)
    valuation: Optional[ValuationDefinitionModel] = None

    def to_domain(self) -> CampaignSnapshot:
        nodes = [n.to_domain() for n in self.nodes]
        campaign_nodes = tuple(
            AllocationNode(
                allocation_id=n.allocation_id,
                measure_set=n.measure_set,
                valuation=n.valuation,
                estimated_cost_per_mille=n.estimated_cost_per_mille,
                lifetime_impressions=n.lifetime_impressions,
                lifetime_media_spend=n.lifetime_media_spend,
                lineage=n.lineage,
                lineage_neutral=n.lineage_neutral,
                export_count=n.export_count,
            )
            for n in nodes
        )
        if self.valuation is not None:
            campaign_nodes = value_nodes(self.valuation.to_domain(), campaign_nodes)
        return CampaignSnapshot(
            campaign_id=self.campaign_id,
            total_budget=self.total_budget,
            remaining_budget=self.remaining_budget,
            start_time=self.start_time,
            end_time=self.end_time,
            nodes=campaign_nodes,
            delivery={
                n.allocation_id: NodeDelivery(impressions=n.period_impressions, media_spend=n.period_media_spend)
                for n in nodes
                if n.period_impressions or n.period_media_spend
            },
            margin=self.margin,
            per_mille_fees=self.per_mille_fees,
        )


class CampaignListModel(WireModel):
    campaigns: list[CampaignSnapshotModel] = Field(default_factory=list)


# =============================================================================
# Work dispatch
# =============================================================================

class ReallocationRequest(WireModel):
    """Scheduled request to run a pass for a campaign."""
    campaign_id: str
    period_start: Optional[Timestamp] = None


class ReallocationResponse(WireModel):
    """Pass outcome as a flat list of per-node records."""
    campaign_id: str
    status: str
    last_modified_date: Optional[Timestamp] = None
    anticipated_spend_for_day: Decimal = Decimal("0")
    per_node_results: list[PerNodeResultModel] = Field(default_factory=list)

    @classmethod
    def from_output(
        cls,
        campaign_id: str,
        status: str,
        output: Optional[BudgetAllocationOutput],
    ) -> "ReallocationResponse":
        if output is None:
            return cls(campaign_id=campaign_id, status=status)
        return cls(
            campaign_id=campaign_id,
            status=status,
            last_modified_date=output.last_modified_date,
            anticipated_spend_for_day=output.anticipated_spend_for_day,
            per_node_results=[PerNodeResultModel.from_domain(r) for r in output.per_node_results],
        )

    def to_output(self) -> Optional[BudgetAllocationOutput]:
        if self.last_modified_date is None:
            return None
        return BudgetAllocationOutput(
            last_modified_date=self.last_modified_date,
            anticipated_spend_for_day=self.anticipated_spend_for_day,
            per_node_results=tuple(r.to_domain() for r in self.per_node_results),
        )


# =============================================================================
# Helper Functions
# =============================================================================

def _parse(model: type[WireModel], data: Any, what: str) -> WireModel:
    try:
        if isinstance(data, (str, bytes)):
            return model.model_validate_json(data)
        return model.model_validate(data)
    except ValidationError as e:
        messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise InvalidParameters(f"Invalid {what}: " + "; ".join(messages), messages) from e


def inputs_to_wire(inputs: BudgetAllocationInputs) -> dict[str, Any]:
    return BudgetAllocationInputsModel.from_domain(inputs).to_wire()


def inputs_from_wire(data: Any) -> BudgetAllocationInputs:
    """Parse inputs from a dict or JSON text; bad payloads raise InvalidParameters."""
    return _parse(BudgetAllocationInputsModel, data, "allocation inputs").to_domain()


def output_to_wire(output: BudgetAllocationOutput) -> dict[str, Any]:
    return BudgetAllocationOutputModel.from_domain(output).to_wire()


def output_from_wire(data: Any) -> BudgetAllocationOutput:
    return _parse(BudgetAllocationOutputModel, data, "allocation output").to_domain()


def output_to_json(output: BudgetAllocationOutput) -> str:
    """Canonical JSON text for an output; equal outputs give identical text."""
    return BudgetAllocationOutputModel.from_domain(output).to_json()


def campaigns_from_wire(data: Any) -> list[CampaignSnapshot]:
    """Parse a ``{"campaigns": [...]}`` document into campaign snapshots."""
    return [c.to_domain() for c in _parse(CampaignListModel, data, "campaign list").campaigns]


def record_to_json(record: AllocationRecord) -> str:
    return AllocationRecordModel.from_domain(record).to_json()


def record_from_json(data: str) -> AllocationRecord:
    return _parse(AllocationRecordModel, data, "allocation record").to_domain()


def dumps(data: dict[str, Any]) -> str:
    """Pretty JSON for files and CLI output."""
    return json.dumps(data, indent=2)
