"""
Pydantic schemas for allocation engine configuration.

These schemas define the allocation knobs shared by every campaign, the
measure source wiring and the engine-level settings.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_snake, to_camel

from dynamic_allocation.core.errors import InvalidParameters
from dynamic_allocation.core.timing import format_duration, parse_duration

MAX_TIERS = 8

LEGACY_PREFIX = "DynamicAllocation."

# Names used by older configuration files that do not follow the field naming
LEGACY_NAMES = {
    "allocation_number_of_tiers_to_allocate_to": "number_of_tiers_to_allocate_to",
}


# =============================================================================
# Helper Functions
# =============================================================================

def normalize_parameter_key(key: str) -> str:
    """
    Map an override key to its AllocationParameters field name.

    Accepts the snake_case field name, the camelCase wire name, or the
    prefixed form ``DynamicAllocation.<PascalName>``.

    Raises
    ------
    InvalidParameters
        If the key does not name a parameter.
    """
    name = key[len(LEGACY_PREFIX):] if key.startswith(LEGACY_PREFIX) else key
    name = to_snake(name)
    name = LEGACY_NAMES.get(name, name)
    if name not in AllocationParameters.model_fields:
        raise InvalidParameters(f"Unknown allocation parameter '{key}'", [f"Unknown allocation parameter '{key}'"])
    return name


def _error_messages(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return messages


# =============================================================================
# Allocation Parameters
# =============================================================================

class AllocationParameters(BaseModel):
    """
    Campaign-scoped allocation knobs.

    Attribute names are snake_case; the camelCase names are accepted and
    emitted as aliases. Currency values are Decimals.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)

    default_estimated_cost_per_mille: Decimal = Field(
        Decimal("1.5"), ge=0, description="eCPM used when a node has no estimate or observed delivery"
    )
    margin: Decimal = Field(Decimal("0.85"), gt=0, le=1, description="Media share of the total budget")
    per_mille_fees: Decimal = Field(Decimal("0"), ge=0, description="Non-media cost per thousand impressions")
    budget_buffer: Decimal = Field(Decimal("1.1"), ge=0, description="Headroom multiplier on the pass budget")
    initial_allocation_total_period_duration: timedelta = Field(
        timedelta(days=1), description="Length of the initial allocation phase"
    )
    initial_allocation_single_period_duration: timedelta = Field(
        timedelta(hours=6), description="Period length during the initial allocation phase"
    )
    period_duration: timedelta = Field(timedelta(days=1), description="Period length in steady state")
    allocation_top_tier: int = Field(6, ge=1, description="Maximum number of nodes in tier 1")
    number_of_tiers_to_allocate_to: int = Field(3, ge=1, le=MAX_TIERS, description="Number of funded tiers")
    allocation_number_of_nodes: int = Field(150, ge=0, description="Node cap in steady state")
    max_nodes_to_export: int = Field(175, ge=0, description="Nodes that receive a bid")
    under_spend_experiment_node_count: int = Field(10, ge=0, description="Maximum experiment nodes per pass")
    under_spend_experiment_tier: int = Field(3, ge=0, le=MAX_TIERS, description="Tier experiments are drawn from")
    min_budget: Decimal = Field(Decimal("0.60"), ge=0, description="Smallest media budget worth delivering")
    export_budget_boost: Decimal = Field(Decimal("1"), ge=0, description="Multiplier on eCPM for the max bid")
    largest_budget_percent_allowed: Decimal = Field(
        Decimal("0.02"), gt=0, le=1, description="Per-node cap as a share of the spendable budget"
    )
    neutral_budget_capping_tier: int = Field(
        4, ge=1, le=MAX_TIERS + 1, description="First tier exempt from the per-node cap"
    )
    lineage_penalty: Decimal = Field(Decimal("0.1"), ge=0, le=1, description="Weight factor for derived nodes")
    lineage_penalty_neutral: Decimal = Field(Decimal("1"), ge=0, description="Weight factor for exempt nodes")
    minimum_impression_cap: int = Field(100, ge=0, description="Lower bound for a funded node's impression cap")
    initial_max_number_of_nodes: int = Field(75, ge=0, description="Node cap during the initial allocation phase")

    @field_validator(
        "initial_allocation_total_period_duration",
        "initial_allocation_single_period_duration",
        "period_duration",
        mode="before",
    )
    @classmethod
    def parse_durations(cls, v):
        return parse_duration(v)

    @field_validator(
        "initial_allocation_total_period_duration",
        "initial_allocation_single_period_duration",
        "period_duration",
    )
    @classmethod
    def positive_duration(cls, v):
        if v <= timedelta(0):
            raise ValueError("duration must be positive")
        return v

    @field_validator("min_budget")
    @classmethod
    def whole_cents(cls, v):
        if v != v.quantize(Decimal("0.01")):
            raise ValueError("minBudget must be a whole number of cents")
        return v

    @field_serializer(
        "initial_allocation_total_period_duration",
        "initial_allocation_single_period_duration",
        "period_duration",
        when_used="json",
    )
    def serialize_duration(self, v: timedelta) -> str:
        return format_duration(v)

    @model_validator(mode="after")
    def check_cross_field_ranges(self) -> "AllocationParameters":
        if self.under_spend_experiment_tier > self.number_of_tiers_to_allocate_to:
            raise ValueError(
                f"underSpendExperimentTier ({self.under_spend_experiment_tier}) exceeds "
                f"numberOfTiersToAllocateTo ({self.number_of_tiers_to_allocate_to})"
            )
        if self.initial_allocation_single_period_duration > self.initial_allocation_total_period_duration:
            raise ValueError(
                "initialAllocationSinglePeriodDuration is longer than initialAllocationTotalPeriodDuration"
            )
        return self

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]] = None) -> "AllocationParameters":
        """
        Build parameters from loosely-keyed configuration values.

        Raises
        ------
        InvalidParameters
            If a key is unknown or a value is out of range.
        """
        normalized = {normalize_parameter_key(key): value for key, value in (values or {}).items()}
        try:
            return cls(**normalized)
        except ValidationError as e:
            messages = _error_messages(e)
            raise InvalidParameters("Invalid allocation parameters: " + "; ".join(messages), messages) from e

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "AllocationParameters":
        """Return a copy with ``overrides`` layered on top, revalidated."""
        if not overrides:
            return self
        merged = self.model_dump()
        for key, value in overrides.items():
            merged[normalize_parameter_key(key)] = value
        return AllocationParameters.from_mapping(merged)

    def period_duration_for(self, initial: bool) -> timedelta:
        """Period length for the initial or steady-state phase."""
        return self.initial_allocation_single_period_duration if initial else self.period_duration

    def node_cap_for(self, initial: bool) -> int:
        """Ranked node cap for the initial or steady-state phase."""
        return self.initial_max_number_of_nodes if initial else self.allocation_number_of_nodes


# =============================================================================
# Measure Sources
# =============================================================================

class MeasureSourceConfig(BaseModel):
    """Configuration for one measure source."""
    type: str = Field("static", description="Source implementation: 'static' or 'csv'")
    name: str = Field("default", description="Name used in logs and errors")
    path: Optional[str] = Field(None, description="File path for file-backed sources")
    measures: dict[int, dict[str, Any]] = Field(
        default_factory=dict, description="Inline measure metadata keyed by measure id"
    )
    cache_ttl_seconds: Optional[float] = Field(None, gt=0, description="Cache loaded measures for this long")

    @model_validator(mode="after")
    def path_required_for_files(self) -> "MeasureSourceConfig":
        if self.type == "csv" and not self.path:
            raise ValueError(f"Measure source '{self.name}' of type 'csv' requires a path")
        return self


# =============================================================================
# Engine Settings
# =============================================================================

class EngineSettings(BaseModel):
    """Complete engine configuration."""
    name: str = Field("dynamic_allocation", description="Deployment name")
    database_url: Optional[str] = Field(None, description="SQLAlchemy URL; DATABASE_URL is used when unset")
    persist_retry_limit: int = Field(3, ge=1, description="Whole-pass retries after a version conflict")
    parameters: AllocationParameters = Field(default_factory=AllocationParameters)
    campaign_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict, description="Per-campaign parameter overrides keyed by campaign id"
    )
    measure_sources: list[MeasureSourceConfig] = Field(default_factory=list)

    @field_validator("parameters", mode="before")
    @classmethod
    def parse_parameters(cls, v):
        if isinstance(v, Mapping):
            return AllocationParameters.from_mapping(v)
        return v

    @model_validator(mode="after")
    def check_campaign_overrides(self) -> "EngineSettings":
        for campaign_id, overrides in self.campaign_overrides.items():
            try:
                self.parameters.with_overrides(overrides)
            except InvalidParameters as e:
                raise ValueError(f"campaign '{campaign_id}': {e}") from e
        return self

    def parameters_for(self, campaign_id: str) -> AllocationParameters:
        """Parameters for a campaign, with its overrides applied."""
        return self.parameters.with_overrides(self.campaign_overrides.get(campaign_id))
