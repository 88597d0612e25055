"""
Tests for config/ - allocation parameters, engine settings and the YAML loader.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from dynamic_allocation.config.loader import ConfigLoader
from dynamic_allocation.config.schema import (
    AllocationParameters,
    EngineSettings,
    normalize_parameter_key,
)
from dynamic_allocation.core.errors import InvalidParameters


# =============================================================================
# AllocationParameters Tests
# =============================================================================

class TestAllocationParameters:
    """Tests for AllocationParameters defaults and ranges."""

    def test_defaults(self):
        params = AllocationParameters()
        assert params.default_estimated_cost_per_mille == Decimal("1.5")
        assert params.margin == Decimal("0.85")
        assert params.budget_buffer == Decimal("1.1")
        assert params.number_of_tiers_to_allocate_to == 3
        assert params.allocation_top_tier == 6
        assert params.min_budget == Decimal("0.60")
        assert params.period_duration == timedelta(days=1)
        assert params.initial_allocation_single_period_duration == timedelta(hours=6)
        assert params.initial_max_number_of_nodes == 75

    def test_camel_case_names(self):
        params = AllocationParameters(minBudget="100", numberOfTiersToAllocateTo=4)
        assert params.min_budget == Decimal("100")
        assert params.number_of_tiers_to_allocate_to == 4

    def test_duration_strings(self):
        params = AllocationParameters(periodDuration="0.12:00:00", initialAllocationTotalPeriodDuration="2")
        assert params.period_duration == timedelta(hours=12)
        assert params.initial_allocation_total_period_duration == timedelta(days=2)

    def test_json_dump_uses_wire_names_and_durations(self):
        dumped = AllocationParameters().model_dump(mode="json", by_alias=True)
        assert dumped["periodDuration"] == "1.00:00:00"
        assert dumped["initialAllocationSinglePeriodDuration"] == "0.06:00:00"
        assert "minBudget" in dumped

    def test_frozen(self):
        params = AllocationParameters()
        with pytest.raises(ValueError):
            params.margin = Decimal("0.5")

    @pytest.mark.parametrize("values", [
        {"margin": "0"},
        {"margin": "1.5"},
        {"largestBudgetPercentAllowed": "0"},
        {"largestBudgetPercentAllowed": "1.01"},
        {"minBudget": "-1"},
        {"minBudget": "0.605"},
        {"numberOfTiersToAllocateTo": 0},
        {"numberOfTiersToAllocateTo": 9},
        {"periodDuration": "0.00:00:00"},
        {"periodDuration": "next tuesday"},
        {"underSpendExperimentTier": 4},
        {"initialAllocationSinglePeriodDuration": "2.00:00:00"},
    ])
    def test_out_of_range_rejected(self, values):
        with pytest.raises(InvalidParameters):
            AllocationParameters.from_mapping(values)

    def test_unknown_key_rejected(self):
        with pytest.raises(InvalidParameters, match="Unknown allocation parameter"):
            AllocationParameters.from_mapping({"maxBudget": 1})

    def test_invalid_parameters_lists_every_error(self):
        with pytest.raises(InvalidParameters) as exc_info:
            AllocationParameters.from_mapping({"margin": "0", "minBudget": "-1"})
        assert len(exc_info.value.errors) == 2

    def test_phase_helpers(self):
        params = AllocationParameters()
        assert params.period_duration_for(initial=True) == timedelta(hours=6)
        assert params.period_duration_for(initial=False) == timedelta(days=1)
        assert params.node_cap_for(initial=True) == 75
        assert params.node_cap_for(initial=False) == 150


class TestParameterKeys:
    """Tests for override key normalization."""

    @pytest.mark.parametrize("key,expected", [
        ("min_budget", "min_budget"),
        ("minBudget", "min_budget"),
        ("DynamicAllocation.MinBudget", "min_budget"),
        ("DynamicAllocation.LargestBudgetPercentAllowed", "largest_budget_percent_allowed"),
        ("DynamicAllocation.AllocationNumberOfTiersToAllocateTo", "number_of_tiers_to_allocate_to"),
    ])
    def test_normalize(self, key, expected):
        assert normalize_parameter_key(key) == expected

    def test_with_overrides(self):
        base = AllocationParameters()
        params = base.with_overrides({
            "DynamicAllocation.MinBudget": "5",
            "periodDuration": "0.12:00:00",
        })
        assert params.min_budget == Decimal("5")
        assert params.period_duration == timedelta(hours=12)
        assert base.min_budget == Decimal("0.60")

    def test_overrides_are_revalidated(self):
        with pytest.raises(InvalidParameters):
            AllocationParameters().with_overrides({"margin": "2"})

    def test_no_overrides_returns_same_instance(self):
        params = AllocationParameters()
        assert params.with_overrides(None) is params
        assert params.with_overrides({}) is params


# =============================================================================
# EngineSettings Tests
# =============================================================================

class TestEngineSettings:
    def test_parameters_for_campaign(self):
        settings = EngineSettings(
            parameters={"minBudget": "2"},
            campaign_overrides={"big": {"largestBudgetPercentAllowed": "0.5"}},
        )
        assert settings.parameters_for("big").largest_budget_percent_allowed == Decimal("0.5")
        assert settings.parameters_for("big").min_budget == Decimal("2")
        assert settings.parameters_for("other").largest_budget_percent_allowed == Decimal("0.02")

    def test_bad_campaign_override_rejected(self):
        with pytest.raises(InvalidParameters):
            ConfigLoader.from_dict({"campaign_overrides": {"c": {"margin": "5"}}})

    def test_retry_limit_must_be_positive(self):
        with pytest.raises(InvalidParameters):
            ConfigLoader.from_dict({"persist_retry_limit": 0})


# =============================================================================
# ConfigLoader Tests
# =============================================================================

class TestConfigLoader:
    """Tests for YAML loading and saving."""

    def test_yaml_round_trip(self, tmp_path):
        settings = EngineSettings(
            name="test",
            parameters=AllocationParameters(min_budget=Decimal("3"), period_duration=timedelta(hours=12)),
            campaign_overrides={"c1": {"minBudget": "7"}},
        )
        path = tmp_path / "config" / "settings.yaml"
        ConfigLoader.to_yaml(settings, path)
        loaded = ConfigLoader.from_yaml(path)

        assert loaded.name == "test"
        assert loaded.parameters == settings.parameters
        assert loaded.parameters_for("c1").min_budget == Decimal("7")

    def test_legacy_keys_in_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "parameters:\n"
            "  DynamicAllocation.AllocationNumberOfTiersToAllocateTo: 4\n"
            "  DynamicAllocation.MinBudget: '1.25'\n"
        )
        settings = ConfigLoader.from_yaml(path)
        assert settings.parameters.number_of_tiers_to_allocate_to == 4
        assert settings.parameters.min_budget == Decimal("1.25")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader.from_yaml(tmp_path / "missing.yaml")

    def test_invalid_file_names_path(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("parameters:\n  margin: '3'\n")
        with pytest.raises(InvalidParameters, match="bad.yaml"):
            ConfigLoader.from_yaml(path)

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert ConfigLoader.from_yaml(path).parameters == AllocationParameters()

    def test_template_is_valid(self):
        settings = ConfigLoader.from_dict(ConfigLoader.get_template())
        assert settings.parameters == AllocationParameters()
        assert len(settings.measure_sources) == 2
        assert settings.parameters_for("campaign-with-larger-nodes").largest_budget_percent_allowed == Decimal("0.1")

    def test_with_overrides(self):
        params = ConfigLoader.with_overrides(AllocationParameters(), {"minBudget": "9"})
        assert params.min_budget == Decimal("9")

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidParameters):
            ConfigLoader.from_dict(["not", "a", "mapping"])
