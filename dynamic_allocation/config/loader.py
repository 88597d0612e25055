"""
Configuration loader for YAML files.
"""

import yaml
from pathlib import Path
from typing import Any, Mapping, Optional, Union
import logging

from pydantic import ValidationError

from dynamic_allocation.core.errors import InvalidParameters
from .schema import AllocationParameters, EngineSettings

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Load and save engine configurations."""

    @staticmethod
    def from_yaml(path: Union[str, Path]) -> EngineSettings:
        """
        Load engine settings from a YAML file.

        Parameters
        ----------
        path : Union[str, Path]
            Path to the YAML configuration file.

        Returns
        -------
        EngineSettings
            Validated engine settings.

        Raises
        ------
        FileNotFoundError
            If the configuration file doesn't exist.
        InvalidParameters
            If the configuration is invalid.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f) or {}

        try:
            settings = ConfigLoader.from_dict(config_dict)
        except InvalidParameters as e:
            raise InvalidParameters(f"Invalid configuration in {path}: {e}", e.errors) from e

        logger.info(f"Loaded configuration '{settings.name}' from {path}")
        return settings

    @staticmethod
    def to_yaml(settings: EngineSettings, path: Union[str, Path]) -> None:
        """
        Save engine settings to a YAML file.

        Parameters
        ----------
        settings : EngineSettings
            Settings to save.
        path : Union[str, Path]
            Path to save the YAML file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = settings.model_dump(mode="json", by_alias=False)
        config_dict["parameters"] = settings.parameters.model_dump(mode="json", by_alias=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved configuration '{settings.name}' to {path}")

    @staticmethod
    def from_dict(config_dict: Mapping[str, Any]) -> EngineSettings:
        """
        Load engine settings from a dictionary.

        Parameters
        ----------
        config_dict : dict
            Configuration as a dictionary.

        Returns
        -------
        EngineSettings
            Validated engine settings.
        """
        if not isinstance(config_dict, Mapping):
            raise InvalidParameters(f"Configuration must be a mapping, got {type(config_dict).__name__}")
        try:
            return EngineSettings(**config_dict)
        except ValidationError as e:
            messages = [
                f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in e.errors()
            ]
            raise InvalidParameters("Invalid engine settings: " + "; ".join(messages), messages) from e

    @staticmethod
    def with_overrides(
        parameters: AllocationParameters,
        overrides: Optional[Mapping[str, Any]],
    ) -> AllocationParameters:
        """
        Layer parameter overrides on top of a base parameter set.

        Keys may be snake_case, camelCase or ``DynamicAllocation.<Name>``.
        """
        result = parameters.with_overrides(overrides)
        if overrides:
            logger.debug(f"Applied {len(overrides)} parameter override(s): {sorted(overrides)}")
        return result

    @staticmethod
    def get_template() -> dict:
        """
        Get a template configuration dictionary with all options documented.

        Returns
        -------
        dict
            Template configuration with default values.
        """
        return {
            "name": "dynamic_allocation",
            "database_url": "sqlite:///./dynamic_allocation.db",
            "persist_retry_limit": 3,
            "parameters": {
                "defaultEstimatedCostPerMille": "1.5",
                "margin": "0.85",
                "perMilleFees": "0",
                "budgetBuffer": "1.1",
                "initialAllocationTotalPeriodDuration": "1.00:00:00",
                "initialAllocationSinglePeriodDuration": "0.06:00:00",
                "periodDuration": "1.00:00:00",
                "allocationTopTier": 6,
                "numberOfTiersToAllocateTo": 3,
                "allocationNumberOfNodes": 150,
                "maxNodesToExport": 175,
                "underSpendExperimentNodeCount": 10,
                "underSpendExperimentTier": 3,
                "minBudget": "0.60",
                "exportBudgetBoost": "1",
                "largestBudgetPercentAllowed": "0.02",
                "neutralBudgetCappingTier": 4,
                "lineagePenalty": "0.1",
                "lineagePenaltyNeutral": "1",
                "minimumImpressionCap": 100,
                "initialMaxNumberOfNodes": 75,
            },
            "campaign_overrides": {
                "campaign-with-larger-nodes": {
                    "largestBudgetPercentAllowed": "0.1",
                },
            },
            "measure_sources": [
                {
                    "type": "static",
                    "name": "inline",
                    "measures": {
                        1001: {
                            "display_name": "Sports enthusiasts",
                            "measure_type": "segment",
                            "historical_volume": 250000,
                        },
                    },
                },
                {
                    "type": "csv",
                    "name": "provider_export",
                    "path": "data/measures.csv",
                    "cache_ttl_seconds": 3600,
                },
            ],
        }
