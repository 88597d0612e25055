"""Configuration management for the allocation engine."""

from .schema import (
    AllocationParameters,
    MeasureSourceConfig,
    EngineSettings,
    MAX_TIERS,
    normalize_parameter_key,
)
from .loader import ConfigLoader

__all__ = [
    "AllocationParameters",
    "MeasureSourceConfig",
    "EngineSettings",
    "MAX_TIERS",
    "normalize_parameter_key",
    "ConfigLoader",
]
