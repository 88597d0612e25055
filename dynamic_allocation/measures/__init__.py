"""Measure sets, measure sources and the measure catalog."""

from .measure_set import MeasureSet
from .sources import (
    MeasureInfo,
    MeasureSource,
    StaticMeasureSource,
    CsvMeasureSource,
    CachedMeasureSource,
    build_measure_source,
    UNKNOWN_VOLUME,
)
from .catalog import MeasureCatalog, estimated_volume

__all__ = [
    "MeasureSet",
    "MeasureInfo",
    "MeasureSource",
    "StaticMeasureSource",
    "CsvMeasureSource",
    "CachedMeasureSource",
    "build_measure_source",
    "UNKNOWN_VOLUME",
    "MeasureCatalog",
    "estimated_volume",
]
