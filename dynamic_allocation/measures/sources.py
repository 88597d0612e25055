"""
Measure sources.

A measure source is anything that can produce measure metadata keyed by
measure id. Sources differ per delivery integration (a static list shipped
with the deployment, a CSV export from a data provider, ...), so they are
modelled as a small capability interface with interchangeable
implementations chosen by configuration.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, Union, runtime_checkable
import logging

import pandas as pd

from dynamic_allocation.core.errors import InvalidParameters, UpstreamUnavailable
from dynamic_allocation.config.schema import MeasureSourceConfig

logger = logging.getLogger(__name__)

UNKNOWN_VOLUME = -1


@dataclass(frozen=True)
class MeasureInfo:
    """Metadata for a single targeting measure."""
    measure_id: int
    display_name: str = ""
    measure_type: str = ""
    historical_volume: int = UNKNOWN_VOLUME  # -1 when the provider has no estimate
    min_cost_per_mille: Optional[Decimal] = None
    data_provider: Optional[str] = None

    @classmethod
    def from_mapping(cls, measure_id: int, values: Mapping[str, Any]) -> "MeasureInfo":
        """Build from a loosely-typed mapping (YAML, CSV row, JSON)."""
        volume = values.get("historical_volume", values.get("historicalVolume"))
        min_cpm = values.get("min_cost_per_mille", values.get("minCostPerMille"))
        if volume is None or _is_missing(volume):
            volume = UNKNOWN_VOLUME
        return cls(
            measure_id=int(measure_id),
            display_name=str(values.get("display_name", values.get("displayName", "")) or ""),
            measure_type=str(values.get("measure_type", values.get("type", "")) or ""),
            historical_volume=int(volume),
            min_cost_per_mille=None if min_cpm is None or _is_missing(min_cpm) else Decimal(str(min_cpm)),
            data_provider=values.get("data_provider", values.get("dataProvider")) or None,
        )


def _is_missing(value: Any) -> bool:
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


@runtime_checkable
class MeasureSource(Protocol):
    """Capability interface for anything that supplies measure metadata."""

    name: str

    def load(self) -> dict[int, MeasureInfo]:
        ...


class StaticMeasureSource:
    """Measures supplied inline (configuration file or test fixture)."""

    def __init__(self, name: str, measures: Mapping[Any, Union[MeasureInfo, Mapping[str, Any]]]):
        self.name = name
        self._measures = {}
        for measure_id, values in measures.items():
            info = values if isinstance(values, MeasureInfo) else MeasureInfo.from_mapping(int(measure_id), values)
            self._measures[info.measure_id] = info

    def load(self) -> dict[int, MeasureInfo]:
        return dict(self._measures)


class CsvMeasureSource:
    """
    Measures read from a CSV export.

    Expected columns: ``measure_id`` plus any of ``display_name``,
    ``measure_type``, ``historical_volume``, ``min_cost_per_mille``,
    ``data_provider``.
    """

    def __init__(self, name: str, path: Union[str, Path]):
        self.name = name
        self.path = Path(path)

    def load(self) -> dict[int, MeasureInfo]:
        try:
            df = pd.read_csv(self.path)
        except (OSError, pd.errors.ParserError) as e:
            raise UpstreamUnavailable(f"Could not read measure source '{self.name}' from {self.path}: {e}") from e

        if "measure_id" not in df.columns:
            raise InvalidParameters(f"Measure source '{self.name}' is missing a measure_id column")

        measures = {}
        for row in df.to_dict(orient="records"):
            info = MeasureInfo.from_mapping(int(row["measure_id"]), row)
            measures[info.measure_id] = info

        logger.info(f"Loaded {len(measures)} measures from {self.path}")
        return measures


class CachedMeasureSource:
    """
    Time-boxed cache around another measure source.

    The wrapped source is only consulted when the cache is empty or older
    than ``ttl``. If a refresh fails while a cached copy exists, the stale
    copy keeps being served and the failure is logged.
    """

    def __init__(
        self,
        source: MeasureSource,
        ttl: timedelta,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.source = source
        self.name = source.name
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cached: Optional[dict[int, MeasureInfo]] = None
        self._loaded_at: Optional[datetime] = None

    @property
    def is_stale(self) -> bool:
        if self._cached is None or self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at >= self.ttl

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = None

    def load(self) -> dict[int, MeasureInfo]:
        if not self.is_stale:
            return dict(self._cached)

        try:
            measures = self.source.load()
        except UpstreamUnavailable:
            if self._cached is None:
                raise
            logger.warning(f"Refreshing measure source '{self.name}' failed, serving cached copy")
            return dict(self._cached)

        self._cached = measures
        self._loaded_at = self._clock()
        return dict(measures)


# Measure source variants selectable from configuration
SOURCE_TYPES: dict[str, Callable[[MeasureSourceConfig], MeasureSource]] = {
    "static": lambda config: StaticMeasureSource(config.name, config.measures),
    "csv": lambda config: CsvMeasureSource(config.name, config.path),
}


def build_measure_source(
    config: MeasureSourceConfig,
    clock: Optional[Callable[[], datetime]] = None,
) -> MeasureSource:
    """
    Create the measure source described by ``config``.

    Parameters
    ----------
    config : MeasureSourceConfig
        Source configuration; ``type`` selects the implementation.
    clock : callable, optional
        Clock used by the cache wrapper (tests inject a fixed clock).

    Returns
    -------
    MeasureSource
        The source, wrapped in a CachedMeasureSource when
        ``cache_ttl_seconds`` is set.
    """
    factory = SOURCE_TYPES.get(config.type)
    if factory is None:
        raise InvalidParameters(
            f"Unknown measure source type '{config.type}'. "
            f"Valid types: {sorted(SOURCE_TYPES)}"
        )

    source = factory(config)
    if config.cache_ttl_seconds:
        source = CachedMeasureSource(source, timedelta(seconds=config.cache_ttl_seconds), clock=clock)
    return source
