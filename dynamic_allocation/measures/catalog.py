"""
Measure catalog: merged, read-only view over one or more measure sources.
"""

from decimal import Decimal
from typing import Iterable, Optional, Sequence
import logging

from dynamic_allocation.measures.measure_set import MeasureSet
from dynamic_allocation.measures.sources import MeasureInfo, MeasureSource, UNKNOWN_VOLUME

logger = logging.getLogger(__name__)


class MeasureCatalog:
    """
    Lookup of measure metadata across sources.

    Sources are merged in order; a later source overrides an earlier one
    for the same measure id. The merged map is built on first use and
    rebuilt by ``refresh()``.

    Parameters
    ----------
    sources : Sequence[MeasureSource]
        Measure sources to merge.
    """

    def __init__(self, sources: Sequence[MeasureSource] = ()):
        self.sources = list(sources)
        self._measures: Optional[dict[int, MeasureInfo]] = None

    @property
    def measures(self) -> dict[int, MeasureInfo]:
        if self._measures is None:
            self.refresh()
        return self._measures

    def refresh(self) -> None:
        """Reload every source and rebuild the merged map."""
        merged: dict[int, MeasureInfo] = {}
        for source in self.sources:
            loaded = source.load()
            merged.update(loaded)
            logger.debug(f"Measure source '{source.name}' contributed {len(loaded)} measures")
        self._measures = merged
        logger.info(f"Measure catalog holds {len(merged)} measures from {len(self.sources)} source(s)")

    def __contains__(self, measure_id: int) -> bool:
        return measure_id in self.measures

    def __len__(self) -> int:
        return len(self.measures)

    def get(self, measure_id: int) -> MeasureInfo:
        """Return the metadata for ``measure_id`` or raise KeyError."""
        try:
            return self.measures[measure_id]
        except KeyError:
            raise KeyError(f"Measure {measure_id} is not in the catalog") from None

    def display_name(self, measure_id: int) -> str:
        info = self.measures.get(measure_id)
        if info is None or not info.display_name:
            return str(measure_id)
        return info.display_name

    def measure_type(self, measure_id: int) -> str:
        return self.get(measure_id).measure_type

    def historical_volume(self, measure_id: int) -> int:
        """Historical volume estimate, or -1 when unknown."""
        info = self.measures.get(measure_id)
        return UNKNOWN_VOLUME if info is None else info.historical_volume

    def historical_volumes(self, measure_ids: Iterable[int]) -> dict[int, int]:
        return {m: self.historical_volume(m) for m in sorted(set(measure_ids))}

    def min_cost_per_mille(self, measure_set: MeasureSet) -> Optional[Decimal]:
        """Largest minimum eCPM required by any measure in the set."""
        floors = [
            self.measures[m].min_cost_per_mille
            for m in measure_set
            if m in self.measures and self.measures[m].min_cost_per_mille is not None
        ]
        return max(floors) if floors else None

    def describe(self, measure_set: MeasureSet) -> str:
        """Human-readable label for a measure set."""
        return " + ".join(self.display_name(m) for m in measure_set)


def estimated_volume(measure_set: MeasureSet, volumes: dict[int, int]) -> int:
    """
    Upper bound on the volume of a measure set.

    A node can deliver no more than its scarcest measure, so the estimate
    is the minimum of the known measure volumes; -1 when none is known.
    """
    known = [volumes[m] for m in measure_set if volumes.get(m, UNKNOWN_VOLUME) >= 0]
    return min(known) if known else UNKNOWN_VOLUME
