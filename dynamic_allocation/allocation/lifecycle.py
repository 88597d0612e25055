"""
Allocation lifecycle controller.

Decides whether a trigger should run a pass, assembles the pass inputs
from campaign state and history, runs ranking, experiment selection and
distribution, and persists the result with an optimistic version check.

A campaign starts in the initial allocation phase (short periods, wide
node cap) and moves to steady state once its elapsed time reaches
``initial_allocation_total_period_duration``. The move is one-way.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional
import logging
import threading

from dynamic_allocation.config.schema import AllocationParameters, EngineSettings
from dynamic_allocation.core.errors import PersistConflict
from dynamic_allocation.core.timing import ensure_utc, format_timestamp
from dynamic_allocation.measures.catalog import MeasureCatalog
from dynamic_allocation.measures.sources import UNKNOWN_VOLUME
from .distributor import distribute, spendable_budget
from .experiments import ExperimentSlot, select_experiments
from .models import (
    AllocationHistory,
    AllocationHistoryEntry,
    AllocationMode,
    AllocationRecord,
    BudgetAllocationInputs,
    BudgetAllocationOutput,
    HistoricalMeasureVolume,
    LineageIndex,
    PerNodeInput,
)
from .ranker import Ranking, rank
from .store import AllocationStore, CampaignSnapshot, CampaignSource

logger = logging.getLogger(__name__)


class PassStatus(str, Enum):
    """Outcome of one controller trigger."""
    ALLOCATED = "Allocated"
    NOOP = "NoOp"
    NO_ELIGIBLE_NODES = "NoEligibleNodes"
    CAMPAIGN_ENDED = "CampaignEnded"


@dataclass(frozen=True)
class PassResult:
    """What a trigger did, with everything needed to inspect the pass."""
    status: PassStatus
    output: BudgetAllocationOutput | None
    record: AllocationRecord | None
    inputs: BudgetAllocationInputs | None = None
    ranking: Ranking | None = None
    experiments: tuple[ExperimentSlot, ...] = ()
    attempts: int = 1

    @property
    def computed(self) -> bool:
        return self.status in (PassStatus.ALLOCATED, PassStatus.NO_ELIGIBLE_NODES)


class CampaignLocks:
    """Per-campaign locks so passes for one campaign never overlap in a process."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, campaign_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(campaign_id)
            if lock is None:
                lock = self._locks[campaign_id] = threading.Lock()
            return lock

    def __len__(self) -> int:
        return len(self._locks)


def mode_for(record: AllocationRecord, start_time: datetime, period_start: datetime,
             params: AllocationParameters) -> AllocationMode:
    """Phase for a pass starting at ``period_start``; steady state is never left."""
    if record.mode == AllocationMode.STEADY_STATE:
        return AllocationMode.STEADY_STATE
    if period_start - start_time >= params.initial_allocation_total_period_duration:
        return AllocationMode.STEADY_STATE
    return AllocationMode.INITIAL


class AllocationLifecycleController:
    """
    Runs allocation passes for campaigns.

    Parameters
    ----------
    store : AllocationStore
        Versioned allocation records and pass history.
    campaigns : CampaignSource
        Campaign budgets, flight dates and node catalog.
    settings : EngineSettings, optional
        Parameters (with per-campaign overrides) and the retry limit.
    catalog : MeasureCatalog, optional
        Source of historical measure volumes and eCPM floors.
    clock : callable, optional
        Returns the current time; only used when ``run`` gets no ``now``.
    """

    def __init__(
        self,
        store: AllocationStore,
        campaigns: CampaignSource,
        settings: Optional[EngineSettings] = None,
        catalog: Optional[MeasureCatalog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.campaigns = campaigns
        self.settings = settings or EngineSettings()
        self.catalog = catalog
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run(
        self,
        campaign_id: str,
        now: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
    ) -> PassResult:
        """
        Handle one trigger for a campaign.

        Parameters
        ----------
        campaign_id : str
            Campaign to allocate.
        now : datetime, optional
            Trigger time; also stamped on the output. Defaults to the clock.
        period_start : datetime, optional
            Period the scheduler believes is due. A value before the
            recorded boundary marks a duplicate request.

        Returns
        -------
        PassResult
            ``ALLOCATED`` or ``NO_ELIGIBLE_NODES`` when a pass was
            persisted; ``NOOP`` or ``CAMPAIGN_ENDED`` with the stored
            output otherwise.

        Raises
        ------
        PersistConflict
            If the record kept changing underneath every retry.
        InvalidParameters
            If parameters or assembled inputs are out of range.
        UpstreamUnavailable
            If a collaborator failed; the controller does not retry I/O.
        """
        now = ensure_utc(now) if now is not None else ensure_utc(self.clock())
        if period_start is not None:
            period_start = ensure_utc(period_start)

        limit = self.settings.persist_retry_limit
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._run_once(campaign_id, now, period_start, attempt)
            except PersistConflict as e:
                if attempt > limit:
                    logger.error(f"Campaign '{campaign_id}': giving up after {attempt} conflicting attempt(s)")
                    raise PersistConflict(campaign_id, e.expected_version, attempt) from e
                logger.warning(
                    f"Campaign '{campaign_id}': allocation record changed during the pass "
                    f"(attempt {attempt} of {limit + 1}), retrying with fresh reads"
                )

    def _run_once(
        self,
        campaign_id: str,
        now: datetime,
        requested_start: Optional[datetime],
        attempt: int,
    ) -> PassResult:
        snapshot = self.campaigns.get_campaign(campaign_id)
        params = self.settings.parameters_for(campaign_id)

        record = self.store.get(campaign_id)
        if record is None:
            record = AllocationRecord(
                campaign_id=campaign_id,
                reallocation_start_time=snapshot.start_time,
            )

        if record.completed or now >= snapshot.end_time:
            logger.info(f"Campaign '{campaign_id}' has ended; keeping the last allocation")
            return PassResult(PassStatus.CAMPAIGN_ENDED, record.output, record, attempts=attempt)

        boundary = record.reallocation_start_time or snapshot.start_time
        if now < boundary:
            logger.debug(
                f"Campaign '{campaign_id}': next pass due at {format_timestamp(boundary)}, nothing to do"
            )
            return PassResult(PassStatus.NOOP, record.output, record, attempts=attempt)

        if requested_start is not None and requested_start < boundary:
            logger.warning(
                f"Campaign '{campaign_id}': duplicate request for {format_timestamp(requested_start)}, "
                f"period already allocated up to {format_timestamp(boundary)}"
            )
            return PassResult(PassStatus.NOOP, record.output, record, attempts=attempt)

        period_start = boundary
        mode = mode_for(record, snapshot.start_time, period_start, params)
        initial = mode == AllocationMode.INITIAL
        period_duration = params.period_duration_for(initial)
        if now - period_start >= period_duration:
            logger.warning(
                f"Campaign '{campaign_id}': trigger at {format_timestamp(now)} is late for the period "
                f"starting {format_timestamp(period_start)}"
            )

        history = self.store.history(campaign_id)
        inputs = self.assemble_inputs(snapshot, params, history, period_start, period_duration)
        inputs.validate()

        lineage = LineageIndex(inputs.per_node_inputs)
        ranking = rank(inputs.per_node_inputs, params, params.node_cap_for(initial))
        experiments = select_experiments(
            ranking.dropped,
            params,
            spendable_budget(inputs, params),
            inputs.volumes(),
        )
        output = distribute(ranking, inputs, params, experiments, modified_at=now, lineage=lineage)
        status = PassStatus.NO_ELIGIBLE_NODES if ranking.is_empty else PassStatus.ALLOCATED

        next_start = period_start + period_duration
        if initial:
            # The initial phase ends on its own boundary even if periods do not divide it
            next_start = min(next_start, snapshot.start_time + params.initial_allocation_total_period_duration)
        completed = next_start >= snapshot.end_time

        new_record = record.advance(output, period_start, next_start, mode, completed)
        entry = AllocationHistoryEntry(inputs=inputs, output=output)
        if not self.store.put(campaign_id, new_record, record.version, entry):
            raise PersistConflict(campaign_id, record.version, attempt)

        logger.info(
            f"Campaign '{campaign_id}': {status.value} for period {format_timestamp(period_start)} "
            f"({mode.value}), {len(output.per_node_results)} node(s) funded, "
            f"media {output.total_media_budget}, anticipated spend {output.anticipated_spend_for_day}, "
            f"next pass {format_timestamp(next_start)}{' (final)' if completed else ''}"
        )
        return PassResult(
            status=status,
            output=output,
            record=new_record,
            inputs=inputs,
            ranking=ranking,
            experiments=experiments,
            attempts=attempt,
        )

    def assemble_inputs(
        self,
        snapshot: CampaignSnapshot,
        params: AllocationParameters,
        history: AllocationHistory,
        period_start: datetime,
        period_duration: timedelta,
    ) -> BudgetAllocationInputs:
        """
        Build the pass inputs from campaign state and history.

        Lifetime counters continue from the latest pass in history (or the
        node's own counters for nodes new to the history) plus the delivery
        reported since. Nodes exported by the previous pass have their
        export count bumped.
        """
        counters = history.lifetime_counters()
        latest = history.latest()
        previous_exports = {}
        exported_last = set()
        if latest is not None:
            previous_exports = {n.allocation_id: n.export_count for n in latest.inputs.per_node_inputs}
            exported_last = {r.allocation_id for r in latest.output.per_node_results if r.exported}

        per_node_inputs = []
        for node in snapshot.nodes:
            delivery = snapshot.delivery_for(node.allocation_id)
            lifetime_impressions, lifetime_spend = counters.get(
                node.allocation_id, (node.lifetime_impressions, node.lifetime_media_spend)
            )
            node_input = PerNodeInput.from_node(
                node,
                period_impressions=delivery.impressions,
                period_media_spend=delivery.media_spend,
                lifetime_impressions=lifetime_impressions + delivery.impressions,
                lifetime_media_spend=lifetime_spend + delivery.media_spend,
            )

            export_count = previous_exports.get(node.allocation_id, 0)
            if node.allocation_id in exported_last:
                export_count += 1
            if export_count > node_input.export_count:
                node_input = replace(node_input, export_count=export_count)

            if (
                self.catalog is not None
                and node_input.estimated_cost_per_mille is None
                and node_input.period_impressions == 0
            ):
                floor = self.catalog.min_cost_per_mille(node_input.measure_set)
                if floor is not None:
                    node_input = replace(node_input, estimated_cost_per_mille=floor)

            per_node_inputs.append(node_input)

        volumes = self.historical_volumes(snapshot, history)

        return BudgetAllocationInputs(
            total_budget=snapshot.total_budget,
            remaining_budget=snapshot.remaining_budget,
            start_time=snapshot.start_time,
            end_time=snapshot.end_time,
            period_start=period_start,
            period_duration=period_duration,
            reallocation_start_time=period_start,
            per_mille_fees=snapshot.per_mille_fees if snapshot.per_mille_fees is not None else params.per_mille_fees,
            margin=snapshot.margin if snapshot.margin is not None else params.margin,
            historical_measure_volumes=tuple(
                HistoricalMeasureVolume(measure_id=m, volume=v) for m, v in sorted(volumes.items())
            ),
            per_node_inputs=tuple(per_node_inputs),
        )

    def historical_volumes(self, snapshot: CampaignSnapshot, history: AllocationHistory) -> dict[int, int]:
        """Volumes for every measure in the campaign: the catalog first, then history."""
        measure_ids = sorted({m for node in snapshot.nodes for m in node.measure_set})
        from_history = history.historical_volumes()

        from_catalog = {}
        if self.catalog is not None:
            self.catalog.refresh()
            from_catalog = self.catalog.historical_volumes(measure_ids)

        volumes = {}
        for measure_id in measure_ids:
            volume = from_catalog.get(measure_id, UNKNOWN_VOLUME)
            if volume < 0:
                volume = from_history.get(measure_id, UNKNOWN_VOLUME)
            volumes[measure_id] = volume
        return volumes
