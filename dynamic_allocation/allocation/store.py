"""
Collaborator interfaces for the lifecycle controller, with in-memory
implementations.

The allocation store keeps one versioned record per campaign plus an
append-only pass history. The campaign source supplies budgets, flight
dates and the node catalog; the engine never writes back to it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Protocol, runtime_checkable
import logging
import threading

from dynamic_allocation.core.errors import CampaignNotFound
from dynamic_allocation.core.timing import ensure_utc
from .models import (
    AllocationHistory,
    AllocationHistoryEntry,
    AllocationNode,
    AllocationRecord,
    to_decimal,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Campaigns
# =============================================================================

@dataclass(frozen=True)
class NodeDelivery:
    """Delivery reported for a node since the previous pass."""
    impressions: int = 0
    media_spend: Decimal = Decimal("0")

    def __post_init__(self):
        object.__setattr__(self, "media_spend", to_decimal(self.media_spend))


@dataclass(frozen=True)
class CampaignSnapshot:
    """
    Campaign state as read at the start of a pass.

    ``margin`` and ``per_mille_fees`` fall back to the allocation
    parameters when not set for the campaign.
    """

    campaign_id: str
    total_budget: Decimal
    remaining_budget: Decimal
    start_time: datetime
    end_time: datetime
    nodes: tuple[AllocationNode, ...] = ()
    delivery: Mapping[str, NodeDelivery] = field(default_factory=dict)
    margin: Decimal | None = None
    per_mille_fees: Decimal | None = None

    def __post_init__(self):
        object.__setattr__(self, "total_budget", to_decimal(self.total_budget))
        object.__setattr__(self, "remaining_budget", to_decimal(self.remaining_budget))
        object.__setattr__(self, "start_time", ensure_utc(self.start_time))
        object.__setattr__(self, "end_time", ensure_utc(self.end_time))
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "delivery", dict(self.delivery))

    def delivery_for(self, allocation_id: str) -> NodeDelivery:
        return self.delivery.get(allocation_id) or NodeDelivery()


@runtime_checkable
class CampaignSource(Protocol):
    """Read-only access to campaign state."""

    def get_campaign(self, campaign_id: str) -> CampaignSnapshot:
        ...


class InMemoryCampaignSource:
    """Campaign snapshots held in a dict; used by tests and the CLI."""

    def __init__(self, campaigns: Optional[Mapping[str, CampaignSnapshot]] = None):
        self._campaigns = dict(campaigns or {})
        self._lock = threading.Lock()

    def add(self, snapshot: CampaignSnapshot) -> None:
        with self._lock:
            self._campaigns[snapshot.campaign_id] = snapshot

    def get_campaign(self, campaign_id: str) -> CampaignSnapshot:
        with self._lock:
            snapshot = self._campaigns.get(campaign_id)
        if snapshot is None:
            raise CampaignNotFound(campaign_id)
        return snapshot


# =============================================================================
# Allocation records
# =============================================================================

@runtime_checkable
class AllocationStore(Protocol):
    """Versioned allocation records and append-only history."""

    def get(self, campaign_id: str) -> Optional[AllocationRecord]:
        ...

    def put(
        self,
        campaign_id: str,
        record: AllocationRecord,
        expected_version: int,
        history_entry: Optional[AllocationHistoryEntry] = None,
    ) -> bool:
        """Write ``record`` if the stored version equals ``expected_version``; False on conflict."""
        ...

    def history(
        self,
        campaign_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AllocationHistory:
        ...


def check_put(record: AllocationRecord, campaign_id: str, expected_version: int) -> None:
    """Reject writes that could never be valid, whatever is stored."""
    if record.campaign_id != campaign_id:
        raise ValueError(f"Record for campaign '{record.campaign_id}' written under '{campaign_id}'")
    if record.version != expected_version + 1:
        raise ValueError(
            f"Record version {record.version} does not follow expected version {expected_version}"
        )


class InMemoryAllocationStore:
    """
    Process-local allocation store.

    A single lock makes each ``put`` atomic: the version check, the record
    write and the history append happen together or not at all.
    """

    def __init__(self):
        self._records: dict[str, AllocationRecord] = {}
        self._history: dict[str, AllocationHistory] = {}
        self._lock = threading.Lock()

    def get(self, campaign_id: str) -> Optional[AllocationRecord]:
        with self._lock:
            return self._records.get(campaign_id)

    def put(
        self,
        campaign_id: str,
        record: AllocationRecord,
        expected_version: int,
        history_entry: Optional[AllocationHistoryEntry] = None,
    ) -> bool:
        check_put(record, campaign_id, expected_version)
        with self._lock:
            current = self._records.get(campaign_id)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                logger.debug(
                    f"Version conflict for campaign '{campaign_id}': "
                    f"stored {current_version}, expected {expected_version}"
                )
                return False

            if history_entry is not None:
                history = self._history.setdefault(campaign_id, AllocationHistory())
                history.append(history_entry)
            self._records[campaign_id] = record
            return True

    def history(
        self,
        campaign_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AllocationHistory:
        with self._lock:
            history = self._history.get(campaign_id)
            entries = history.range(start, end) if history is not None else []
        return AllocationHistory(entries)
