"""
Repository pattern for allocation persistence, and the SQL-backed
allocation store built on it.
"""

from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from dynamic_allocation.allocation.models import (
    AllocationHistory,
    AllocationHistoryEntry,
    AllocationRecord,
)
from dynamic_allocation.allocation.serialization import (
    BudgetAllocationInputsModel,
    BudgetAllocationOutputModel,
    output_to_json,
    record_from_json,
    record_to_json,
)
from dynamic_allocation.allocation.store import check_put
from dynamic_allocation.core.errors import UpstreamUnavailable
from dynamic_allocation.core.timing import ensure_utc
from .connection import DatabaseConnection
from .models import AllocationHistoryRow, AllocationRecordRow

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


class AllocationRepository:
    """
    Repository for allocation records and history rows.
    """

    def __init__(self, session: Session):
        """
        Initialize repository.

        Parameters
        ----------
        session : Session
            SQLAlchemy session.
        """
        self.session = session

    # =========================================================================
    # Record operations
    # =========================================================================

    def get_record_row(self, campaign_id: str) -> Optional[AllocationRecordRow]:
        return self.session.get(AllocationRecordRow, campaign_id)

    def get_record(self, campaign_id: str) -> Optional[AllocationRecord]:
        row = self.get_record_row(campaign_id)
        if row is None:
            return None
        return record_from_json(row.record_json)

    def insert_record(self, record: AllocationRecord) -> None:
        """Insert a campaign's first record; a concurrent insert fails on flush."""
        self.session.add(AllocationRecordRow(
            campaign_id=record.campaign_id,
            version=record.version,
            mode=record.mode.value,
            reallocation_start_time=_naive_utc(record.reallocation_start_time),
            last_period_start=_naive_utc(record.last_period_start),
            completed=record.completed,
            record_json=record_to_json(record),
        ))
        self.session.flush()

    def update_record(self, record: AllocationRecord, expected_version: int) -> bool:
        """
        Overwrite a record if its stored version is ``expected_version``.

        Returns
        -------
        bool
            False when no row had the expected version.
        """
        result = self.session.execute(
            update(AllocationRecordRow)
            .where(AllocationRecordRow.campaign_id == record.campaign_id)
            .where(AllocationRecordRow.version == expected_version)
            .values(
                version=record.version,
                mode=record.mode.value,
                reallocation_start_time=_naive_utc(record.reallocation_start_time),
                last_period_start=_naive_utc(record.last_period_start),
                completed=record.completed,
                record_json=record_to_json(record),
            )
        )
        return result.rowcount == 1

    def list_records(self, limit: int = 100) -> List[AllocationRecordRow]:
        return list(self.session.scalars(
            select(AllocationRecordRow).order_by(AllocationRecordRow.campaign_id).limit(limit)
        ))

    # =========================================================================
    # History operations
    # =========================================================================

    def latest_period_start(self, campaign_id: str) -> Optional[datetime]:
        row = self.session.scalars(
            select(AllocationHistoryRow)
            .where(AllocationHistoryRow.campaign_id == campaign_id)
            .order_by(AllocationHistoryRow.period_start.desc())
            .limit(1)
        ).first()
        return ensure_utc(row.period_start) if row is not None else None

    def add_history(self, campaign_id: str, entry: AllocationHistoryEntry) -> AllocationHistoryRow:
        """
        Append a pass to the campaign's history.

        Raises
        ------
        ValueError
            If the entry does not start after the latest stored entry.
        """
        latest = self.latest_period_start(campaign_id)
        if latest is not None and entry.period_start <= latest:
            raise ValueError(
                f"History entry for {entry.period_start.isoformat()} is not after "
                f"the latest entry ({latest.isoformat()})"
            )

        row = AllocationHistoryRow(
            campaign_id=campaign_id,
            period_start=_naive_utc(entry.period_start),
            node_count=len(entry.inputs.per_node_inputs),
            funded_node_count=len(entry.output.per_node_results),
            total_media_budget=entry.output.total_media_budget,
            inputs_json=BudgetAllocationInputsModel.from_domain(entry.inputs).to_json(),
            output_json=output_to_json(entry.output),
        )
        self.session.add(row)
        self.session.flush()
        return row

    def list_history(
        self,
        campaign_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AllocationHistoryEntry]:
        """History entries with ``start <= period_start < end``, oldest first."""
        query = select(AllocationHistoryRow).where(AllocationHistoryRow.campaign_id == campaign_id)
        if start is not None:
            query = query.where(AllocationHistoryRow.period_start >= _naive_utc(start))
        if end is not None:
            query = query.where(AllocationHistoryRow.period_start < _naive_utc(end))
        query = query.order_by(AllocationHistoryRow.period_start)

        return [
            AllocationHistoryEntry(
                inputs=BudgetAllocationInputsModel.model_validate_json(row.inputs_json).to_domain(),
                output=BudgetAllocationOutputModel.model_validate_json(row.output_json).to_domain(),
            )
            for row in self.session.scalars(query)
        ]


class SqlAllocationStore:
    """
    Allocation store backed by a SQL database.

    The version check, the record write and the history insert share one
    transaction. Database failures surface as UpstreamUnavailable.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get(self, campaign_id: str) -> Optional[AllocationRecord]:
        try:
            with self.db.get_session() as session:
                return AllocationRepository(session).get_record(campaign_id)
        except SQLAlchemyError as e:
            raise UpstreamUnavailable(f"Could not read allocation record for '{campaign_id}': {e}") from e

    def put(
        self,
        campaign_id: str,
        record: AllocationRecord,
        expected_version: int,
        history_entry: Optional[AllocationHistoryEntry] = None,
    ) -> bool:
        check_put(record, campaign_id, expected_version)
        try:
            with self.db.get_session() as session:
                repo = AllocationRepository(session)
                if expected_version == 0:
                    if repo.get_record_row(campaign_id) is not None:
                        logger.debug(f"Version conflict for campaign '{campaign_id}': record already exists")
                        return False
                    try:
                        repo.insert_record(record)
                    except IntegrityError:
                        # Another writer inserted between the check and the flush
                        session.rollback()
                        return False
                elif not repo.update_record(record, expected_version):
                    logger.debug(
                        f"Version conflict for campaign '{campaign_id}': expected version {expected_version}"
                    )
                    session.rollback()
                    return False

                if history_entry is not None:
                    repo.add_history(campaign_id, history_entry)
            return True
        except SQLAlchemyError as e:
            raise UpstreamUnavailable(f"Could not write allocation record for '{campaign_id}': {e}") from e

    def history(
        self,
        campaign_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AllocationHistory:
        try:
            with self.db.get_session() as session:
                entries = AllocationRepository(session).list_history(campaign_id, start, end)
        except SQLAlchemyError as e:
            raise UpstreamUnavailable(f"Could not read allocation history for '{campaign_id}': {e}") from e
        return AllocationHistory(entries)
