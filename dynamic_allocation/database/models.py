"""
SQLAlchemy ORM models for allocation records and history.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, Numeric, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column holds naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AllocationRecordRow(Base):
    """
    Current allocation state, one row per campaign.

    ``version`` is compared on every write (optimistic concurrency).
    """
    __tablename__ = "allocation_records"

    campaign_id = Column(String(255), primary_key=True)
    version = Column(Integer, nullable=False, default=0)

    # Quick reference fields
    mode = Column(String(50), nullable=False)
    reallocation_start_time = Column(DateTime, nullable=True)
    last_period_start = Column(DateTime, nullable=True)
    completed = Column(Boolean, nullable=False, default=False)

    # Full record as JSON text (wire format)
    record_json = Column(Text, nullable=False)

    # Metadata
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<AllocationRecordRow(campaign_id='{self.campaign_id}', version={self.version})>"


class AllocationHistoryRow(Base):
    """
    One completed pass. Rows are only ever inserted.
    """
    __tablename__ = "allocation_history"
    __table_args__ = (
        UniqueConstraint("campaign_id", "period_start", name="uq_allocation_history_period"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(String(255), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False, index=True)

    # Summary
    node_count = Column(Integer, nullable=True)
    funded_node_count = Column(Integer, nullable=True)
    total_media_budget = Column(Numeric(18, 2), nullable=True)

    # Full pass as JSON text (wire format)
    inputs_json = Column(Text, nullable=False)
    output_json = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<AllocationHistoryRow(campaign_id='{self.campaign_id}', period_start={self.period_start})>"
