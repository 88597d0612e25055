"""Database layer for allocation records and history."""

from .connection import DatabaseConnection, init_db, resolve_database_url
from .models import Base, AllocationRecordRow, AllocationHistoryRow
from .repository import AllocationRepository, SqlAllocationStore

__all__ = [
    "DatabaseConnection",
    "resolve_database_url",
    "init_db",
    "Base",
    "AllocationRecordRow",
    "AllocationHistoryRow",
    "AllocationRepository",
    "SqlAllocationStore",
]
