"""
Database connection management for the allocation store.

PostgreSQL in production, SQLite files for development, tests and the
single-node server.
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
import logging

from dynamic_allocation.config.schema import EngineSettings
from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./dynamic_allocation.db"


def resolve_database_url(database_url: Optional[str] = None) -> str:
    """Explicit URL, else DATABASE_URL, else the local SQLite file."""
    url = database_url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
    # Heroku-style URLs still use the old dialect name
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def _configure_sqlite(engine: Engine, in_memory: bool) -> None:
    """Per-connection pragmas; file databases use WAL journaling."""

    @event.listens_for(engine, "connect")
    def set_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.close()


class DatabaseConnection:
    """
    Engine and session factory for allocation records and history.

    Parameters
    ----------
    database_url : str, optional
        SQLAlchemy URL. Falls back to DATABASE_URL, then a local SQLite file.
    echo : bool
        Whether to echo SQL statements.
    lock_timeout : float
        Seconds a SQLite writer waits for another writer's lock.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: bool = False,
        lock_timeout: float = 10.0,
    ):
        self.database_url = resolve_database_url(database_url)
        self.is_sqlite = self.database_url.startswith("sqlite")

        engine_kwargs = {"echo": echo}
        if self.is_sqlite:
            # API requests run in a thread pool
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": lock_timeout}
        else:
            engine_kwargs.update({
                "poolclass": QueuePool,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
            })

        self.engine = create_engine(self.database_url, **engine_kwargs)
        if self.is_sqlite:
            in_memory = self.database_url in ("sqlite://", "sqlite:///:memory:")
            _configure_sqlite(self.engine, in_memory)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info(f"Allocation database: {self._safe_url()}")

    @classmethod
    def from_settings(cls, settings: EngineSettings, echo: bool = False) -> "DatabaseConnection":
        return cls(settings.database_url, echo=echo)

    def _safe_url(self) -> str:
        """URL with the password masked."""
        if "@" not in self.database_url:
            return self.database_url
        credentials, host = self.database_url.split("@", 1)
        return f"{credentials.rsplit(':', 1)[0]}:****@{host}"

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Allocation tables ready: {sorted(Base.metadata.tables)}")

    def drop_tables(self) -> None:
        """Drop the allocation tables (tests and local resets only)."""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("Allocation tables dropped")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Session scoped to one unit of work.

        Commits when the block exits cleanly and rolls back otherwise, so a
        record update and its history row land together or not at all.

        Yields
        ------
        Session
            SQLAlchemy session.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()


def init_db(settings: Optional[EngineSettings] = None, echo: bool = False) -> DatabaseConnection:
    """
    Connect to the configured database and create missing tables.

    Parameters
    ----------
    settings : EngineSettings, optional
        Engine settings; only ``database_url`` is used.
    echo : bool
        Whether to echo SQL.

    Returns
    -------
    DatabaseConnection
        Connection with the allocation tables in place.
    """
    db = DatabaseConnection.from_settings(settings or EngineSettings(), echo=echo)
    db.create_tables()
    return db
