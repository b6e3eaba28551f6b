"""SQLite storage for state that must survive orchestrator restarts."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, SQLModel, create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class DeferredTaskRecord(SQLModel, table=True):
    __tablename__ = "deferred_tasks"  # type: ignore[bad-override]

    source_type: str = Field(primary_key=True)
    scope: str = Field(primary_key=True)
    task_id: str = Field(primary_key=True)
    title: str = ""
    deferrals: int = 0
    last_error: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int = 5_000) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def init_schema(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
