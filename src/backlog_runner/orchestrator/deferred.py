"""Persistent per-task deferral counters for retryable failures."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, delete, select

from backlog_runner.orchestrator.models import Task
from backlog_runner.orchestrator.storage import (
    DeferredTaskRecord,
    build_sqlite_engine,
    init_schema,
    utc_now,
)

logger = logging.getLogger(__name__)


class DeferredTaskTracker:
    """Counts retryable failures per task across orchestrator restarts.

    Records are keyed by ``(source_type, scope, task_id)``; ``scope`` is the
    backlog file the tasks came from, so two backlogs never share counters.
    """

    def __init__(self, db_path: Path, *, source_type: str, scope: str | Path | None = None) -> None:
        self.db_path = db_path
        self.source_type = source_type
        self.scope = str(scope) if scope is not None else ""
        self.engine: Engine = build_sqlite_engine(db_path=db_path)
        init_schema(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def record(self, task: Task, *, error: str | None = None) -> int:
        """Increment the deferral counter for ``task`` and return the new value."""

        with Session(self.engine) as session:
            row = session.get(DeferredTaskRecord, (self.source_type, self.scope, task.task_id))
            if row is None:
                row = DeferredTaskRecord(
                    source_type=self.source_type,
                    scope=self.scope,
                    task_id=task.task_id,
                    title=task.title,
                    deferrals=0,
                    updated_at=utc_now(),
                )
            row.deferrals += 1
            row.last_error = error
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            deferrals = row.deferrals
        logger.debug("Task %s deferred %d time(s)", task.task_id, deferrals)
        return deferrals

    def get(self, task: Task) -> int:
        with Session(self.engine) as session:
            row = session.get(DeferredTaskRecord, (self.source_type, self.scope, task.task_id))
            return row.deferrals if row is not None else 0

    def clear(self, task: Task) -> None:
        with Session(self.engine) as session:
            session.exec(
                delete(DeferredTaskRecord).where(
                    col(DeferredTaskRecord.source_type) == self.source_type,
                    col(DeferredTaskRecord.scope) == self.scope,
                    col(DeferredTaskRecord.task_id) == task.task_id,
                ),
            )
            session.commit()

    def list_records(self) -> list[DeferredTaskRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DeferredTaskRecord)
                .where(
                    DeferredTaskRecord.source_type == self.source_type,
                    DeferredTaskRecord.scope == self.scope,
                )
                .order_by(col(DeferredTaskRecord.updated_at).desc()),
            ).all()
            return list(rows)

    def clear_all(self) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DeferredTaskRecord).where(
                    DeferredTaskRecord.source_type == self.source_type,
                    DeferredTaskRecord.scope == self.scope,
                ),
            ).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)
