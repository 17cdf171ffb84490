"""
Database-specific statements used by the storage engine.

The storage engine is written against DialectProtocol and never renders locking
or row-limiting syntax itself. Each backing database gets one implementation of
the three hot-path statements:

- the locking dequeue query
- the wait-to-ready promotion query
- the stale response deletion
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import ColumnElement, Delete, Select, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import aliased

from stowage.storage.models import (
    PendingResponse,
    ProcessingState,
    QueueEntry,
    WaitEntry,
    WaitState,
    WorkflowInstance,
)


@runtime_checkable
class DialectProtocol(Protocol):
    """Strategy interface for the database-specific statements."""

    name: str

    def dequeue_query(self, pool_id: str, max_rows: int) -> Select:
        """
        Select up to max_rows ready entries of one processor pool.

        Rows are ordered by priority (highest first), then by age (oldest first)
        and carry (workflow_instance_id, priority, data, creation_ts). Databases
        with row locking lock the selected queue rows so that concurrent
        dequeuers never receive the same entry.
        """
        ...

    def promotion_query(self, max_rows: int, now: datetime) -> Select:
        """
        Select up to max_rows waiting instances that can be made ready.

        An instance is promotable when one of its waits is still 'waiting' and
        either enough responses arrived for its waits or the wait timed out.
        Rows carry (id, processor_pool_id, priority).
        """
        ...

    def delete_stale_responses_stmt(self, max_rows: int, horizon: datetime) -> Delete:
        """
        Delete up to max_rows responses older than horizon without a matching wait.
        """
        ...


def _dequeue_select(pool_id: str, max_rows: int) -> Select:
    return (
        select(
            QueueEntry.workflow_instance_id,
            QueueEntry.priority,
            WorkflowInstance.data,
            WorkflowInstance.creation_ts,
        )
        .join(WorkflowInstance, WorkflowInstance.id == QueueEntry.workflow_instance_id)
        .where(QueueEntry.processor_pool_id == pool_id)
        .order_by(QueueEntry.priority.desc(), QueueEntry.last_mod_ts.asc())
        .limit(max_rows)
    )


def _promotion_select(max_rows: int, now: datetime) -> Select:
    answered_wait = aliased(WaitEntry)

    # Responses already delivered for any wait of the same instance
    answered = (
        select(func.count())
        .select_from(answered_wait)
        .join(PendingResponse, PendingResponse.correlation_id == answered_wait.correlation_id)
        .where(answered_wait.workflow_instance_id == WaitEntry.workflow_instance_id)
        .correlate(WaitEntry)
        .scalar_subquery()
    )

    promotable = (
        select(WaitEntry.correlation_id)
        .where(
            WaitEntry.workflow_instance_id == WorkflowInstance.id,
            WaitEntry.state == WaitState.WAITING.value,
            or_(
                WaitEntry.timeout_ts <= now,
                WaitEntry.min_number_of_responses <= answered,
            ),
        )
        .correlate(WorkflowInstance)
        .exists()
    )

    return (
        select(
            WorkflowInstance.id,
            WorkflowInstance.processor_pool_id,
            WorkflowInstance.priority,
        )
        .where(WorkflowInstance.state == ProcessingState.WAITING.value, promotable)
        .limit(max_rows)
    )


def _orphaned(response: type[PendingResponse], horizon: datetime) -> ColumnElement[bool]:
    has_wait = select(WaitEntry.correlation_id).where(
        WaitEntry.correlation_id == response.correlation_id
    )
    return (response.response_ts < horizon) & ~has_wait.exists()


class SQLiteDialect:
    """
    SQLite statements.

    SQLite has no row locks; writers are serialized by the database lock and the
    storage engine claims dequeued entries with DELETE ... RETURNING.
    """

    name = "sqlite"

    def dequeue_query(self, pool_id: str, max_rows: int) -> Select:
        return _dequeue_select(pool_id, max_rows)

    def promotion_query(self, max_rows: int, now: datetime) -> Select:
        return _promotion_select(max_rows, now)

    def delete_stale_responses_stmt(self, max_rows: int, horizon: datetime) -> Delete:
        stale = aliased(PendingResponse)
        victims = select(stale.correlation_id).where(_orphaned(stale, horizon)).limit(max_rows)
        return delete(PendingResponse).where(PendingResponse.correlation_id.in_(victims))


class PostgreSQLDialect:
    """PostgreSQL statements using SELECT ... FOR UPDATE SKIP LOCKED."""

    name = "postgresql"

    def dequeue_query(self, pool_id: str, max_rows: int) -> Select:
        return _dequeue_select(pool_id, max_rows).with_for_update(skip_locked=True, of=QueueEntry)

    def promotion_query(self, max_rows: int, now: datetime) -> Select:
        return _promotion_select(max_rows, now).with_for_update(
            skip_locked=True, of=WorkflowInstance
        )

    def delete_stale_responses_stmt(self, max_rows: int, horizon: datetime) -> Delete:
        # PostgreSQL has no DELETE ... LIMIT; lock a bounded victim set instead
        stale = aliased(PendingResponse)
        victims = (
            select(stale.correlation_id)
            .where(_orphaned(stale, horizon))
            .limit(max_rows)
            .with_for_update(skip_locked=True)
        )
        return delete(PendingResponse).where(PendingResponse.correlation_id.in_(victims))


class MySQLDialect:
    """MySQL 8+ statements (SKIP LOCKED and DELETE ... LIMIT)."""

    name = "mysql"

    def dequeue_query(self, pool_id: str, max_rows: int) -> Select:
        return _dequeue_select(pool_id, max_rows).with_for_update(skip_locked=True, of=QueueEntry)

    def promotion_query(self, max_rows: int, now: datetime) -> Select:
        return _promotion_select(max_rows, now).with_for_update(
            skip_locked=True, of=WorkflowInstance
        )

    def delete_stale_responses_stmt(self, max_rows: int, horizon: datetime) -> Delete:
        # MySQL rejects LIMIT inside IN subqueries but supports DELETE ... LIMIT
        return (
            delete(PendingResponse)
            .where(_orphaned(PendingResponse, horizon))
            .with_dialect_options(mysql_limit=max_rows)
        )


_DIALECTS: dict[str, type[DialectProtocol]] = {
    "sqlite": SQLiteDialect,
    "postgresql": PostgreSQLDialect,
    "mysql": MySQLDialect,
    "mariadb": MySQLDialect,
}


def dialect_for(engine: AsyncEngine) -> DialectProtocol:
    """
    Pick the dialect implementation for an engine.

    Raises:
        ValueError: If the database is not supported
    """
    name = engine.dialect.name
    try:
        return _DIALECTS[name]()
    except KeyError:
        raise ValueError(f"Unsupported database dialect: {name}") from None
