"""
SQLAlchemy storage implementation for Stowage.

This module provides the persistent queue engine: it stores suspended workflow
instances, hands ready instances to processor pools, promotes waiting instances
once their responses arrive, reaps orphaned responses and restores a consistent
queue after an unclean shutdown. SQLite, PostgreSQL and MySQL are supported;
the database-specific statements live in stowage.storage.dialects.

Every statement runs inside a transaction managed by RetryingTransaction, and
all coordination between workers (and between processes sharing the database)
relies on database transactions and row locks only.
"""

import asyncio
import logging
import time
import traceback
from collections.abc import Iterator, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import DateTime, delete, func, insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from stowage.config import StowageSettings
from stowage.exceptions import StartupError, StorageError, UnsupportedOperationError
from stowage.serialization import JSONSerializer, Serializer
from stowage.statistics import (
    NullRuntimeStatisticsCollector,
    RuntimeStatisticsCollector,
    StmtStatistic,
)
from stowage.storage.batcher import Batcher
from stowage.storage.commands import (
    NotifyCommand,
    RegisterCallbackCommand,
    RemoveCommand,
    SetToErrorCommand,
)
from stowage.storage.dialects import DialectProtocol, dialect_for
from stowage.storage.models import (
    CURRENT_SCHEMA_VERSION,
    RESTARTABLE_STATES,
    Base,
    PendingResponse,
    ProcessingState,
    QueueEntry,
    SchemaVersion,
    WaitEntry,
    WaitState,
    WorkflowInstance,
)
from stowage.storage.retry import RetryingTransaction
from stowage.workflow import RegisterCall, Response, Workflow, WorkflowRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Bulk DML never needs to touch the (always empty) identity map of our sessions
_BULK = {"synchronize_session": False}

# Instance ids per IN clause when promoting waits
_PROMOTION_CHUNK_SIZE = 1000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class SQLAlchemyStorage:
    """
    SQL-backed persistent queue for suspended workflows.

    Synchronous API (awaited by callers): insert, dequeue, restart, restart_all,
    startup, shutdown. Fire-and-forget API (handed to the Batcher): finish,
    notify, register_callback, error.

    Background work started by startup():
    - the queue state updater, promoting waiting workflows whose responses
      arrived or whose waits timed out
    - the stale response reaper, deleting responses nobody waits for
    """

    def __init__(
        self,
        engine: AsyncEngine,
        repository: WorkflowRepository,
        serializer: Serializer | None = None,
        settings: StowageSettings | None = None,
        statistics: RuntimeStatisticsCollector | None = None,
        dialect: DialectProtocol | None = None,
        batcher: Batcher | None = None,
    ):
        """
        Initialize SQLAlchemy storage.

        Args:
            engine: SQLAlchemy AsyncEngine instance
            repository: Registry used to resolve stored workflow names
            serializer: Workflow/response serializer (default: JSONSerializer)
            settings: Tuning parameters (default: StowageSettings())
            statistics: Collector for statement statistics
            dialect: Database-specific statements (default: derived from engine)
            batcher: Channel for fire-and-forget commands (default: own Batcher)
        """
        self.engine = engine
        self.repository = repository
        self.serializer = serializer or JSONSerializer()
        self.settings = settings or StowageSettings()
        self.dialect = dialect or dialect_for(engine)
        self.transaction = RetryingTransaction(
            engine,
            max_attempts=self.settings.retry_max_attempts,
            retry_delay=self.settings.retry_delay,
            max_delay=self.settings.retry_max_delay,
        )
        self.batcher = batcher or Batcher(
            self.transaction,
            capacity=self.settings.batcher_capacity,
            batch_size=self.settings.batcher_batch_size,
            retry_interval=self.settings.retry_max_delay,
        )

        collector = statistics or NullRuntimeStatisticsCollector()
        self._insert_stat = StmtStatistic("DBStorage.insert", collector)
        self._dequeue_stat = StmtStatistic("DBStorage.dequeue.fullquery", collector)
        self._queue_delete_stat = StmtStatistic("DBStorage.queue.delete", collector)
        self._update_state_stat = StmtStatistic("DBStorage.enqueue.updateState", collector)
        self._delete_stale_stat = StmtStatistic("DBStorage.deleteStaleResponses", collector)

        # Background tasks (created by startup())
        self._shutdown_event: asyncio.Event | None = None
        self._background_tasks: list[asyncio.Task[Any]] = []
        self._started = False
        self._shut_down = False

    async def initialize(self) -> None:
        """Create tables and indexes (idempotent)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        await self._initialize_schema_version()

    async def close(self) -> None:
        """Shut down background work and close database connections."""
        await self.shutdown()
        await self.engine.dispose()

    async def _initialize_schema_version(self) -> None:
        """Initialize schema version for a fresh database."""
        async with AsyncSession(self.engine) as session:
            result = await session.execute(select(func.count()).select_from(SchemaVersion))
            count = result.scalar()

            if count == 0:
                version = SchemaVersion(
                    version=CURRENT_SCHEMA_VERSION,
                    description="Initial schema with queue, waits and responses",
                )
                session.add(version)
                await session.commit()
                logger.info(f"Initialized schema version to {CURRENT_SCHEMA_VERSION}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """
        Recover from a possibly unclean shutdown and start background work.

        Runs one stale response sweep and crash recovery before anything else;
        only then are the batcher, the queue state updater and the reaper
        started.

        Raises:
            StartupError: If recovery fails (the storage must not be used then)
        """
        if self._started:
            return
        if self._shut_down:
            raise StorageError("Storage has already been shut down")

        try:
            await self.delete_stale_responses()
            await self.resume_broken_workflows()
        except Exception as e:
            raise StartupError("Unable to start up persistent storage") from e

        await self.batcher.start()

        shutdown_event = asyncio.Event()
        self._shutdown_event = shutdown_event
        self._background_tasks = [
            asyncio.create_task(
                self._update_queue_state_loop(shutdown_event), name="stowage-queue-updater"
            ),
            asyncio.create_task(
                self._delete_stale_responses_periodically(
                    shutdown_event, self.settings.delete_stale_responses_interval
                ),
                name="stowage-stale-response-reaper",
            ),
        ]
        self._started = True
        logger.info("Persistent storage started")

    async def shutdown(self) -> None:
        """
        Stop background work (idempotent).

        Background tasks finish their current iteration; commands already
        handed to the batcher are applied before it stops.
        """
        if self._shut_down:
            return
        self._shut_down = True

        if self._shutdown_event is not None:
            self._shutdown_event.set()

        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks = []

        await self.batcher.stop()
        logger.info("Persistent storage shut down")

    # -------------------------------------------------------------------------
    # Queue Engine
    # -------------------------------------------------------------------------

    async def insert(
        self,
        workflows: Workflow | Sequence[Workflow],
        session: AsyncSession | None = None,
    ) -> None:
        """
        Persist new workflows and make them ready for their processor pool.

        Args:
            workflows: One workflow or a batch of workflows
            session: Optional session of a transaction owned by the caller; the
                rows are then written as part of that transaction

        Raises:
            SerializationError: If a workflow cannot be serialized (nothing is written)
            RetryExhaustedError: If the transaction kept failing transiently
        """
        batch = [workflows] if isinstance(workflows, Workflow) else list(workflows)
        if not batch:
            return
        logger.debug(f"insert({len(batch)} workflow(s))")

        # Serialize everything before the first write
        rows = [(workflow, self.serializer.serialize_workflow(workflow)) for workflow in batch]

        if session is not None:
            await self._insert_rows(session, rows)
        else:
            await self.transaction.run(lambda s: self._insert_rows(s, rows), name="insert")

    async def _insert_rows(self, session: AsyncSession, rows: list[tuple[Workflow, str]]) -> None:
        now = _utcnow()
        for chunk in _chunks(rows, self.settings.insert_batch_size):
            with self._insert_stat.measure() as m:
                await session.execute(
                    insert(WorkflowInstance),
                    [
                        {
                            "id": workflow.id,
                            "state": ProcessingState.READY.value,
                            "priority": workflow.priority,
                            "processor_pool_id": workflow.processor_pool_id,
                            "data": data,
                            "creation_ts": workflow.creation_ts,
                            "last_mod_ts": now,
                        }
                        for workflow, data in chunk
                    ],
                )
                await session.execute(
                    insert(QueueEntry),
                    [
                        {
                            "workflow_instance_id": workflow.id,
                            "processor_pool_id": workflow.processor_pool_id,
                            "priority": workflow.priority,
                            "last_mod_ts": now,
                        }
                        for workflow, _ in chunk
                    ],
                )
                m.count = len(chunk)

    async def dequeue(self, pool_id: str, max_count: int) -> list[Workflow]:
        """
        Take up to max_count ready workflows of a processor pool.

        Workflows come back ordered by priority (highest first), then by age.
        Their queue entries are deleted in the same transaction, so a workflow
        returned here is never handed out again for the same entry. Concurrent
        callers receive disjoint sets and none of them comes back short while
        the pool still has entries. Workflows whose payload cannot be decoded
        are marked 'invalid' and left out.
        Responses (or timeout placeholders) for the workflow's waits are
        attached to each returned workflow.

        Raises:
            RetryExhaustedError: If the transaction kept failing transiently
        """
        logger.debug(f"dequeue({pool_id}, {max_count})")
        if max_count <= 0:
            return []

        start = time.perf_counter()
        workflows = await self.transaction.run(
            lambda s: self._dequeue(s, pool_id, max_count), name=f"dequeue({pool_id})"
        )
        logger.debug(
            f"dequeue for pool {pool_id} returns {len(workflows)} workflow(s) "
            f"in {(time.perf_counter() - start) * 1000:.1f} ms"
        )
        return workflows

    async def _dequeue(self, session: AsyncSession, pool_id: str, max_count: int) -> list[Workflow]:
        rows: list[Any] = []
        remaining = max_count
        while remaining > 0:
            with self._dequeue_stat.measure() as m:
                result = await session.execute(self.dialect.dequeue_query(pool_id, remaining))
                selected = result.all()
                m.count = len(selected)

            if not selected:
                break

            with self._queue_delete_stat.measure() as m:
                claimed = await self._claim_queue_entries(
                    session, [row.workflow_instance_id for row in selected]
                )
                m.count = len(claimed)

            rows.extend(row for row in selected if row.workflow_instance_id in claimed)
            if len(claimed) == len(selected):
                break

            # Some rows were taken by a concurrent dequeue. This transaction now
            # holds the write lock, so selecting again cannot race.
            remaining -= len(claimed)

        workflows: dict[str, Workflow] = {}
        invalid: list[str] = []
        for row in rows:
            instance_id = row.workflow_instance_id
            # Any decoding failure invalidates this workflow only
            try:
                workflow = self.serializer.deserialize_workflow(row.data, self.repository)
            except Exception:
                logger.exception(f"Decoding of workflow '{instance_id}' failed")
                invalid.append(instance_id)
                continue

            workflow.id = instance_id
            workflow.processor_pool_id = pool_id
            workflow.priority = row.priority
            workflow.creation_ts = _as_utc(row.creation_ts)
            workflows[instance_id] = workflow

        invalid.extend(await self._attach_responses(session, workflows))

        if invalid:
            await session.execute(
                update(WorkflowInstance)
                .where(WorkflowInstance.id.in_(invalid))
                .values(state=ProcessingState.INVALID.value, last_mod_ts=_utcnow()),
                execution_options=_BULK,
            )
            logger.warning(f"Marked {len(invalid)} workflow(s) invalid: {invalid}")

        return list(workflows.values())

    async def _claim_queue_entries(self, session: AsyncSession, instance_ids: list[str]) -> set[str]:
        """Delete the queue entries and return the ids whose entry this call removed."""
        stmt = delete(QueueEntry).where(QueueEntry.workflow_instance_id.in_(instance_ids))

        if self.engine.dialect.delete_returning:
            result = await session.execute(
                stmt.returning(QueueEntry.workflow_instance_id), execution_options=_BULK
            )
            return set(result.scalars().all())

        # Without RETURNING the row locks taken by the dequeue query guarantee ownership
        await session.execute(stmt, execution_options=_BULK)
        return set(instance_ids)

    async def _attach_responses(
        self, session: AsyncSession, workflows: dict[str, Workflow]
    ) -> list[str]:
        """
        Attach responses of the workflows' waits; return ids with undecodable responses.

        Waits without a stored response yield a timeout response.
        """
        broken: list[str] = []
        for chunk in _chunks(list(workflows), self.settings.response_batch_size):
            result = await session.execute(
                select(
                    WaitEntry.workflow_instance_id,
                    WaitEntry.correlation_id,
                    PendingResponse.data,
                )
                .outerjoin(
                    PendingResponse,
                    PendingResponse.correlation_id == WaitEntry.correlation_id,
                )
                .where(WaitEntry.workflow_instance_id.in_(chunk))
            )

            for instance_id, correlation_id, data in result.all():
                workflow = workflows.get(instance_id)
                if workflow is None:
                    continue

                if data is None:
                    response = Response.timeout_response(correlation_id)
                else:
                    try:
                        response = self.serializer.deserialize_response(data)
                    except Exception:
                        logger.exception(
                            f"Decoding of response '{correlation_id}' for workflow "
                            f"'{instance_id}' failed"
                        )
                        broken.append(instance_id)
                        del workflows[instance_id]
                        continue

                workflow.put_response(response)
                workflow.cid_list.append(correlation_id)

        return broken

    async def finish(self, workflow: Workflow) -> None:
        """
        Hand a completed workflow to the batcher for removal.

        With remove_when_finished=False the row is kept with state 'finished'.
        """
        logger.debug(f"finish({workflow.id})")
        await self.batcher.submit(
            RemoveCommand(
                instance_id=workflow.id,
                correlation_ids=list(workflow.cid_list),
                remove_when_finished=self.settings.remove_when_finished,
            )
        )

    async def notify(self, responses: Response | Sequence[Response]) -> None:
        """Hand one or more responses to the batcher for storage."""
        batch = [responses] if isinstance(responses, Response) else list(responses)
        for response in batch:
            logger.debug(f"notify({response.correlation_id})")
            await self.batcher.submit(
                NotifyCommand(
                    correlation_id=response.correlation_id,
                    data=self.serializer.serialize_response(response),
                )
            )

    async def register_callback(self, register_call: RegisterCall) -> None:
        """Hand a wait registration of a suspending workflow to the batcher."""
        workflow = register_call.workflow
        logger.debug(f"register_callback({workflow.id}, {register_call.correlation_ids})")
        await self.batcher.submit(
            RegisterCallbackCommand(
                instance_id=workflow.id,
                data=self.serializer.serialize_workflow(workflow),
                priority=workflow.priority,
                correlation_ids=list(register_call.correlation_ids),
                min_number_of_responses=register_call.min_number_of_responses,
                timeout_ts=register_call.timeout_ts,
                consumed_correlation_ids=list(workflow.cid_list),
            )
        )

    async def error(self, workflow: Workflow, exception: BaseException | str) -> None:
        """Hand a failed workflow to the batcher; it becomes restartable."""
        if isinstance(exception, BaseException):
            message = "".join(
                traceback.format_exception(type(exception), exception, exception.__traceback__)
            )
        else:
            message = exception
        logger.debug(f"error({workflow.id})")
        await self.batcher.submit(SetToErrorCommand(instance_id=workflow.id, error=message))

    async def restart(self, instance_id: str) -> bool:
        """
        Requeue a workflow in state 'error' or 'invalid'.

        The state update and the queue insert share the same restartable
        predicate. Restarting a workflow in any other state (including one that
        was just restarted) does nothing.

        Returns:
            True if the workflow was requeued, False if it was not restartable
        """
        logger.debug(f"restart({instance_id})")
        restartable = [state.value for state in RESTARTABLE_STATES]

        async def _restart(session: AsyncSession) -> bool:
            now = _utcnow()
            # The update takes the row lock, so concurrent restarts requeue once
            result = await session.execute(
                update(WorkflowInstance)
                .where(
                    WorkflowInstance.id == instance_id,
                    WorkflowInstance.state.in_(restartable),
                )
                .values(state=ProcessingState.READY.value, last_mod_ts=now, last_error=None),
                execution_options=_BULK,
            )
            if not result.rowcount:
                return False

            await session.execute(
                insert(QueueEntry).from_select(
                    ["processor_pool_id", "priority", "last_mod_ts", "workflow_instance_id"],
                    select(
                        WorkflowInstance.processor_pool_id,
                        WorkflowInstance.priority,
                        literal(now, DateTime(timezone=True)),
                        WorkflowInstance.id,
                    ).where(WorkflowInstance.id == instance_id),
                )
            )
            return True

        restarted = await self.transaction.run(_restart, name=f"restart({instance_id})")
        if restarted:
            logger.info(f"{instance_id} successfully queued for restart.")
        else:
            logger.debug(f"{instance_id} is not in a restartable state, restart ignored")
        return restarted

    async def restart_all(self) -> None:
        """Not supported: restart workflows one by one with restart()."""
        raise UnsupportedOperationError("restart_all() is not supported, use restart()")

    # -------------------------------------------------------------------------
    # Wait Reconciliation
    # -------------------------------------------------------------------------

    async def update_queue_state(self, max_rows: int | None = None) -> int:
        """
        Promote waiting workflows whose responses arrived or whose waits timed out.

        Each promoted workflow gets its waits flipped to 'promoted' and a queue
        entry, all in one transaction.

        Args:
            max_rows: Maximum number of workflows promoted (default: promotion_batch_size)

        Returns:
            Number of workflows promoted
        """
        if max_rows is None:
            max_rows = self.settings.promotion_batch_size
        if max_rows <= 0:
            return 0

        start = time.perf_counter()
        promoted = await self.transaction.run(
            lambda s: self._update_queue_state(s, max_rows), name="update_queue_state"
        )
        logger.debug(
            f"Queue update promoted {promoted} workflow(s) "
            f"in {(time.perf_counter() - start) * 1000:.1f} ms"
        )
        return promoted

    async def _update_queue_state(self, session: AsyncSession, max_rows: int) -> int:
        now = _utcnow()
        with self._update_state_stat.measure() as m:
            result = await session.execute(self.dialect.promotion_query(max_rows, now))
            candidates = result.all()

            entries = []
            for chunk in _chunks(candidates, _PROMOTION_CHUNK_SIZE):
                flipped = await self._promote_waits(session, [row.id for row in chunk])
                entries.extend(
                    {
                        "workflow_instance_id": row.id,
                        "processor_pool_id": row.processor_pool_id,
                        "priority": row.priority,
                        "last_mod_ts": now,
                    }
                    for row in chunk
                    if row.id in flipped
                )

            if entries:
                await session.execute(insert(QueueEntry), entries)
            m.count = len(entries)

        return len(entries)

    async def _promote_waits(self, session: AsyncSession, instance_ids: list[str]) -> set[str]:
        """Flip the 'waiting' waits of the instances to 'promoted'; return the flipped ids."""
        stmt = (
            update(WaitEntry)
            .where(
                WaitEntry.workflow_instance_id.in_(instance_ids),
                WaitEntry.state == WaitState.WAITING.value,
            )
            .values(state=WaitState.PROMOTED.value)
        )

        if self.engine.dialect.update_returning:
            # Another engine may have promoted some of these workflows in the meantime
            result = await session.execute(
                stmt.returning(WaitEntry.workflow_instance_id), execution_options=_BULK
            )
            return set(result.scalars().all())

        # Without RETURNING the instance row locks taken by the promotion query guarantee ownership
        await session.execute(stmt, execution_options=_BULK)
        return set(instance_ids)

    async def _update_queue_state_loop(self, shutdown: asyncio.Event) -> None:
        """
        Background task promoting waiting workflows until shutdown.

        A full batch is followed immediately by the next one; a partial batch
        pauses for partial_batch_sleep, an empty one for idle_sleep.
        """
        max_rows = self.settings.promotion_batch_size
        logger.info("Queue state updater started")
        while not shutdown.is_set():
            promoted = 0
            try:
                promoted = await self.update_queue_state(max_rows)
            except Exception:
                logger.exception("update_queue_state failed")

            if promoted == 0:
                await _wait_for_shutdown(shutdown, self.settings.idle_sleep)
            elif promoted < max_rows:
                await _wait_for_shutdown(shutdown, self.settings.partial_batch_sleep)
        logger.info("Queue state updater finished")

    # -------------------------------------------------------------------------
    # Stale Response Reaper
    # -------------------------------------------------------------------------

    async def delete_stale_responses(self) -> int:
        """
        Delete responses older than the retention horizon that no wait references.

        Deletes in batches of stale_delete_batch_size rows, one transaction per
        batch, until the backlog is drained.

        Returns:
            Total number of deleted responses
        """
        max_rows = self.settings.stale_delete_batch_size
        total = 0
        while True:
            deleted = await self.transaction.run(
                lambda s: self._delete_stale_batch(s, max_rows), name="delete_stale_responses"
            )
            total += deleted
            if deleted < max_rows:
                break

        if total:
            logger.info(f"Deleted {total} stale response(s)")
        return total

    async def _delete_stale_batch(self, session: AsyncSession, max_rows: int) -> int:
        horizon = _utcnow() - timedelta(seconds=self.settings.stale_response_retention)
        with self._delete_stale_stat.measure() as m:
            result = await session.execute(
                self.dialect.delete_stale_responses_stmt(max_rows, horizon),
                execution_options=_BULK,
            )
            m.count = result.rowcount or 0
        return m.count

    async def _delete_stale_responses_periodically(
        self, shutdown: asyncio.Event, interval: float
    ) -> None:
        """Background task running delete_stale_responses() with a fixed delay."""
        while not await _wait_for_shutdown(shutdown, interval):
            try:
                await self.delete_stale_responses()
            except Exception:
                logger.exception("delete_stale_responses failed")

    # -------------------------------------------------------------------------
    # Crash Recovery
    # -------------------------------------------------------------------------

    async def resume_broken_workflows(self) -> int:
        """
        Rebuild the queue after an unclean shutdown.

        Phase 1 (one transaction): clear the queue, requeue every 'ready'
        workflow and reset every 'promoted' wait to 'waiting'. Phase 2: run
        update_queue_state() until it promotes nothing.

        Returns:
            Number of workflows promoted in phase 2
        """
        logger.info("resume_broken_workflows")
        await self.transaction.run(self._rebuild_queue, name="rebuild_queue")

        logger.info("Adding all waiting workflows with existing response(s)...")
        total = 0
        while True:
            promoted = await self.update_queue_state(self.settings.recovery_batch_size)
            if promoted == 0:
                break
            total += promoted
        logger.info(f"done - promoted {total} workflow(s).")
        return total

    async def _rebuild_queue(self, session: AsyncSession) -> None:
        logger.info("Truncating queue...")
        await session.execute(delete(QueueEntry), execution_options=_BULK)

        logger.info("Adding all ready workflows to queue...")
        result = await session.execute(
            insert(QueueEntry).from_select(
                ["processor_pool_id", "priority", "last_mod_ts", "workflow_instance_id"],
                select(
                    WorkflowInstance.processor_pool_id,
                    WorkflowInstance.priority,
                    WorkflowInstance.last_mod_ts,
                    WorkflowInstance.id,
                ).where(WorkflowInstance.state == ProcessingState.READY.value),
            )
        )
        logger.info(f"done - queued {result.rowcount} workflow(s).")

        logger.info("Changing all promoted waits back to waiting...")
        result = await session.execute(
            update(WaitEntry)
            .where(WaitEntry.state == WaitState.PROMOTED.value)
            .values(state=WaitState.WAITING.value),
            execution_options=_BULK,
        )
        logger.info(f"done - changed {result.rowcount} wait(s).")

    # -------------------------------------------------------------------------
    # Read Methods
    # -------------------------------------------------------------------------

    async def get_instance(self, instance_id: str) -> dict[str, Any] | None:
        """Get workflow instance metadata (None if it does not exist)."""

        async def _get(session: AsyncSession) -> dict[str, Any] | None:
            result = await session.execute(
                select(WorkflowInstance).where(WorkflowInstance.id == instance_id)
            )
            instance = result.scalar_one_or_none()
            if instance is None:
                return None

            return {
                "id": instance.id,
                "state": instance.state,
                "priority": instance.priority,
                "processor_pool_id": instance.processor_pool_id,
                "data": instance.data,
                "creation_ts": _as_utc(instance.creation_ts).isoformat(),
                "last_mod_ts": _as_utc(instance.last_mod_ts).isoformat(),
                "last_error": instance.last_error,
            }

        return await self.transaction.run(_get, name="get_instance")

    async def get_queue_entries(self, pool_id: str | None = None) -> list[dict[str, Any]]:
        """List queue entries in dequeue order, optionally for one pool only."""

        async def _get(session: AsyncSession) -> list[dict[str, Any]]:
            stmt = select(QueueEntry).order_by(
                QueueEntry.priority.desc(), QueueEntry.last_mod_ts.asc()
            )
            if pool_id is not None:
                stmt = stmt.where(QueueEntry.processor_pool_id == pool_id)

            result = await session.execute(stmt)
            return [
                {
                    "workflow_instance_id": entry.workflow_instance_id,
                    "processor_pool_id": entry.processor_pool_id,
                    "priority": entry.priority,
                    "last_mod_ts": _as_utc(entry.last_mod_ts).isoformat(),
                }
                for entry in result.scalars().all()
            ]

        return await self.transaction.run(_get, name="get_queue_entries")

    async def get_wait_entries(self, instance_id: str | None = None) -> list[dict[str, Any]]:
        """List wait registrations, optionally for one workflow only."""

        async def _get(session: AsyncSession) -> list[dict[str, Any]]:
            stmt = select(WaitEntry).order_by(WaitEntry.correlation_id)
            if instance_id is not None:
                stmt = stmt.where(WaitEntry.workflow_instance_id == instance_id)

            result = await session.execute(stmt)
            return [
                {
                    "correlation_id": wait.correlation_id,
                    "workflow_instance_id": wait.workflow_instance_id,
                    "state": wait.state,
                    "min_number_of_responses": wait.min_number_of_responses,
                    "timeout_ts": _as_utc(wait.timeout_ts).isoformat() if wait.timeout_ts else None,
                }
                for wait in result.scalars().all()
            ]

        return await self.transaction.run(_get, name="get_wait_entries")

    async def count_responses(self) -> int:
        """Number of stored responses (claimed or not)."""

        async def _count(session: AsyncSession) -> int:
            result = await session.execute(select(func.count()).select_from(PendingResponse))
            return result.scalar() or 0

        return await self.transaction.run(_count, name="count_responses")


async def _wait_for_shutdown(shutdown: asyncio.Event, timeout: float) -> bool:
    """Sleep up to timeout seconds; return True as soon as shutdown is signaled."""
    try:
        await asyncio.wait_for(shutdown.wait(), timeout)
    except TimeoutError:
        return False
    return True
