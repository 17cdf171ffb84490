"""
Commands applied asynchronously by the Batcher.

finish(), notify(), register_callback() and error() do not write to the
database themselves; they hand one of these commands to the Batcher, which
executes it later inside a retried transaction. Commands must tolerate being
applied more than once.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stowage.storage.models import (
    PendingResponse,
    ProcessingState,
    QueueEntry,
    WaitEntry,
    WaitState,
    WorkflowInstance,
)


@runtime_checkable
class BatchCommand(Protocol):
    """A unit of deferred work executed on a session owned by the Batcher."""

    async def execute(self, session: AsyncSession) -> None: ...


async def _delete_consumed(
    session: AsyncSession, instance_id: str, correlation_ids: list[str]
) -> None:
    # Responses handed to the workflow by dequeue() are consumed together with their waits
    if correlation_ids:
        await session.execute(
            delete(PendingResponse).where(PendingResponse.correlation_id.in_(correlation_ids))
        )
    await session.execute(delete(WaitEntry).where(WaitEntry.workflow_instance_id == instance_id))


@dataclass
class RemoveCommand:
    """Remove (or retain as finished) a workflow that completed."""

    instance_id: str
    correlation_ids: list[str] = field(default_factory=list)
    remove_when_finished: bool = True

    async def execute(self, session: AsyncSession) -> None:
        await _delete_consumed(session, self.instance_id, self.correlation_ids)
        await session.execute(
            delete(QueueEntry).where(QueueEntry.workflow_instance_id == self.instance_id)
        )
        if self.remove_when_finished:
            await session.execute(
                delete(WorkflowInstance).where(WorkflowInstance.id == self.instance_id)
            )
        else:
            await session.execute(
                update(WorkflowInstance)
                .where(WorkflowInstance.id == self.instance_id)
                .values(state=ProcessingState.FINISHED.value, last_mod_ts=datetime.now(UTC))
            )


@dataclass
class NotifyCommand:
    """Record a response for a correlation id (first delivery wins)."""

    correlation_id: str
    data: str | None
    response_ts: datetime = field(default_factory=lambda: datetime.now(UTC))

    async def execute(self, session: AsyncSession) -> None:
        result = await session.execute(
            select(PendingResponse.correlation_id).where(
                PendingResponse.correlation_id == self.correlation_id
            )
        )
        if result.scalar_one_or_none() is not None:
            return

        await session.execute(
            insert(PendingResponse).values(
                correlation_id=self.correlation_id,
                data=self.data,
                response_ts=self.response_ts,
            )
        )


@dataclass
class RegisterCallbackCommand:
    """
    Suspend a workflow until responses for its correlation ids arrive.

    The instance row gets the new serialized state and state 'waiting'; the
    waits of the previous activation and the responses it consumed are dropped.
    """

    instance_id: str
    data: str
    priority: int
    correlation_ids: list[str]
    min_number_of_responses: int
    timeout_ts: datetime | None = None
    consumed_correlation_ids: list[str] = field(default_factory=list)

    async def execute(self, session: AsyncSession) -> None:
        await _delete_consumed(session, self.instance_id, self.consumed_correlation_ids)
        await session.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == self.instance_id)
            .values(
                state=ProcessingState.WAITING.value,
                data=self.data,
                priority=self.priority,
                last_mod_ts=datetime.now(UTC),
            )
        )
        await session.execute(
            insert(WaitEntry),
            [
                {
                    "correlation_id": correlation_id,
                    "workflow_instance_id": self.instance_id,
                    "state": WaitState.WAITING.value,
                    "min_number_of_responses": self.min_number_of_responses,
                    "timeout_ts": self.timeout_ts,
                }
                for correlation_id in self.correlation_ids
            ],
        )


@dataclass
class SetToErrorCommand:
    """Mark a workflow as failed so that it can be restarted later."""

    instance_id: str
    error: str

    async def execute(self, session: AsyncSession) -> None:
        await session.execute(
            delete(QueueEntry).where(QueueEntry.workflow_instance_id == self.instance_id)
        )
        await session.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == self.instance_id)
            .values(
                state=ProcessingState.ERROR.value,
                last_error=self.error,
                last_mod_ts=datetime.now(UTC),
            )
        )
