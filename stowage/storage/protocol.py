"""
Storage protocol definition for Stowage.

This module defines the StorageProtocol using Python's structural typing (Protocol).
A workflow engine talks to its persistent storage only through these methods, so
any implementation that conforms to this protocol can be plugged in.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from stowage.workflow import RegisterCall, Response, Workflow


@runtime_checkable
class StorageProtocol(Protocol):
    """
    Protocol for persistent workflow storage implementations.

    Methods fall into two groups. insert(), dequeue(), restart() and
    restart_all() complete before they return. finish(), notify(),
    register_callback() and error() only hand work to a background channel;
    their effect becomes visible later.
    """

    async def initialize(self) -> None:
        """
        Initialize storage (create tables, connections, etc.).

        This method should be idempotent - calling it multiple times
        should not cause errors.
        """
        ...

    async def close(self) -> None:
        """
        Close storage connections and cleanup resources.

        This method should be called when shutting down the application.
        """
        ...

    # -------------------------------------------------------------------------
    # Lifecycle Methods
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """
        Recover from an unclean shutdown and start background work.

        Must be called before the first dequeue(). Calling it again is a no-op.

        Raises:
            StartupError: If recovery failed
        """
        ...

    async def shutdown(self) -> None:
        """
        Stop background work after pending commands were applied.

        Calling it again is a no-op.
        """
        ...

    # -------------------------------------------------------------------------
    # Queue Methods
    # -------------------------------------------------------------------------

    async def insert(
        self,
        workflows: "Workflow | Sequence[Workflow]",
        session: "AsyncSession | None" = None,
    ) -> None:
        """
        Persist new workflows with state 'ready' and queue them.

        Args:
            workflows: One workflow or a batch of workflows
            session: Optional caller-owned session; the rows then become part
                of the caller's transaction
        """
        ...

    async def dequeue(self, pool_id: str, max_count: int) -> "list[Workflow]":
        """
        Take up to max_count ready workflows of a processor pool.

        Returned workflows are ordered by priority (highest first), then by
        age, and carry the responses delivered for their waits.
        """
        ...

    async def restart(self, instance_id: str) -> bool:
        """
        Requeue a workflow in state 'error' or 'invalid'.

        Returns:
            True if the workflow was requeued
        """
        ...

    async def restart_all(self) -> None:
        """
        Requeue every failed workflow.

        Raises:
            UnsupportedOperationError: Always, for the SQL storage
        """
        ...

    # -------------------------------------------------------------------------
    # Deferred Methods (applied by the batcher)
    # -------------------------------------------------------------------------

    async def finish(self, workflow: "Workflow") -> None:
        """Remove (or retain as 'finished') a completed workflow."""
        ...

    async def notify(self, responses: "Response | Sequence[Response]") -> None:
        """Store responses; the first response per correlation id wins."""
        ...

    async def register_callback(self, register_call: "RegisterCall") -> None:
        """Suspend a workflow until the responses it waits for arrive."""
        ...

    async def error(self, workflow: "Workflow", exception: BaseException | str) -> None:
        """Mark a workflow as failed so that it can be restarted."""
        ...
