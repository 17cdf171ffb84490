"""
Batched, fire-and-forget command channel.

The Batcher owns a bounded asyncio.Queue and one worker task. Producers submit
BatchCommands and return immediately (or wait for space when the channel is
full); the worker applies queued commands in batches, one retried transaction
per batch.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from stowage.exceptions import BatcherFullError, RetryExhaustedError
from stowage.storage.commands import BatchCommand
from stowage.storage.retry import RetryingTransaction

logger = logging.getLogger(__name__)


class Batcher:
    """
    Applies submitted commands asynchronously and in batches.

    Commands are applied at least once. Transient database failures never drop
    a command: its transaction is started over until the database is reachable
    again. A batch failing for any other reason is retried command by command,
    and only commands that still fail on their own are dropped (and logged).
    """

    def __init__(
        self,
        transaction: RetryingTransaction,
        capacity: int = 10000,
        batch_size: int = 100,
        retry_interval: float = 1.0,
        max_retry_interval: float = 30.0,
    ):
        """
        Initialize the batcher.

        Args:
            transaction: Retry wrapper used to apply the commands
            capacity: Maximum number of queued commands before submit() blocks
            batch_size: Maximum number of commands applied per transaction
            retry_interval: Pause before starting over a transaction whose retries ran out
            max_retry_interval: Upper bound for that pause (doubled after every failure)
        """
        self.transaction = transaction
        self.capacity = capacity
        self.batch_size = batch_size
        self.retry_interval = retry_interval
        self.max_retry_interval = max_retry_interval
        self._queue: asyncio.Queue[BatchCommand] = asyncio.Queue(maxsize=capacity)
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None

    def pending(self) -> int:
        """Number of submitted commands not yet applied."""
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the worker task (no-op if already running)."""
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run(), name="stowage-batcher")
        logger.info("Batcher started")

    async def stop(self) -> None:
        """Apply everything already submitted, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("Batcher stopped")

    async def submit(self, command: BatchCommand) -> None:
        """Queue a command, waiting for space if the channel is full."""
        await self._queue.put(command)

    def submit_nowait(self, command: BatchCommand) -> None:
        """
        Queue a command without waiting.

        Raises:
            BatcherFullError: If the channel already holds `capacity` commands
        """
        try:
            self._queue.put_nowait(command)
        except asyncio.QueueFull:
            raise BatcherFullError(
                f"Batcher is full ({self.capacity} pending command(s))"
            ) from None

    async def flush(self) -> None:
        """Wait until every command submitted so far has been applied."""
        if self._worker is None and not self._queue.empty():
            raise RuntimeError("Batcher is not running")
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self.batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break

            try:
                await self._apply(batch)
            finally:
                for _ in batch:
                    self._queue.task_done()

    async def _apply(self, batch: list[BatchCommand]) -> None:
        async def apply_all(session):  # type: ignore[no-untyped-def]
            for command in batch:
                await command.execute(session)

        try:
            await self._apply_until_done(apply_all, name=f"batch of {len(batch)} command(s)")
            logger.debug(f"Applied batch of {len(batch)} command(s)")
            return
        except Exception:
            if len(batch) == 1:
                logger.exception(f"Dropping command {batch[0]!r}")
                return
            logger.exception(
                f"Batch of {len(batch)} command(s) failed, applying commands one by one"
            )

        for command in batch:
            try:
                await self._apply_until_done(command.execute, name=type(command).__name__)
            except Exception:
                logger.exception(f"Dropping command {command!r}")

    async def _apply_until_done(
        self, work: Callable[[AsyncSession], Awaitable[None]], name: str
    ) -> None:
        """
        Run work in a retried transaction until it succeeds or fails for good.

        A transaction whose retries ran out on transient errors is started over
        after retry_interval seconds, doubling the pause up to max_retry_interval;
        non-retryable errors are raised.
        """
        delay = self.retry_interval
        while True:
            try:
                await self.transaction.run(work, name=name)
                return
            except RetryExhaustedError as e:
                logger.warning(
                    f"{name} still failing ({e.__cause__}), trying again in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_retry_interval)
