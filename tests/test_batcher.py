"""
Tests for the batched command channel and the commands it applies.
"""

import asyncio
from datetime import UTC, datetime

import pytest
from sqlalchemy.exc import OperationalError

from stowage.exceptions import BatcherFullError
from stowage.storage.batcher import Batcher
from stowage.storage.commands import NotifyCommand, RegisterCallbackCommand
from stowage.storage.models import ProcessingState
from stowage.storage.retry import RetryingTransaction


class FailingCommand:
    """Command that can never be applied."""

    async def execute(self, session):
        raise ValueError("cannot apply")


class UnreachableDatabaseCommand:
    """Wraps a command; the first `failures` attempts see a locked database."""

    def __init__(self, command, failures: int):
        self.command = command
        self.failures = failures
        self.attempts = 0

    async def execute(self, session):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise OperationalError(
                "INSERT INTO workflow_responses", {}, Exception("database is locked")
            )
        await self.command.execute(session)


def make_batcher(storage, **kwargs) -> Batcher:
    return Batcher(RetryingTransaction(storage.engine, retry_delay=0), **kwargs)


class TestBatcher:
    """Tests for Batcher."""

    @pytest.mark.asyncio
    async def test_submitted_commands_are_applied(self, sqlite_storage):
        batcher = make_batcher(sqlite_storage)
        await batcher.start()

        for i in range(5):
            await batcher.submit(NotifyCommand(f"cid-{i}", None))
        await batcher.flush()

        assert batcher.pending() == 0
        assert await sqlite_storage.count_responses() == 5
        await batcher.stop()

    @pytest.mark.asyncio
    async def test_submit_nowait_raises_when_full(self, sqlite_storage):
        batcher = make_batcher(sqlite_storage, capacity=2)

        batcher.submit_nowait(NotifyCommand("cid-1", None))
        batcher.submit_nowait(NotifyCommand("cid-2", None))
        with pytest.raises(BatcherFullError):
            batcher.submit_nowait(NotifyCommand("cid-3", None))

        assert batcher.pending() == 2

    @pytest.mark.asyncio
    async def test_submit_waits_for_space(self, sqlite_storage):
        batcher = make_batcher(sqlite_storage, capacity=1)
        batcher.submit_nowait(NotifyCommand("cid-1", None))

        blocked = asyncio.create_task(batcher.submit(NotifyCommand("cid-2", None)))
        await asyncio.sleep(0.01)
        assert not blocked.done()

        await batcher.start()
        await blocked
        await batcher.stop()

        assert await sqlite_storage.count_responses() == 2

    @pytest.mark.asyncio
    async def test_flush_requires_running_worker(self, sqlite_storage):
        batcher = make_batcher(sqlite_storage)
        batcher.submit_nowait(NotifyCommand("cid-1", None))

        with pytest.raises(RuntimeError):
            await batcher.flush()

    @pytest.mark.asyncio
    async def test_stop_applies_pending_commands(self, sqlite_storage):
        batcher = make_batcher(sqlite_storage)
        await batcher.start()
        for i in range(3):
            await batcher.submit(NotifyCommand(f"cid-{i}", None))

        await batcher.stop()

        assert not batcher.running
        assert await sqlite_storage.count_responses() == 3

    @pytest.mark.asyncio
    async def test_failing_command_does_not_drop_its_batch(self, sqlite_storage):
        batcher = make_batcher(sqlite_storage, batch_size=10)

        # Queued before the worker starts, so all three land in one batch
        batcher.submit_nowait(NotifyCommand("cid-1", None))
        batcher.submit_nowait(FailingCommand())
        batcher.submit_nowait(NotifyCommand("cid-2", None))
        await batcher.start()
        await batcher.flush()
        await batcher.stop()

        assert await sqlite_storage.count_responses() == 2

    @pytest.mark.asyncio
    async def test_command_survives_outage_longer_than_retries(self, sqlite_storage):
        batcher = Batcher(
            RetryingTransaction(sqlite_storage.engine, max_attempts=2, retry_delay=0),
            retry_interval=0.01,
            max_retry_interval=0.02,
        )
        command = UnreachableDatabaseCommand(NotifyCommand("cid-1", None), failures=7)
        await batcher.start()

        await batcher.submit(command)
        await batcher.flush()
        await batcher.stop()

        assert command.attempts == 8
        assert await sqlite_storage.count_responses() == 1

    @pytest.mark.asyncio
    async def test_batch_survives_outage(self, sqlite_storage):
        batcher = Batcher(
            RetryingTransaction(sqlite_storage.engine, max_attempts=1, retry_delay=0),
            batch_size=10,
            retry_interval=0.01,
            max_retry_interval=0.01,
        )
        batcher.submit_nowait(NotifyCommand("cid-1", None))
        batcher.submit_nowait(UnreachableDatabaseCommand(NotifyCommand("cid-2", None), failures=3))
        batcher.submit_nowait(NotifyCommand("cid-3", None))
        await batcher.start()
        await batcher.flush()
        await batcher.stop()

        assert await sqlite_storage.count_responses() == 3


class TestCommands:
    """Commands may be applied more than once."""

    @pytest.mark.asyncio
    async def test_notify_command_keeps_first_response(self, sqlite_storage):
        await sqlite_storage.transaction.run(NotifyCommand("cid-1", '{"data": 1}').execute)
        await sqlite_storage.transaction.run(NotifyCommand("cid-1", '{"data": 2}').execute)

        assert await sqlite_storage.count_responses() == 1

    @pytest.mark.asyncio
    async def test_register_callback_command_is_idempotent(self, sqlite_storage, make_workflow):
        wf = make_workflow()
        await sqlite_storage.insert(wf)
        await sqlite_storage.dequeue("default", 1)

        command = RegisterCallbackCommand(
            instance_id=wf.id,
            data=sqlite_storage.serializer.serialize_workflow(wf),
            priority=wf.priority,
            correlation_ids=["cid-1", "cid-2"],
            min_number_of_responses=2,
            timeout_ts=datetime.now(UTC),
        )
        await sqlite_storage.transaction.run(command.execute)
        await sqlite_storage.transaction.run(command.execute)

        waits = await sqlite_storage.get_wait_entries(wf.id)
        assert [w["correlation_id"] for w in waits] == ["cid-1", "cid-2"]
        instance = await sqlite_storage.get_instance(wf.id)
        assert instance["state"] == ProcessingState.WAITING.value
