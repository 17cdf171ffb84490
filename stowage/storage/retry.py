"""
Transactional retry wrapper.

Every storage operation runs its statements through RetryingTransaction: a fresh
session and transaction per attempt, commit on success, rollback on failure and
a bounded number of retries with exponential backoff for transient errors
(lost connections, deadlocks, serialization conflicts, lock wait timeouts).
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from stowage.exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes of transient failures
# 40001 serialization_failure, 40P01 deadlock_detected, 55P03 lock_not_available,
# 57P01 admin_shutdown, 08xxx connection exceptions
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57P01", "08000", "08003", "08006"})

# MySQL error codes of transient failures
# 1205 lock wait timeout, 1213 deadlock, 2006 server gone away, 2013 lost connection
RETRYABLE_MYSQL_ERRORS = frozenset({1205, 1213, 2006, 2013})


def is_retryable(exc: BaseException) -> bool:
    """
    Classify a database error as transient (worth retrying) or not.

    Args:
        exc: Exception raised while executing a transaction

    Returns:
        True for lost connections, deadlocks, serialization conflicts and lock
        timeouts; False for everything else (constraint violations, bad SQL,
        application errors).
    """
    if not isinstance(exc, DBAPIError):
        return False

    if exc.connection_invalidated:
        return True

    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True

    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int) and args[0] in RETRYABLE_MYSQL_ERRORS:
        return True

    # SQLite reports lock contention as an OperationalError without a code
    if isinstance(exc, OperationalError):
        message = str(orig).lower()
        if "database is locked" in message or "database table is locked" in message:
            return True

    return False


class RetryingTransaction:
    """
    Runs a unit of work inside a database transaction, retrying transient failures.

    The unit of work receives the session and may be executed several times, so
    it must build its result from scratch on each call.

    Example:
        >>> tx = RetryingTransaction(engine, max_attempts=5)
        >>> count = await tx.run(lambda session: count_rows(session), name="count")
    """

    def __init__(
        self,
        engine: AsyncEngine,
        max_attempts: int = 5,
        retry_delay: float = 0.1,
        max_delay: float = 5.0,
    ):
        """
        Initialize the retry wrapper.

        Args:
            engine: SQLAlchemy AsyncEngine instance
            max_attempts: Total attempts (including the first) for retryable errors
            retry_delay: Initial backoff in seconds (doubled after every attempt)
            max_delay: Upper bound for the backoff in seconds
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.engine = engine
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.max_delay = max_delay

    async def run(
        self,
        work: Callable[[AsyncSession], Awaitable[T]],
        name: str = "transaction",
    ) -> T:
        """
        Execute work(session) in a transaction and return its result.

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
            Exception: Any non-retryable error raised by the work or the commit
        """
        attempt = 0
        delay = self.retry_delay
        while True:
            attempt += 1
            try:
                async with AsyncSession(self.engine, expire_on_commit=False) as session:
                    async with session.begin():
                        return await work(session)
            except Exception as e:
                if not is_retryable(e):
                    raise

                if attempt >= self.max_attempts:
                    logger.error(f"{name} failed after {attempt} attempt(s): {e}")
                    raise RetryExhaustedError(name, attempt) from e

                # Backoff with jitter
                actual_delay = delay * (0.5 + random.random())
                logger.warning(
                    f"{name} failed with a transient error: {e}. "
                    f"Retrying in {actual_delay:.2f}s (attempt {attempt}/{self.max_attempts})"
                )
                await asyncio.sleep(actual_delay)
                delay = min(delay * 2, self.max_delay)
