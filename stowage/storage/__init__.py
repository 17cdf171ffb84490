"""Storage layer for Stowage."""

from stowage.storage.dialects import (
    DialectProtocol,
    MySQLDialect,
    PostgreSQLDialect,
    SQLiteDialect,
    dialect_for,
)
from stowage.storage.models import ProcessingState, WaitState
from stowage.storage.protocol import StorageProtocol
from stowage.storage.retry import RetryingTransaction, is_retryable
from stowage.storage.sqlalchemy_storage import SQLAlchemyStorage

__all__ = [
    "DialectProtocol",
    "MySQLDialect",
    "PostgreSQLDialect",
    "ProcessingState",
    "RetryingTransaction",
    "SQLAlchemyStorage",
    "SQLiteDialect",
    "StorageProtocol",
    "WaitState",
    "dialect_for",
    "is_retryable",
]
