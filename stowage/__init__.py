"""
Stowage - SQL-backed persistent queue for long-running workflows.

Example:
    >>> import asyncio
    >>> from stowage import StowageSettings, Workflow, WorkflowRepository, create_storage
    >>>
    >>> repository = WorkflowRepository()
    >>>
    >>> @repository.register
    ... class OrderWorkflow(Workflow):
    ...     pass
    >>>
    >>> async def main():
    ...     storage = create_storage(StowageSettings(db_url="sqlite:///orders.db"), repository)
    ...     await storage.initialize()
    ...     await storage.startup()
    ...     await storage.insert(OrderWorkflow({"order_id": "order-123"}))
    ...     workflows = await storage.dequeue("default", 10)
    ...     await storage.close()
"""

from stowage.app import create_storage
from stowage.config import StowageSettings
from stowage.exceptions import (
    BatcherFullError,
    DecodingError,
    RetryExhaustedError,
    SerializationError,
    StartupError,
    StorageError,
    StowageError,
    UnsupportedOperationError,
)
from stowage.serialization import JSONSerializer, Serializer
from stowage.statistics import (
    LoggingStatisticsCollector,
    NullRuntimeStatisticsCollector,
    RuntimeStatisticsCollector,
)
from stowage.storage import ProcessingState, SQLAlchemyStorage, StorageProtocol, WaitState
from stowage.workflow import RegisterCall, Response, WaitMode, Workflow, WorkflowRepository

__version__ = "0.1.0"

__all__ = [
    "create_storage",
    "StowageSettings",
    "SQLAlchemyStorage",
    "StorageProtocol",
    "ProcessingState",
    "WaitState",
    "Workflow",
    "WorkflowRepository",
    "Response",
    "RegisterCall",
    "WaitMode",
    "Serializer",
    "JSONSerializer",
    "RuntimeStatisticsCollector",
    "NullRuntimeStatisticsCollector",
    "LoggingStatisticsCollector",
    "StowageError",
    "StorageError",
    "RetryExhaustedError",
    "StartupError",
    "SerializationError",
    "DecodingError",
    "UnsupportedOperationError",
    "BatcherFullError",
]
