"""
Workflow objects handled by the persistent storage.

The storage never interprets workflow logic. It only needs to know a workflow's
identity, scheduling attributes and the opaque state that gets serialized, plus
the responses that were delivered to it while it was suspended.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

DEFAULT_PROCESSOR_POOL = "default"
DEFAULT_PRIORITY = 5


@dataclass(frozen=True)
class Response:
    """
    Response to an asynchronous call a workflow is waiting for.

    Attributes:
        correlation_id: Key matching the response to its wait registration
        data: Response payload (JSON-compatible)
        exception: Error description if the call failed
        timeout: True if no response arrived before the wait timed out
    """

    correlation_id: str
    data: Any = None
    exception: str | None = None
    timeout: bool = False

    @classmethod
    def timeout_response(cls, correlation_id: str) -> "Response":
        """Create the placeholder response used when a wait timed out."""
        return cls(correlation_id=correlation_id, timeout=True)


class WaitMode(str, Enum):
    """How many of the registered responses are needed to resume a workflow."""

    ALL = "all"
    FIRST = "first"


class Workflow:
    """
    Base class for persistent workflows.

    Subclasses carry their state in ``data`` (a JSON-compatible dict) and are
    looked up by ``workflow_name`` in a WorkflowRepository when they are loaded
    from the database.

    Example:
        >>> repository = WorkflowRepository()
        >>> @repository.register
        ... class OrderWorkflow(Workflow):
        ...     pass
        >>> wf = OrderWorkflow({"order_id": "order-123"}, priority=7)
    """

    workflow_name: str = ""

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if not cls.__dict__.get("workflow_name"):
            cls.workflow_name = cls.__name__

    def __init__(
        self,
        data: dict[str, Any] | None = None,
        *,
        id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        processor_pool_id: str = DEFAULT_PROCESSOR_POOL,
        creation_ts: datetime | None = None,
    ):
        self.id = id or uuid.uuid4().hex
        self.data: dict[str, Any] = data if data is not None else {}
        self.priority = priority
        self.processor_pool_id = processor_pool_id
        self.creation_ts = creation_ts or datetime.now(UTC)

        # Responses attached by dequeue (correlation_id -> Response)
        self.responses: dict[str, Response] = {}

        # Correlation ids consumed by the current activation
        self.cid_list: list[str] = []

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> "Workflow":
        """Recreate a workflow from the state returned by get_state()."""
        return cls(dict(state))

    def get_state(self) -> dict[str, Any]:
        """Return the state that is persisted for this workflow."""
        return self.data

    def put_response(self, response: Response) -> None:
        self.responses[response.correlation_id] = response

    def get_response(self, correlation_id: str) -> Response | None:
        return self.responses.get(correlation_id)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(id={self.id!r}, pool={self.processor_pool_id!r}, "
            f"priority={self.priority})"
        )


@dataclass
class RegisterCall:
    """
    Wait registration for a workflow that suspends until responses arrive.

    Attributes:
        workflow: The suspending workflow (its current state is persisted)
        correlation_ids: Correlation ids of the awaited responses
        wait_mode: Resume when ALL or the FIRST of the responses arrived
        timeout: Resume anyway after this delay (None = wait forever)
    """

    workflow: Workflow
    correlation_ids: list[str]
    wait_mode: WaitMode = WaitMode.ALL
    timeout: timedelta | None = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.correlation_ids:
            raise ValueError("RegisterCall needs at least one correlation id")

    @property
    def min_number_of_responses(self) -> int:
        if self.wait_mode == WaitMode.FIRST:
            return 1
        return len(self.correlation_ids)

    @property
    def timeout_ts(self) -> datetime | None:
        if self.timeout is None:
            return None
        return self.registered_at + self.timeout


W = TypeVar("W", bound=type[Workflow])


class WorkflowRepository:
    """Registry resolving stored workflow names to workflow classes."""

    def __init__(self) -> None:
        self._workflows: dict[str, type[Workflow]] = {}

    def register(self, workflow_class: W) -> W:
        """Register a workflow class (usable as a class decorator)."""
        name = workflow_class.workflow_name
        existing = self._workflows.get(name)
        if existing is not None and existing is not workflow_class:
            raise ValueError(f"Workflow name '{name}' is already registered")
        self._workflows[name] = workflow_class
        return workflow_class

    def resolve(self, workflow_name: str) -> type[Workflow]:
        """
        Look up a workflow class by name.

        Raises:
            KeyError: If no workflow is registered under that name
        """
        return self._workflows[workflow_name]

    def __contains__(self, workflow_name: object) -> bool:
        return workflow_name in self._workflows

    def names(self) -> list[str]:
        return sorted(self._workflows)
