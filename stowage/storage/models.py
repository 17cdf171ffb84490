"""
Database schema for Stowage.

This module defines the SQLAlchemy ORM models for workflow instances, the ready
queue, wait registrations and pending responses, plus the state enumerations
stored in them.
"""

from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import declarative_base

# Declarative base for ORM models
Base = declarative_base()


class ProcessingState(str, Enum):
    """Lifecycle state of a persisted workflow instance."""

    READY = "ready"
    WAITING = "waiting"
    FINISHED = "finished"
    INVALID = "invalid"
    ERROR = "error"


# States from which restart() may requeue an instance
RESTARTABLE_STATES = (ProcessingState.ERROR, ProcessingState.INVALID)


class WaitState(str, Enum):
    """State of a wait registration."""

    WAITING = "waiting"
    PROMOTED = "promoted"


def _in_check(column: str, enum: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum)
    return f"{column} IN ({values})"


# ============================================================================
# SQLAlchemy ORM Models
# ============================================================================


class SchemaVersion(Base):  # type: ignore[valid-type, misc]
    """Schema version tracking."""

    __tablename__ = "schema_version"

    version = Column(Integer, primary_key=True)
    applied_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    description = Column(Text, nullable=False)


class WorkflowInstance(Base):  # type: ignore[valid-type, misc]
    """Persisted (suspended or ready) workflow instance."""

    __tablename__ = "workflow_instances"

    id = Column(String(255), primary_key=True)
    state = Column(String(20), nullable=False, server_default=text("'ready'"))
    priority = Column(Integer, nullable=False)
    processor_pool_id = Column(String(255), nullable=False)
    data = Column(Text, nullable=False)  # serialized workflow
    creation_ts = Column(DateTime(timezone=True), nullable=False)
    last_mod_ts = Column(DateTime(timezone=True), nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(_in_check("state", ProcessingState), name="valid_instance_state"),
        Index("idx_instances_state", "state"),
        Index("idx_instances_pool", "processor_pool_id"),
    )


class QueueEntry(Base):  # type: ignore[valid-type, misc]
    """Ready-queue entry; at most one per instance."""

    __tablename__ = "workflow_queue"

    workflow_instance_id = Column(String(255), primary_key=True)
    processor_pool_id = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False)
    last_mod_ts = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        ForeignKeyConstraint(
            ["workflow_instance_id"],
            ["workflow_instances.id"],
            ondelete="CASCADE",
        ),
        Index("idx_queue_dequeue", "processor_pool_id", "priority", "last_mod_ts"),
    )


class WaitEntry(Base):  # type: ignore[valid-type, misc]
    """Outstanding asynchronous call a suspended instance is blocked on."""

    __tablename__ = "workflow_waits"

    correlation_id = Column(String(255), primary_key=True)
    workflow_instance_id = Column(String(255), nullable=False)
    state = Column(String(20), nullable=False, server_default=text("'waiting'"))
    min_number_of_responses = Column(Integer, nullable=False, server_default=text("1"))
    timeout_ts = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        ForeignKeyConstraint(
            ["workflow_instance_id"],
            ["workflow_instances.id"],
            ondelete="CASCADE",
        ),
        CheckConstraint(_in_check("state", WaitState), name="valid_wait_state"),
        Index("idx_waits_instance", "workflow_instance_id"),
        Index("idx_waits_state", "state", "timeout_ts"),
    )


class PendingResponse(Base):  # type: ignore[valid-type, misc]
    """Response delivered for a correlation id, possibly before its wait exists."""

    __tablename__ = "workflow_responses"

    correlation_id = Column(String(255), primary_key=True)
    data = Column(Text, nullable=True)  # serialized response
    response_ts = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_responses_ts", "response_ts"),)


# Current schema version
CURRENT_SCHEMA_VERSION = 1
