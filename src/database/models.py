"""
Database models for the analysis worker.

Two tables back the service:
- ``results``: the client-visible status record of one submitted simulation
- ``queued_tasks``: the durable task queue the worker consumes

Column types are portable so the same models run on PostgreSQL in production
and on SQLite for local runs and tests.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Enum,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    event,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""


class ResultStatus(str, enum.Enum):
    """Lifecycle of a status record.

    Attributes:
        PENDING: Created, waiting for the worker
        PROCESSING: Picked up by the worker (start_time set)
        FAILED: Terminal, the pipeline did not complete (end_time set)
        SUCCESS: Terminal, results were published (end_time set)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    SUCCESS = "success"

    @property
    def is_terminal(self) -> bool:
        return self in (ResultStatus.FAILED, ResultStatus.SUCCESS)


class TaskState(str, enum.Enum):
    """Broker-side state of a queued task."""

    PENDING = "pending"
    ACTIVE = "active"
    RETRY = "retry"
    COMPLETED = "completed"
    DEAD = "dead"


class AnalysisResult(Base):
    """
    Status record of one simulation analysis.

    One row per simulation_id. The worker only ever moves it forward:
    pending -> processing -> failed | success.
    """
    __tablename__ = "results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    simulation_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    org_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[ResultStatus] = mapped_column(
        Enum(
            ResultStatus,
            name="result_status_enum",
            values_callable=lambda e: [member.value for member in e],
            validate_strings=True,
        ),
        nullable=False,
        default=ResultStatus.PENDING,
    )
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_results_org_name", "org_name"),
        Index("ix_results_status", "status"),
        Index("ix_results_created_at", "created_at"),
    )

    def to_dict(self) -> dict:
        """Serializable view returned to clients."""
        return {
            "id": self.id,
            "simulation_id": self.simulation_id,
            "task_id": self.task_id or "",
            "org_name": self.org_name,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (f"<AnalysisResult(id={self.id}, simulation_id={self.simulation_id}, "
                f"status={self.status})>")


class QueuedTask(Base):
    """
    A task persisted in the durable queue.

    ``payload`` is opaque to the broker. ``deadline`` and ``lease_id`` are
    only meaningful while the task is active: they mark when the current
    lease expires and which delivery holds it.
    """
    __tablename__ = "queued_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_type: Mapped[str] = mapped_column(String(255), nullable=False)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    state: Mapped[TaskState] = mapped_column(
        Enum(
            TaskState,
            name="task_state_enum",
            values_callable=lambda e: [member.value for member in e],
            validate_strings=True,
        ),
        nullable=False,
        default=TaskState.PENDING,
    )
    retried: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retry: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    process_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_queued_tasks_ready", "queue", "state", "process_at"),
        Index("ix_queued_tasks_deadline", "state", "deadline"),
    )

    def __repr__(self) -> str:
        return (f"<QueuedTask(id={self.id}, type={self.task_type}, queue={self.queue}, "
                f"state={self.state})>")


@event.listens_for(AnalysisResult, "before_update")
def receive_before_update_result(_mapper, _connection, target):
    """Update the updated_at timestamp before updating a status record."""
    target.updated_at = utcnow()


@event.listens_for(QueuedTask, "before_update")
def receive_before_update_task(_mapper, _connection, target):
    """Update the updated_at timestamp before updating a queued task."""
    target.updated_at = utcnow()
