"""Durable task queue backed by the application database.

Tasks are rows in ``queued_tasks``. Delivery is at-least-once: a delivery
holds a lease (``deadline``) and a task whose lease expires without an
acknowledgement is failed and, retries permitting, delivered again.

State transitions:

    pending --dequeue--> active --ack--> completed
    retry   --dequeue--> active --fail--> retry (retries left) | dead
"""

import logging
import uuid
from datetime import timedelta
from typing import Collection

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.database.db import DatabaseError, get_session, retry_on_transient_error
from src.database.models import QueuedTask, TaskState, utcnow
from src.tasks.payloads import TYPE_BLOODHOUND_ANALYSIS, AnalysisTaskPayload, TaskInfo
from src.utils.config import get_settings

logger = logging.getLogger(__name__)

READY_STATES = (TaskState.PENDING, TaskState.RETRY)


class BrokerUnavailable(Exception):
    """The queue could not durably accept a task; nothing was enqueued."""


class SkipRetry(Exception):
    """Raised by a handler to fail a task without further redelivery."""


class TaskNotFoundError(Exception):
    """No queued task with the given ID."""


class Broker:
    """Durable at-least-once task queue.

    Args:
        default_queue: Queue used when enqueue() is not given one
        default_max_retries: Redeliveries allowed after a failed attempt
        default_timeout: Per-delivery timeout in seconds
        retry_delay: Backoff before the first redelivery, in seconds
        max_retry_delay: Upper bound for the backoff
    """

    def __init__(
        self,
        *,
        default_queue: str | None = None,
        default_max_retries: int | None = None,
        default_timeout: int | None = None,
        retry_delay: float | None = None,
        max_retry_delay: float | None = None,
    ) -> None:
        settings = get_settings()
        self.default_queue = default_queue or settings.WORKER_QUEUE
        self.default_max_retries = (
            default_max_retries if default_max_retries is not None else settings.WORKER_MAX_RETRIES
        )
        self.default_timeout = (
            default_timeout if default_timeout is not None else settings.worker_timeout_seconds
        )
        self.retry_delay = retry_delay if retry_delay is not None else settings.WORKER_RETRY_DELAY
        self.max_retry_delay = (
            max_retry_delay if max_retry_delay is not None else settings.WORKER_RETRY_MAX_DELAY
        )

    # ── Producer side ────────────────────────────────────────────────

    def enqueue(
        self,
        payload: AnalysisTaskPayload,
        *,
        task_type: str = TYPE_BLOODHOUND_ANALYSIS,
        max_retries: int | None = None,
        timeout: int | None = None,
        queue: str | None = None,
    ) -> TaskInfo:
        """Persist a task for later delivery.

        Args:
            payload: Work order to deliver
            task_type: Handler key used by the dispatcher
            max_retries: Redeliveries after a failure (non-negative)
            timeout: Per-delivery timeout in seconds (positive)
            queue: Concurrency partition the task belongs to

        Returns:
            TaskInfo of the stored task

        Raises:
            ValueError: If max_retries or timeout is out of range
            BrokerUnavailable: If the task could not be stored
        """
        max_retries = self.default_max_retries if max_retries is None else max_retries
        timeout = self.default_timeout if timeout is None else timeout
        queue = queue or self.default_queue

        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        try:
            info = self._insert(payload.to_bytes(), task_type, queue, max_retries, timeout)
        except (SQLAlchemyError, DatabaseError) as e:
            logger.error("Failed to enqueue %s task: %s", task_type, e)
            raise BrokerUnavailable(f"Task queue unavailable: {e}") from e

        logger.info(
            "Enqueued %s task on queue '%s'",
            task_type,
            queue,
            extra={"task_id": info.id, "result_id": payload.result_id},
        )
        return info

    @retry_on_transient_error()
    def _insert(
        self, payload: bytes, task_type: str, queue: str, max_retries: int, timeout: int
    ) -> TaskInfo:
        with get_session() as session:
            task = QueuedTask(
                id=str(uuid.uuid4()),
                task_type=task_type,
                queue=queue,
                payload=payload,
                state=TaskState.PENDING,
                retried=0,
                max_retry=max_retries,
                timeout_seconds=timeout,
                process_at=utcnow(),
            )
            session.add(task)
            session.flush()
            return TaskInfo.model_validate(task)

    # ── Consumer side ────────────────────────────────────────────────

    def dequeue(self, queue: str) -> TaskInfo | None:
        """Lease the oldest ready task of a queue.

        Returns:
            The leased task (state ACTIVE, deadline set), or None if no task
            is ready
        """
        now = utcnow()
        with get_session() as session:
            task = session.scalars(
                select(QueuedTask)
                .where(
                    QueuedTask.queue == queue,
                    QueuedTask.state.in_(READY_STATES),
                    QueuedTask.process_at <= now,
                )
                .order_by(QueuedTask.process_at, QueuedTask.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            ).first()
            if task is None:
                return None

            task.state = TaskState.ACTIVE
            task.deadline = now + timedelta(seconds=task.timeout_seconds)
            task.lease_id = uuid.uuid4().hex
            session.flush()
            info = TaskInfo.model_validate(task)

        logger.debug("Leased task %s from queue '%s'", info.id, queue, extra={"task_id": info.id})
        return info

    def ack(self, task_id: str, lease_id: str | None = None) -> bool:
        """Mark a delivered task as completed.

        Args:
            task_id: Task that succeeded
            lease_id: Lease of the delivery reporting success. When given,
                the ack only applies while that lease is still held.

        Returns:
            False if the lease was lost (the task was already failed by lease
            recovery) and nothing changed, True otherwise
        """
        with get_session() as session:
            task = self._require(session, task_id)
            if not self._holds_lease(task, lease_id):
                return False
            task.state = TaskState.COMPLETED
            task.deadline = None
            task.lease_id = None
            task.completed_at = utcnow()
        logger.debug("Task %s completed", task_id, extra={"task_id": task_id})
        return True

    def fail(
        self, task_id: str, error: str, *, retry: bool = True, lease_id: str | None = None
    ) -> TaskState | None:
        """Record a failed delivery and apply the retry policy.

        Args:
            task_id: Task that failed
            error: Failure description kept on the task
            retry: False sends the task straight to DEAD
            lease_id: Lease of the failing delivery. When given, the failure
                only counts while that lease is still held.

        Returns:
            RETRY if the task will be redelivered, DEAD otherwise. None if
            the lease was lost and the failure was not counted again.
        """
        with get_session() as session:
            task = self._require(session, task_id)
            if not self._holds_lease(task, lease_id):
                return None
            return self._fail_task(task, error, retry=retry)

    def recover_expired(self, exclude: Collection[str] = ()) -> list[tuple[TaskInfo, TaskState]]:
        """Fail every active task whose lease has expired.

        Covers a worker that crashed or abandoned a delivery. Each expired
        delivery counts as one failed attempt.

        Args:
            exclude: Task IDs still being handled by the caller; their
                outcome is reported by the delivery itself

        Returns:
            (task, new state) for every recovered task
        """
        now = utcnow()
        skip = set(exclude)
        recovered: list[tuple[TaskInfo, TaskState]] = []
        with get_session() as session:
            expired = session.scalars(
                select(QueuedTask)
                .where(QueuedTask.state == TaskState.ACTIVE, QueuedTask.deadline < now)
                .with_for_update(skip_locked=True)
            ).all()
            for task in expired:
                if task.id in skip:
                    continue
                state = self._fail_task(task, "lease expired before the task was acknowledged")
                recovered.append((TaskInfo.model_validate(task), state))

        if recovered:
            logger.warning("Recovered %d task(s) with expired leases", len(recovered))
        return recovered

    def get_task(self, task_id: str) -> TaskInfo | None:
        """Snapshot of a task, or None if unknown."""
        with get_session() as session:
            task = session.get(QueuedTask, task_id)
            return TaskInfo.model_validate(task) if task is not None else None

    # ── Helpers ──────────────────────────────────────────────────────

    def backoff(self, retried: int) -> float:
        """Delay in seconds before redelivery number ``retried`` (1-based)."""
        delay = self.retry_delay * (2 ** max(retried - 1, 0))
        return min(delay, self.max_retry_delay)

    def _fail_task(self, task: QueuedTask, error: str, *, retry: bool = True) -> TaskState:
        now = utcnow()
        task.last_error = error
        task.deadline = None
        task.lease_id = None
        if retry and task.retried < task.max_retry:
            task.retried += 1
            task.state = TaskState.RETRY
            task.process_at = now + timedelta(seconds=self.backoff(task.retried))
            logger.warning(
                "Task %s failed (retry %d/%d scheduled): %s",
                task.id,
                task.retried,
                task.max_retry,
                error,
                extra={"task_id": task.id},
            )
        else:
            task.state = TaskState.DEAD
            task.completed_at = now
            logger.error(
                "Task %s is dead after %d retr%s: %s",
                task.id,
                task.retried,
                "y" if task.retried == 1 else "ies",
                error,
                extra={"task_id": task.id},
            )
        return task.state

    @staticmethod
    def _require(session: Session, task_id: str) -> QueuedTask:
        task = session.get(QueuedTask, task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task


    @staticmethod
    def _holds_lease(task: QueuedTask, lease_id: str | None) -> bool:
        if lease_id is None:
            return True
        if task.state == TaskState.ACTIVE and task.lease_id == lease_id:
            return True
        logger.warning(
            "Task %s no longer holds lease %s (state %s), ignoring outcome",
            task.id,
            lease_id,
            task.state.value,
            extra={"task_id": task.id},
        )
        return False
