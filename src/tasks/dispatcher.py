"""Worker loop that pulls tasks from the broker and runs their handlers.

Each queue gets a fixed number of consumer loops (its concurrency bound).
With a bound of 1 a queue is strictly serial: the next task is only leased
after the previous one was acknowledged or failed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from src.database.db import DatabaseError
from src.database.models import TaskState
from src.tasks.broker import Broker, SkipRetry
from src.tasks.payloads import TaskInfo
from src.utils.config import get_settings

logger = logging.getLogger(__name__)

TaskHandlerFunc = Callable[[TaskInfo], Awaitable[None]]
DeadLetterFunc = Callable[[TaskInfo], None]
T = TypeVar("T")


@dataclass(frozen=True)
class _Route:
    handler: TaskHandlerFunc
    on_dead: Optional[DeadLetterFunc] = None


class Dispatcher:
    """Bounded-concurrency consumer for one or more queues.

    Args:
        broker: Queue to consume
        queues: Mapping of queue name to concurrency bound
        poll_interval: Seconds to sleep when a queue is empty
        recover_interval: Seconds between sweeps for expired leases
    """

    def __init__(
        self,
        broker: Broker,
        *,
        queues: dict[str, int] | None = None,
        poll_interval: float | None = None,
        recover_interval: float | None = None,
    ) -> None:
        settings = get_settings()
        self._broker = broker
        self._queues = dict(queues or {settings.WORKER_QUEUE: settings.WORKER_CONCURRENCY})
        for queue, bound in self._queues.items():
            if bound < 1:
                raise ValueError(f"Concurrency for queue '{queue}' must be at least 1, got {bound}")
        self._poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL
        self._recover_interval = (
            recover_interval if recover_interval is not None else settings.WORKER_RECOVER_INTERVAL
        )
        self._routes: dict[str, _Route] = {}
        self._stopping = asyncio.Event()
        self._in_flight: dict[str, TaskInfo] = {}
        self._blocking_lock = asyncio.Lock()
        self._running = False

    # ── Registration ─────────────────────────────────────────────────

    def handle(
        self,
        task_type: str,
        handler: TaskHandlerFunc,
        *,
        on_dead: Optional[DeadLetterFunc] = None,
    ) -> None:
        """Route tasks of ``task_type`` to ``handler``.

        ``on_dead`` runs once a task of this type has exhausted its retries.
        """
        if task_type in self._routes:
            raise ValueError(f"Handler for task type '{task_type}' is already registered")
        self._routes[task_type] = _Route(handler=handler, on_dead=on_dead)

    @property
    def in_flight(self) -> list[str]:
        """IDs of tasks currently being handled."""
        return list(self._in_flight)

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────────────────

    async def run(self) -> None:
        """Consume until stop() is called and in-flight work has finished.

        A stop() that arrived before run() makes it return without leasing.
        """
        if self._running:
            raise RuntimeError("Dispatcher is already running")
        self._running = True
        logger.info(
            "Starting dispatcher for queues %s",
            ", ".join(f"{q}(x{n})" for q, n in self._queues.items()),
        )

        consumers: list[asyncio.Task] = []
        recoverer: asyncio.Task | None = None
        try:
            await self._recover_expired()
            consumers = [
                asyncio.create_task(self._consume(queue), name=f"consumer:{queue}:{slot}")
                for queue, bound in self._queues.items()
                for slot in range(bound)
            ]
            recoverer = asyncio.create_task(self._recover_periodically(), name="lease-recovery")
            await asyncio.gather(*consumers)
        finally:
            if recoverer is not None:
                recoverer.cancel()
                await asyncio.gather(recoverer, return_exceptions=True)
            self._running = False
            logger.info("Dispatcher stopped")

    def stop(self) -> None:
        """Stop leasing new tasks; in-flight handlers run to completion or timeout."""
        if not self._stopping.is_set():
            logger.info("Dispatcher shutting down, waiting for %d in-flight task(s)", len(self._in_flight))
        self._stopping.set()

    # ── Delivery ─────────────────────────────────────────────────────

    async def process(self, delivery: TaskInfo) -> None:
        """Run the handler for one leased task and report the outcome to the broker.

        The outcome is reported under the delivery's lease: if lease recovery
        already failed the task, the report is dropped so one delivery never
        counts as two attempts.
        """
        route = self._routes.get(delivery.task_type)
        if route is None:
            await self._report_failure(
                delivery, f"no handler registered for task type '{delivery.task_type}'", retry=False
            )
            return

        self._in_flight[delivery.id] = delivery
        try:
            try:
                await asyncio.wait_for(route.handler(delivery), timeout=delivery.timeout_seconds)
            except asyncio.TimeoutError:
                error, retry = f"task exceeded its timeout of {delivery.timeout_seconds}s", True
            except SkipRetry as e:
                error, retry = f"SkipRetry: {e}", False
            except Exception as e:
                error, retry = f"{type(e).__name__}: {e}", True
            else:
                if await self._run_blocking(self._broker.ack, delivery.id, delivery.lease_id):
                    logger.info("Task %s succeeded", delivery.task_type, extra={"task_id": delivery.id})
                return

            await self._report_failure(delivery, error, retry=retry)
        finally:
            self._in_flight.pop(delivery.id, None)

    async def _consume(self, queue: str) -> None:
        while not self._stopping.is_set():
            try:
                delivery = await self._run_blocking(self._broker.dequeue, queue)
                if delivery is None:
                    await self._sleep(self._poll_interval)
                    continue
                await self.process(delivery)
            except (SQLAlchemyError, DatabaseError) as e:
                # Leased tasks come back through lease recovery
                logger.error("Queue '%s' unavailable: %s", queue, e)
                await self._sleep(self._poll_interval)

    async def _report_failure(self, delivery: TaskInfo, error: str, *, retry: bool) -> None:
        logger.error(
            "Task failed: %s: %s", delivery.task_type, error, extra={"task_id": delivery.id}
        )
        state = await self._run_blocking(
            self._broker.fail, delivery.id, error, retry=retry, lease_id=delivery.lease_id
        )
        if state == TaskState.DEAD:
            await self._dead_letter(delivery)

    async def _dead_letter(self, delivery: TaskInfo) -> None:
        route = self._routes.get(delivery.task_type)
        if route is None or route.on_dead is None:
            return
        try:
            await self._run_blocking(route.on_dead, delivery)
        except Exception:
            logger.exception("Dead-letter hook failed", extra={"task_id": delivery.id})

    # ── Lease recovery ───────────────────────────────────────────────

    async def _recover_periodically(self) -> None:
        while not self._stopping.is_set():
            await self._sleep(self._recover_interval)
            if self._stopping.is_set():
                break
            try:
                await self._recover_expired()
            except (SQLAlchemyError, DatabaseError) as e:
                logger.error("Lease recovery failed: %s", e)

    async def _recover_expired(self) -> None:
        # Tasks still in flight here report their own outcome
        recovered = await self._run_blocking(self._broker.recover_expired, list(self._in_flight))
        for info, state in recovered:
            if state == TaskState.DEAD:
                await self._dead_letter(info)

    # ── Helpers ──────────────────────────────────────────────────────

    async def _run_blocking(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run a blocking broker or hook call in a worker thread, one call at a time."""
        async with self._blocking_lock:
            return await asyncio.to_thread(func, *args, **kwargs)

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early when stop() is called."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
