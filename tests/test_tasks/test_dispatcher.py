"""Tests for the dispatcher.

Outcome handling is tested through ``process()`` on a leased task; the
consumer loop, concurrency bound and shutdown through ``run()``.
"""

import asyncio
import time
from datetime import timedelta

import pytest

from src.database.db import get_session
from src.database.models import QueuedTask, TaskState, utcnow
from src.tasks.broker import Broker, SkipRetry
from src.tasks.dispatcher import Dispatcher
from src.tasks.payloads import TYPE_BLOODHOUND_ANALYSIS


@pytest.fixture
def broker(db) -> Broker:
    return Broker(retry_delay=0)


@pytest.fixture
def dispatcher(broker) -> Dispatcher:
    return Dispatcher(broker, poll_interval=0.01, recover_interval=0.05)


def _expire_lease(task_id: str) -> None:
    with get_session() as session:
        session.get(QueuedTask, task_id).deadline = utcnow() - timedelta(seconds=5)


class Recorder:
    """Handler that records deliveries and can be told to fail."""

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.deliveries = []
        self.dead = []

    async def __call__(self, delivery):
        self.deliveries.append(delivery)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    def on_dead(self, delivery):
        self.dead.append(delivery.id)


class TestRegistration:
    def test_duplicate_handler_is_rejected(self, dispatcher):
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, Recorder())

        with pytest.raises(ValueError, match="already registered"):
            dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, Recorder())

    def test_concurrency_must_be_positive(self, broker):
        with pytest.raises(ValueError):
            Dispatcher(broker, queues={"bloodhound": 0})


class TestProcess:
    @pytest.mark.asyncio
    async def test_success_acks_task(self, broker, dispatcher, payload):
        recorder = Recorder()
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder)
        info = broker.enqueue(payload)

        await dispatcher.process(broker.dequeue("bloodhound"))

        assert [d.id for d in recorder.deliveries] == [info.id]
        assert broker.get_task(info.id).state == TaskState.COMPLETED

    @pytest.mark.asyncio
    async def test_handler_error_schedules_retry(self, broker, dispatcher, payload, caplog):
        recorder = Recorder(error=RuntimeError("boom"))
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder, on_dead=recorder.on_dead)
        info = broker.enqueue(payload)

        await dispatcher.process(broker.dequeue("bloodhound"))

        task = broker.get_task(info.id)
        assert task.state == TaskState.RETRY
        assert "RuntimeError: boom" in task.last_error
        assert recorder.dead == []
        assert "Task failed: bloodhound:analysis" in caplog.text

    @pytest.mark.asyncio
    async def test_exhausted_retries_call_dead_letter_hook(self, broker, dispatcher, payload):
        recorder = Recorder(error=RuntimeError("boom"))
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder, on_dead=recorder.on_dead)
        info = broker.enqueue(payload, max_retries=0)

        await dispatcher.process(broker.dequeue("bloodhound"))

        assert broker.get_task(info.id).state == TaskState.DEAD
        assert recorder.dead == [info.id]

    @pytest.mark.asyncio
    async def test_skip_retry_kills_task(self, broker, dispatcher, payload):
        recorder = Recorder(error=SkipRetry("bad payload"))
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder, on_dead=recorder.on_dead)
        info = broker.enqueue(payload, max_retries=3)

        await dispatcher.process(broker.dequeue("bloodhound"))

        task = broker.get_task(info.id)
        assert task.state == TaskState.DEAD
        assert task.retried == 0
        assert recorder.dead == [info.id]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, broker, dispatcher, payload):
        recorder = Recorder(delay=10)
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder)
        info = broker.enqueue(payload, timeout=1)

        await dispatcher.process(broker.dequeue("bloodhound"))

        task = broker.get_task(info.id)
        assert task.state == TaskState.RETRY
        assert "timeout" in task.last_error

    @pytest.mark.asyncio
    async def test_unknown_task_type_is_dead(self, broker, dispatcher, payload):
        info = broker.enqueue(payload, task_type="unknown:type")

        await dispatcher.process(broker.dequeue("bloodhound"))

        task = broker.get_task(info.id)
        assert task.state == TaskState.DEAD
        assert "no handler" in task.last_error

    @pytest.mark.asyncio
    async def test_failing_dead_letter_hook_is_logged(self, broker, dispatcher, payload, caplog):
        def on_dead(_delivery):
            raise RuntimeError("hook broke")

        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, Recorder(error=SkipRetry("x")), on_dead=on_dead)
        info = broker.enqueue(payload)

        await dispatcher.process(broker.dequeue("bloodhound"))

        assert broker.get_task(info.id).state == TaskState.DEAD
        assert "Dead-letter hook failed" in caplog.text

    @pytest.mark.asyncio
    async def test_outcome_after_lease_recovered_elsewhere_is_dropped(self, broker, dispatcher, payload):
        recorder = Recorder(error=RuntimeError("late"))
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder, on_dead=recorder.on_dead)
        info = broker.enqueue(payload, max_retries=0)
        leased = broker.dequeue("bloodhound")
        _expire_lease(info.id)
        broker.recover_expired()

        await dispatcher.process(leased)

        task = broker.get_task(info.id)
        assert task.state == TaskState.DEAD
        assert "lease expired" in task.last_error
        assert recorder.dead == []

    @pytest.mark.asyncio
    async def test_slow_broker_call_does_not_block_event_loop(self, broker, dispatcher, payload, monkeypatch):
        real_ack = broker.ack

        def slow_ack(*args, **kwargs):
            time.sleep(0.2)
            return real_ack(*args, **kwargs)

        monkeypatch.setattr(broker, "ack", slow_ack)
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, Recorder())
        info = broker.enqueue(payload)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        ticking = asyncio.create_task(ticker())
        await dispatcher.process(broker.dequeue("bloodhound"))
        ticking.cancel()

        assert ticks >= 5
        assert broker.get_task(info.id).state == TaskState.COMPLETED


class TestRun:
    @pytest.mark.asyncio
    async def test_single_slot_runs_tasks_one_at_a_time(self, broker, dispatcher, payload):
        active = 0
        max_active = 0
        done = []

        async def handler(delivery):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.02)
            active -= 1
            done.append(delivery.id)
            if len(done) == 3:
                dispatcher.stop()

        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, handler)
        ids = [broker.enqueue(payload).id for _ in range(3)]

        await asyncio.wait_for(dispatcher.run(), timeout=5)

        assert max_active == 1
        assert done == ids
        assert all(broker.get_task(i).state == TaskState.COMPLETED for i in ids)

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_task_finish(self, broker, dispatcher, payload):
        async def handler(delivery):
            dispatcher.stop()
            await asyncio.sleep(0.05)

        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, handler)
        first = broker.enqueue(payload)
        second = broker.enqueue(payload)

        await asyncio.wait_for(dispatcher.run(), timeout=5)

        assert broker.get_task(first.id).state == TaskState.COMPLETED
        assert broker.get_task(second.id).state == TaskState.PENDING
        assert not dispatcher.is_running
        assert dispatcher.in_flight == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries, state, retried", [(3, TaskState.RETRY, 1), (0, TaskState.DEAD, 0)])
    async def test_timed_out_delivery_with_slow_cleanup_counts_once(
        self, broker, dispatcher, payload, max_retries, state, retried
    ):
        recorder = Recorder()

        async def handler(delivery):
            try:
                await asyncio.sleep(10)
            finally:
                # Cleanup outlives the lease while recovery keeps sweeping
                await asyncio.sleep(0.3)
                dispatcher.stop()

        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, handler, on_dead=recorder.on_dead)
        info = broker.enqueue(payload, timeout=1, max_retries=max_retries)

        await asyncio.wait_for(dispatcher.run(), timeout=5)

        task = broker.get_task(info.id)
        assert task.state == state
        assert task.retried == retried
        assert "timeout" in task.last_error
        assert recorder.dead == ([info.id] if state == TaskState.DEAD else [])

    @pytest.mark.asyncio
    async def test_stop_before_run_returns_without_leasing(self, broker, dispatcher, payload):
        recorder = Recorder()
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder)
        info = broker.enqueue(payload)

        dispatcher.stop()
        await asyncio.wait_for(dispatcher.run(), timeout=5)

        assert recorder.deliveries == []
        assert broker.get_task(info.id).state == TaskState.PENDING
        assert not dispatcher.is_running

    @pytest.mark.asyncio
    async def test_expired_leases_are_recovered_on_start(self, broker, dispatcher, payload):
        recorder = Recorder()
        dispatcher.handle(TYPE_BLOODHOUND_ANALYSIS, recorder, on_dead=recorder.on_dead)
        info = broker.enqueue(payload, max_retries=0)
        broker.dequeue("bloodhound")
        _expire_lease(info.id)

        task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.05)
        dispatcher.stop()
        await asyncio.wait_for(task, timeout=5)

        assert recorder.dead == [info.id]
        assert recorder.deliveries == []
        assert broker.get_task(info.id).state == TaskState.DEAD

    @pytest.mark.asyncio
    async def test_run_twice_is_rejected(self, dispatcher):
        task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.01)

        with pytest.raises(RuntimeError, match="already running"):
            await dispatcher.run()

        dispatcher.stop()
        await asyncio.wait_for(task, timeout=5)
