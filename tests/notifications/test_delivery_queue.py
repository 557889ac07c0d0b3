from __future__ import annotations

import threading
import time
import uuid

from coachnotify.models.notification import Channel
from coachnotify.notifications.queue import DeliveryOutcome, DeliveryQueue, DeliveryTask


class ScriptedExecutor:
    def __init__(self, outcomes=None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls = []

    def attempt(self, task):
        self.calls.append(task)
        return self.outcomes.pop(0) if self.outcomes else DeliveryOutcome.DELIVERED


class BlockingExecutor:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.started = threading.Semaphore(0)
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def attempt(self, task):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started.release()
        self.release.wait(timeout=5)
        with self._lock:
            self.active -= 1
        return DeliveryOutcome.DELIVERED


def _task(channel: Channel = Channel.EMAIL) -> DeliveryTask:
    return DeliveryTask(uuid.uuid4(), channel)


def test_retry_outcome_requeues_with_next_attempt_number(clock) -> None:
    executor = ScriptedExecutor([DeliveryOutcome.RETRY, DeliveryOutcome.DELIVERED])
    queue = DeliveryQueue(executor, clock=clock, backoff_base_seconds=2.0)
    queue.enqueue(_task())

    assert queue.run_pending() == 1
    assert queue.next_due_in() == 2.0
    clock.advance(2)
    assert queue.run_pending() == 1

    assert [task.attempt for task in executor.calls] == [1, 2]
    assert len(queue) == 0


class ExplodingExecutor:
    def __init__(self, abandon_fails: int = 0) -> None:
        self.calls = 0
        self.abandoned = []
        self.abandon_fails = abandon_fails

    def attempt(self, task):
        self.calls += 1
        raise RuntimeError("database unavailable")

    def abandon(self, task, error):
        if self.abandon_fails:
            self.abandon_fails -= 1
            raise RuntimeError("database still unavailable")
        self.abandoned.append((task.attempt, error))
        return DeliveryOutcome.FAILED


def test_crashing_executor_counts_as_failed_attempt(clock) -> None:
    executor = ExplodingExecutor()
    queue = DeliveryQueue(executor, clock=clock, max_attempts=2)
    queue.enqueue(_task())

    queue.run_pending()
    clock.advance(1)
    queue.run_pending()
    clock.advance(10)

    assert queue.run_pending() == 0
    assert executor.calls == 2
    assert executor.abandoned == [(2, "RuntimeError: database unavailable")]


def test_task_stays_queued_while_abandon_cannot_be_recorded(clock) -> None:
    executor = ExplodingExecutor(abandon_fails=1)
    queue = DeliveryQueue(executor, clock=clock, max_attempts=1)
    queue.enqueue(_task())

    queue.run_pending()
    assert len(queue) == 1
    assert executor.abandoned == []

    clock.advance(1)
    queue.run_pending()

    assert len(queue) == 0
    assert [attempt for attempt, _ in executor.abandoned] == [1]


def test_channel_concurrency_limits_a_slow_provider(clock) -> None:
    executor = BlockingExecutor()
    queue = DeliveryQueue(executor, worker_count=4, channel_concurrency=2, throttle_delay_seconds=0.01)
    queue.start()
    try:
        for _ in range(4):
            queue.enqueue(_task(Channel.SMS))
        assert executor.started.acquire(timeout=2)
        assert executor.started.acquire(timeout=2)
        time.sleep(0.1)
        assert executor.active == 2
    finally:
        executor.release.set()
        queue.stop(grace_seconds=2)

    assert executor.peak == 2


def test_stop_rejects_new_work_and_reports_abandoned(clock) -> None:
    queue = DeliveryQueue(ScriptedExecutor(), clock=clock)
    queue.enqueue(_task(), delay=30)
    queue.enqueue(_task(), delay=60)

    assert queue.stop(grace_seconds=0) == 2
    assert queue.enqueue(_task()) is False
    assert len(queue) == 0
