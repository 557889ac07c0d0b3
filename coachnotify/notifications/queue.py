"""In-process delivery queue drained by a fixed worker pool."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.models.notification import CHANNEL_ORDER, Channel

LOGGER = logging.getLogger("coachnotify.notifications.queue")


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    SUPPRESSED = "suppressed"
    RETRY = "retry"
    FAILED = "failed"
    EXPIRED = "expired"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DeliveryTask:
    notification_id: uuid.UUID
    channel: Channel
    attempt: int = 1


@dataclass(order=True)
class _QueuedTask:
    due: float
    sequence: int
    task: DeliveryTask = field(compare=False)


class TaskExecutor(Protocol):
    def attempt(self, task: DeliveryTask) -> DeliveryOutcome:
        ...

    def abandon(self, task: DeliveryTask, error: str) -> DeliveryOutcome:
        ...


def backoff_delay(base_seconds: float, attempt: int) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1s, 2s, 4s, ...)."""

    return base_seconds * (2 ** (attempt - 1))


class DeliveryQueue:
    """Heap of delivery tasks ordered by due time.

    Workers only ever hold a thread while a task is executing; a task waiting
    for its backoff window sits in the heap. Each channel has its own
    concurrency limit so a slow provider cannot occupy the whole pool: a
    worker that finds a channel saturated puts the task back a little later
    and moves on.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        *,
        clock: Optional[Clock] = None,
        worker_count: int = 4,
        channel_concurrency: int = 2,
        backoff_base_seconds: float = 1.0,
        max_attempts: int = 3,
        throttle_delay_seconds: float = 0.05,
    ) -> None:
        self._executor = executor
        self._clock = clock or SystemClock()
        self._worker_count = worker_count
        self._backoff_base = backoff_base_seconds
        self._max_attempts = max_attempts
        self._throttle_delay = throttle_delay_seconds
        self._heap: List[_QueuedTask] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._channel_slots: Dict[Channel, threading.BoundedSemaphore] = {
            channel: threading.BoundedSemaphore(channel_concurrency) for channel in CHANNEL_ORDER
        }
        self._workers: List[threading.Thread] = []
        self._running = False
        self._accepting = True
        self._in_flight = 0

    def enqueue(self, task: DeliveryTask, *, delay: float = 0.0) -> bool:
        """Schedule ``task`` to run ``delay`` seconds from now. Returns False once shut down."""

        with self._condition:
            if not self._accepting:
                LOGGER.info(
                    "delivery_task_rejected_shutdown",
                    extra={"notification_id": str(task.notification_id), "channel": task.channel.value},
                )
                return False
            due = self._clock.now().timestamp() + max(delay, 0.0)
            heapq.heappush(self._heap, _QueuedTask(due, next(self._sequence), task))
            self._condition.notify()
        return True

    def enqueue_many(self, tasks: Iterable[DeliveryTask]) -> int:
        return sum(1 for task in tasks if self.enqueue(task))

    def __len__(self) -> int:
        with self._condition:
            return len(self._heap)

    @property
    def in_flight(self) -> int:
        with self._condition:
            return self._in_flight

    def next_due_in(self) -> Optional[float]:
        """Seconds until the earliest queued task is due (negative if overdue)."""

        with self._condition:
            if not self._heap:
                return None
            return self._heap[0].due - self._clock.now().timestamp()

    def start(self) -> None:
        with self._condition:
            if self._running:
                return
            self._running = True
            self._accepting = True
        for index in range(self._worker_count):
            worker = threading.Thread(target=self._worker_loop, name=f"delivery-worker-{index}", daemon=True)
            worker.start()
            self._workers.append(worker)
        LOGGER.info("delivery_queue_started", extra={"workers": self._worker_count})

    def stop(self, grace_seconds: float = 10.0) -> int:
        """Stop accepting work, let in-flight tasks finish within the grace period.

        Returns the number of queued tasks abandoned. Abandoned work is
        recovered on the next start from the persisted notification state.
        """

        with self._condition:
            self._accepting = False
            self._running = False
            self._condition.notify_all()
        deadline = time.monotonic() + grace_seconds
        for worker in self._workers:
            worker.join(timeout=max(deadline - time.monotonic(), 0.0))
        still_running = [worker.name for worker in self._workers if worker.is_alive()]
        self._workers = []
        with self._condition:
            abandoned = len(self._heap)
            self._heap.clear()
        LOGGER.info(
            "delivery_queue_stopped",
            extra={"abandoned_tasks": abandoned, "workers_still_running": still_running},
        )
        return abandoned

    def run_pending(self, *, max_tasks: Optional[int] = None) -> int:
        """Execute every task that is due right now on the calling thread.

        Intended for synchronous callers (tests, one-shot scripts) when the
        worker threads are not running. Tasks re-queued during the drain run
        too if they are already due.
        """

        processed = 0
        while max_tasks is None or processed < max_tasks:
            queued = self._pop_due()
            if queued is None:
                break
            self._process(queued.task)
            processed += 1
        return processed

    def _pop_due(self) -> Optional[_QueuedTask]:
        with self._condition:
            if self._heap and self._heap[0].due <= self._clock.now().timestamp():
                return heapq.heappop(self._heap)
            return None

    def _worker_loop(self) -> None:
        while True:
            with self._condition:
                queued: Optional[_QueuedTask] = None
                while self._running:
                    if not self._heap:
                        self._condition.wait()
                        continue
                    wait_for = self._heap[0].due - self._clock.now().timestamp()
                    if wait_for > 0:
                        self._condition.wait(timeout=wait_for)
                        continue
                    queued = heapq.heappop(self._heap)
                    break
                if queued is None:
                    return
            self._process(queued.task)

    def _process(self, task: DeliveryTask) -> None:
        slots = self._channel_slots[task.channel]
        if not slots.acquire(blocking=False):
            self._requeue(task, self._throttle_delay)
            return
        with self._condition:
            self._in_flight += 1
        try:
            outcome = self._executor.attempt(task)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception(
                "delivery_task_crashed",
                extra={"notification_id": str(task.notification_id), "channel": task.channel.value, "attempt": task.attempt},
            )
            outcome = self._after_crash(task, f"{type(exc).__name__}: {exc}")
        finally:
            slots.release()
            with self._condition:
                self._in_flight -= 1

        if outcome is DeliveryOutcome.RETRY:
            delay = backoff_delay(self._backoff_base, task.attempt)
            LOGGER.info(
                "delivery_retry_scheduled",
                extra={
                    "notification_id": str(task.notification_id),
                    "channel": task.channel.value,
                    "next_attempt": task.attempt + 1,
                    "delay_seconds": delay,
                },
            )
            self._requeue(replace(task, attempt=task.attempt + 1), delay)

    def _after_crash(self, task: DeliveryTask, error: str) -> DeliveryOutcome:
        """A crashed attempt counts as failed; past the last attempt the channel is given up.

        Giving up is persisted through the executor so the notification still
        reaches a terminal status. If that write fails too, the task stays
        queued at the last attempt's backoff until the store comes back.
        """

        if task.attempt < self._max_attempts:
            return DeliveryOutcome.RETRY
        try:
            return self._executor.abandon(task, error)
        except Exception:  # noqa: BLE001
            LOGGER.exception(
                "delivery_task_abandon_failed",
                extra={"notification_id": str(task.notification_id), "channel": task.channel.value},
            )
        self._requeue(task, backoff_delay(self._backoff_base, task.attempt))
        return DeliveryOutcome.SKIPPED

    def _requeue(self, task: DeliveryTask, delay: float) -> None:
        with self._condition:
            # Retries of already-accepted work are kept during shutdown so the
            # abandoned count reflects them; they are recovered on restart.
            due = self._clock.now().timestamp() + delay
            heapq.heappush(self._heap, _QueuedTask(due, next(self._sequence), task))
            self._condition.notify()
