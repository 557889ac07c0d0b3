"""Daemon thread that runs a job on a fixed interval."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger("coachnotify.workers.periodic")


class PeriodicWorker:
    """Calls ``job`` every ``interval_seconds`` until stopped.

    A failing run is logged and the next run happens on schedule.
    """

    def __init__(self, name: str, interval_seconds: float, job: Callable[[], object]) -> None:
        self.name = name
        self._interval = interval_seconds
        self._job = job
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"coachnotify-{self.name}", daemon=True)
        self._thread.start()
        LOGGER.info("periodic_worker_started", extra={"worker": self.name, "interval_seconds": self._interval})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        LOGGER.info("periodic_worker_stopped", extra={"worker": self.name})

    def run_now(self) -> object:
        return self._job()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._job()
            except Exception:  # noqa: BLE001
                LOGGER.exception("periodic_worker_failed", extra={"worker": self.name})
