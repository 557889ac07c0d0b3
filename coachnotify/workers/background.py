"""Runs the delivery queue and periodic sweeps without the HTTP API."""

from __future__ import annotations

import logging
import signal
import threading

from coachnotify.core.config import get_settings
from coachnotify.core.database import engine
from coachnotify.core.logging import configure_logging
from coachnotify.models import Base
from coachnotify.pipeline import build_pipeline

LOGGER = logging.getLogger("coachnotify.workers.background")


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    Base.metadata.create_all(bind=engine)

    pipeline = build_pipeline(settings)
    stopped = threading.Event()

    def _handle_signal(signum, frame) -> None:  # noqa: ARG001
        LOGGER.info("background_worker_signal", extra={"signal": signum})
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    pipeline.start()
    try:
        stopped.wait()
    finally:
        pipeline.stop()


if __name__ == "__main__":
    main()
