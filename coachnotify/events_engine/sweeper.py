"""Periodic retry of failed inbound events and retention purge."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.events_engine.gateway import EventGateway
from coachnotify.events_engine.store import IdempotencyStore
from coachnotify.models.inbound_event import EventStatus

LOGGER = logging.getLogger("coachnotify.events_engine.sweeper")


@dataclass
class SweepReport:
    retried: int = 0
    recovered: int = 0
    failed: int = 0
    purged: int = 0


class RetrySweeper:
    """Re-dispatches failed events below the retry ceiling and claims abandoned mid-dispatch.

    Authenticity was established when the event was first stored, so the
    sweep does not verify signatures again.
    """

    def __init__(
        self,
        *,
        store: IdempotencyStore,
        gateway: EventGateway,
        clock: Optional[Clock] = None,
        min_age_seconds: float = 60.0,
        batch_size: int = 50,
        retention_days: Optional[int] = 90,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._clock = clock or SystemClock()
        self._min_age = timedelta(seconds=min_age_seconds)
        self._batch_size = batch_size
        self._retention_days = retention_days

    def run_once(self) -> SweepReport:
        now = self._clock.now()
        report = SweepReport()
        cutoff = now - self._min_age
        for external_id in self._store.due_for_retry(older_than=cutoff, limit=self._batch_size):
            # Another sweep or a provider redelivery may have claimed it first.
            claimed = self._store.reclaim(external_id) or self._store.reclaim_abandoned(external_id, older_than=cutoff)
            if not claimed:
                continue
            report.retried += 1
            status = self._gateway.dispatch(external_id)
            if status is EventStatus.PROCESSED:
                report.recovered += 1
            else:
                report.failed += 1

        if self._retention_days:
            report.purged = self._store.purge(older_than=now - timedelta(days=self._retention_days))

        if report.retried or report.purged:
            LOGGER.info(
                "webhook_retry_sweep",
                extra={
                    "retried": report.retried,
                    "recovered": report.recovered,
                    "failed": report.failed,
                    "purged": report.purged,
                },
            )
        return report
