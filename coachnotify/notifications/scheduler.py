"""Releases future-dated notifications once they fall due."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.core.database import SessionFactory, session_scope
from coachnotify.models.notification import Notification, NotificationStatus
from coachnotify.notifications.engine import NotificationEngine

LOGGER = logging.getLogger("coachnotify.notifications.scheduler")


@dataclass
class SchedulerReport:
    released: int = 0
    expired: int = 0


class NotificationScheduler:
    """Sweeps due ``pending`` notifications into the delivery queue.

    The ``pending -> sent`` transition is a conditional update, so two
    overlapping sweeps release each notification once.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        engine: NotificationEngine,
        clock: Optional[Clock] = None,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._clock = clock or SystemClock()
        self._batch_size = batch_size

    def run_once(self) -> SchedulerReport:
        now = self._clock.now()
        report = SchedulerReport()
        with session_scope(self._session_factory) as session:
            due = list(
                session.scalars(
                    select(Notification)
                    .where(Notification.status == NotificationStatus.PENDING)
                    .where(Notification.scheduled_for <= now)
                    .where(Notification.deleted_at.is_(None))
                    .order_by(Notification.scheduled_for)
                    .limit(self._batch_size)
                )
            )

        for notification in due:
            expired = notification.expires_at is not None and notification.expires_at <= now
            target = NotificationStatus.EXPIRED if expired else NotificationStatus.SENT
            with self._engine.lock_for(notification.user_id):
                with session_scope(self._session_factory) as session:
                    result = session.execute(
                        update(Notification)
                        .where(Notification.id == notification.id)
                        .where(Notification.status == NotificationStatus.PENDING)
                        .values(status=target, updated_at=now)
                    )
                    claimed = bool(result.rowcount)
                if not claimed:
                    continue
                notification.status = target
                if expired:
                    report.expired += 1
                    LOGGER.info("scheduled_notification_expired", extra={"notification_id": str(notification.id)})
                    continue
                self._engine.release(notification)
                report.released += 1

        if report.released or report.expired:
            LOGGER.info("notification_scheduler_swept", extra={"released": report.released, "expired": report.expired})
        return report
