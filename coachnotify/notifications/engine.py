"""Notification engine: resolves channels, persists, enqueues, and publishes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.core.database import SessionFactory, session_scope
from coachnotify.models.notification import Notification, NotificationStatus
from coachnotify.notifications.delivery import realtime_message
from coachnotify.notifications.preferences import PreferenceResolver, effective_channels
from coachnotify.notifications.queue import DeliveryQueue, DeliveryTask
from coachnotify.notifications.realtime import RealtimeHub
from coachnotify.notifications.templates import TemplateError, TemplateService
from coachnotify.schemas.notification import NotificationRequest

LOGGER = logging.getLogger("coachnotify.notifications.engine")

BULK_BATCH_SIZE = 100


class NotificationError(RuntimeError):
    """Base class for notification engine failures."""


class NoChannelsAvailableError(NotificationError):
    """The user allows no channel for this request; nothing was persisted."""


@dataclass
class BulkSendResult:
    sent: List[Notification] = field(default_factory=list)
    failed: List[tuple[int, NotificationRequest, str]] = field(default_factory=list)


class NotificationEngine:
    """Turns notification requests into persisted, queued, multi-channel deliveries."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        preferences: PreferenceResolver,
        queue: DeliveryQueue,
        hub: RealtimeHub,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._preferences = preferences
        self._queue = queue
        self._hub = hub
        self._clock = clock or SystemClock()
        self._user_locks: Dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()

    def send(self, request: NotificationRequest) -> Notification:
        """Persist a notification for ``request`` and start delivering it.

        Raises ``NoChannelsAvailableError`` without persisting anything when
        the effective channel set is empty. A request whose ``dedupe_key`` was
        already used returns the existing notification untouched. A request that
        has already expired is stored as ``expired`` and never delivered.
        """

        if request.dedupe_key:
            existing = self._find_by_dedupe_key(request.dedupe_key)
            if existing is not None:
                LOGGER.info(
                    "notification_deduplicated",
                    extra={"notification_id": str(existing.id), "dedupe_key": request.dedupe_key},
                )
                return existing

        preferences = self._preferences.get(request.user_id)
        channels = effective_channels(preferences, request.category, request.channels)
        if not channels:
            LOGGER.info(
                "notification_no_channels",
                extra={"user_id": request.user_id, "category": request.category.value},
            )
            raise NoChannelsAvailableError(
                f"User {request.user_id} has no enabled channels for category '{request.category.value}'"
            )

        title, body = request.title, request.body
        if request.template_id is not None:
            with session_scope(self._session_factory) as session:
                title, body = TemplateService(session).render(request.template_id, request.template_variables)

        now = self._clock.now()
        scheduled = request.scheduled_for is not None and request.scheduled_for > now
        expired = not scheduled and request.expires_at is not None and request.expires_at <= now
        if expired:
            status = NotificationStatus.EXPIRED
        elif scheduled:
            status = NotificationStatus.PENDING
        else:
            status = NotificationStatus.SENT

        # Creation and publish happen under the user's lock so subscribers see
        # that user's notifications in creation order.
        with self.lock_for(request.user_id):
            try:
                with session_scope(self._session_factory) as session:
                    notification = Notification(
                        user_id=request.user_id,
                        category=request.category,
                        title=title,
                        body=body,
                        data=request.data,
                        priority=request.priority,
                        channels=[channel.value for channel in channels],
                        status=status,
                        scheduled_for=request.scheduled_for,
                        expires_at=request.expires_at,
                        dedupe_key=request.dedupe_key,
                        template_id=request.template_id,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(notification)
                    session.flush()
            except IntegrityError:
                existing = self._find_by_dedupe_key(request.dedupe_key) if request.dedupe_key else None
                if existing is None:
                    raise
                return existing

            LOGGER.info(
                "notification_created",
                extra={
                    "notification_id": str(notification.id),
                    "user_id": notification.user_id,
                    "category": notification.category.value,
                    "channels": notification.channels,
                    "status": status.value,
                },
            )
            if status is NotificationStatus.SENT:
                self.release(notification)
        return notification

    def send_bulk(self, requests: Sequence[NotificationRequest], *, batch_size: int = BULK_BATCH_SIZE) -> BulkSendResult:
        """Send many requests in batches; individual failures are logged and skipped."""

        result = BulkSendResult()
        for start in range(0, len(requests), batch_size):
            for index, request in enumerate(requests[start : start + batch_size], start=start):
                try:
                    result.sent.append(self.send(request))
                except (NotificationError, TemplateError) as exc:
                    result.failed.append((index, request, str(exc)))
                    LOGGER.warning(
                        "notification_bulk_item_failed",
                        extra={"index": index, "user_id": request.user_id, "error": str(exc)},
                    )
        LOGGER.info("notification_bulk_sent", extra={"sent": len(result.sent), "failed": len(result.failed)})
        return result

    def release(self, notification: Notification) -> None:
        """Queue one delivery task per channel and announce the notification."""

        self._hub.publish(notification.user_id, realtime_message("created", notification))
        for channel in notification.channel_set:
            self._queue.enqueue(DeliveryTask(notification.id, channel))

    def lock_for(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def _find_by_dedupe_key(self, dedupe_key: str) -> Optional[Notification]:
        with session_scope(self._session_factory) as session:
            return session.scalar(select(Notification).where(Notification.dedupe_key == dedupe_key))
