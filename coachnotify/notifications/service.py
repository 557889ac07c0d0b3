"""Read-side notification operations used by the API."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.core.database import SessionFactory, session_scope
from coachnotify.models.notification import (
    AttemptReason,
    DeliveryAttempt,
    Notification,
    NotificationCategory,
    NotificationStatus,
)
from coachnotify.schemas.notification import ChannelStats, NotificationStats

_SUPPRESSED = {AttemptReason.SUPPRESSED_DO_NOT_DISTURB, AttemptReason.SUPPRESSED_QUIET_HOURS}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class NotificationNotFoundError(ValueError):
    """Raised when a notification does not exist for the requesting user."""


@dataclass
class NotificationFilter:
    unread: Optional[bool] = None
    category: Optional[NotificationCategory] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    query: Optional[str] = None


@dataclass
class MarkAllReadResult:
    updated: int = 0
    failed: List[uuid.UUID] = field(default_factory=list)


class NotificationService:
    """Lists and mutates a user's notifications; never touches delivery status."""

    def __init__(self, session: Session, *, clock: Optional[Clock] = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger("coachnotify.notifications.service")

    def list_for_user(
        self,
        user_id: str,
        filters: Optional[NotificationFilter] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Notification], int]:
        filters = filters or NotificationFilter()
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.deleted_at.is_(None))
            .where(Notification.status != NotificationStatus.PENDING)
        )
        if filters.unread is True:
            stmt = stmt.where(Notification.read_at.is_(None))
        elif filters.unread is False:
            stmt = stmt.where(Notification.read_at.is_not(None))
        if filters.category is not None:
            stmt = stmt.where(Notification.category == filters.category)
        if filters.created_after is not None:
            stmt = stmt.where(Notification.created_at >= filters.created_after)
        if filters.created_before is not None:
            stmt = stmt.where(Notification.created_at <= filters.created_before)
        if filters.query:
            pattern = f"%{_escape_like(filters.query.lower())}%"
            stmt = stmt.where(
                or_(
                    func.lower(Notification.title).like(pattern, escape="\\"),
                    func.lower(Notification.body).like(pattern, escape="\\"),
                )
            )

        total = int(self._session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
        items = self._session.scalars(
            stmt.order_by(Notification.created_at.desc()).limit(limit).offset(offset)
        ).all()
        return list(items), total

    def recent_unread(self, user_id: str, limit: int) -> List[Notification]:
        items, _ = self.list_for_user(user_id, NotificationFilter(unread=True), limit=limit)
        return items

    def get(self, user_id: str, notification_id: uuid.UUID) -> Notification:
        notification = self._session.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id or notification.deleted_at is not None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return notification

    def attempts(self, notification_id: uuid.UUID) -> List[DeliveryAttempt]:
        stmt = (
            select(DeliveryAttempt)
            .where(DeliveryAttempt.notification_id == notification_id)
            .order_by(DeliveryAttempt.channel, DeliveryAttempt.attempt_number)
        )
        return list(self._session.scalars(stmt))

    def mark_read(self, user_id: str, notification_id: uuid.UUID) -> Notification:
        """Idempotent: reading an already-read notification keeps the first read time."""

        notification = self.get(user_id, notification_id)
        if notification.read_at is None:
            notification.read_at = self._clock.now()
            self._session.flush()
            self._logger.info("notification_read", extra={"notification_id": str(notification_id), "user_id": user_id})
        return notification

    def mark_clicked(self, user_id: str, notification_id: uuid.UUID) -> Notification:
        """Record a click; a click implies the notification was read."""

        notification = self.get(user_id, notification_id)
        now = self._clock.now()
        changed = False
        if notification.clicked_at is None:
            notification.clicked_at = now
            changed = True
        if notification.read_at is None:
            notification.read_at = now
            changed = True
        if changed:
            self._session.flush()
            self._logger.info("notification_clicked", extra={"notification_id": str(notification_id), "user_id": user_id})
        return notification

    def delete(self, user_id: str, notification_id: uuid.UUID) -> None:
        """Idempotent soft delete; deleting a missing or deleted notification is a no-op."""

        notification = self._session.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id or notification.deleted_at is not None:
            return
        notification.deleted_at = self._clock.now()
        self._session.flush()
        self._logger.info("notification_deleted", extra={"notification_id": str(notification_id), "user_id": user_id})

    def list_failed(self, *, limit: int = 100) -> List[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.status == NotificationStatus.FAILED)
            .order_by(Notification.updated_at.desc())
            .limit(limit)
        )
        return list(self._session.scalars(stmt))

    def stats(self, user_id: Optional[str] = None) -> NotificationStats:
        scope = [Notification.deleted_at.is_(None)]
        if user_id is not None:
            scope.append(Notification.user_id == user_id)

        by_status: Dict[NotificationStatus, int] = {
            status: count
            for status, count in self._session.execute(
                select(Notification.status, func.count()).where(*scope).group_by(Notification.status)
            )
        }
        read, clicked = self._session.execute(
            select(func.count(Notification.read_at), func.count(Notification.clicked_at)).where(*scope)
        ).one()
        by_category = {
            category.value: count
            for category, count in self._session.execute(
                select(Notification.category, func.count()).where(*scope).group_by(Notification.category)
            )
        }

        by_channel: Dict[str, ChannelStats] = {}
        attempts = self._session.execute(
            select(DeliveryAttempt.channel, DeliveryAttempt.success, DeliveryAttempt.reason, func.count())
            .join(Notification, Notification.id == DeliveryAttempt.notification_id)
            .where(*scope)
            .group_by(DeliveryAttempt.channel, DeliveryAttempt.success, DeliveryAttempt.reason)
        )
        for channel, success, reason, count in attempts:
            stats = by_channel.setdefault(channel.value, ChannelStats())
            stats.attempts += count
            if reason in _SUPPRESSED:
                stats.suppressed += count
            elif success:
                stats.delivered += count
            else:
                stats.failed += count

        total = sum(by_status.values())
        sent = total - by_status.get(NotificationStatus.PENDING, 0)
        delivered = by_status.get(NotificationStatus.DELIVERED, 0)

        def rate(count: int) -> float:
            return round(count / sent * 100, 2) if sent else 0.0

        return NotificationStats(
            total=total,
            total_sent=sent,
            total_delivered=delivered,
            total_failed=by_status.get(NotificationStatus.FAILED, 0),
            total_read=read,
            total_clicked=clicked,
            delivery_rate=rate(delivered),
            open_rate=rate(read),
            click_rate=rate(clicked),
            by_channel=by_channel,
            by_category=by_category,
        )


def mark_all_read(session_factory: SessionFactory, user_id: str, *, clock: Optional[Clock] = None) -> MarkAllReadResult:
    """Best-effort: each unread notification is marked in its own transaction.

    A failure on one row is recorded and skipped; rows already marked stay marked.
    """

    clock = clock or SystemClock()
    logger = logging.getLogger("coachnotify.notifications.service")
    with session_scope(session_factory) as session:
        unread_ids = list(
            session.scalars(
                select(Notification.id)
                .where(Notification.user_id == user_id)
                .where(Notification.read_at.is_(None))
                .where(Notification.deleted_at.is_(None))
                .where(Notification.status != NotificationStatus.PENDING)
            )
        )

    result = MarkAllReadResult()
    for notification_id in unread_ids:
        try:
            with session_scope(session_factory) as session:
                changed = session.execute(
                    update(Notification)
                    .where(Notification.id == notification_id)
                    .where(Notification.read_at.is_(None))
                    .values(read_at=clock.now())
                ).rowcount
        except SQLAlchemyError:
            logger.exception("notification_mark_read_failed", extra={"notification_id": str(notification_id)})
            result.failed.append(notification_id)
            continue
        result.updated += changed or 0

    logger.info(
        "notifications_marked_all_read",
        extra={"user_id": user_id, "updated": result.updated, "failed": len(result.failed)},
    )
    return result
