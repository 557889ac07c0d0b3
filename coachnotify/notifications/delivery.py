"""Executes single channel deliveries and derives notification status."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.core.database import SessionFactory, session_scope
from coachnotify.models.notification import (
    AttemptReason,
    Channel,
    DeliveryAttempt,
    Notification,
    NotificationPriority,
    NotificationStatus,
)
from coachnotify.notifications.adapters import (
    DeliveryAdapter,
    DeliveryMessage,
    DeliveryTimeoutError,
    LoggingAdapter,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from coachnotify.notifications.preferences import PreferenceResolver, in_quiet_hours
from coachnotify.notifications.queue import DeliveryOutcome, DeliveryTask
from coachnotify.notifications.realtime import RealtimeHub
from coachnotify.schemas.notification import NotificationResponse

LOGGER = logging.getLogger("coachnotify.notifications.delivery")

# Channels that reach the user outside the app and therefore honour quiet hours / DND.
INTERRUPTIVE_CHANNELS = frozenset({Channel.EMAIL, Channel.PUSH, Channel.SMS})

_TERMINAL_FAILURE_REASONS = frozenset(
    {AttemptReason.PERMANENT_ERROR, AttemptReason.EXPIRED, AttemptReason.ABANDONED}
)


def realtime_message(kind: str, notification: Notification) -> Dict[str, object]:
    return {
        "type": f"notification.{kind}",
        "data": NotificationResponse.model_validate(notification).model_dump(mode="json"),
    }


@dataclass
class ChannelState:
    """Summary of one channel's attempt history."""

    attempts: int = 0
    succeeded: bool = False
    terminal_failure: bool = False

    def is_terminal(self, max_attempts: int) -> bool:
        return self.succeeded or self.terminal_failure or self.attempts >= max_attempts


def channel_states(session: Session, notification_id: uuid.UUID) -> Dict[Channel, ChannelState]:
    states: Dict[Channel, ChannelState] = {}
    rows = session.execute(
        select(DeliveryAttempt.channel, DeliveryAttempt.success, DeliveryAttempt.reason)
        .where(DeliveryAttempt.notification_id == notification_id)
        .order_by(DeliveryAttempt.attempt_number)
    )
    for channel, success, reason in rows:
        state = states.setdefault(channel, ChannelState())
        state.attempts += 1
        if success:
            state.succeeded = True
        elif reason in _TERMINAL_FAILURE_REASONS:
            state.terminal_failure = True
    return states


class DeliveryExecutor:
    """Runs one attempt of one channel for one notification.

    Preferences are read at delivery time so quiet hours and do-not-disturb
    changes made after the notification was queued still apply. Adapter calls
    happen outside any database transaction.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        adapters: Mapping[Channel, DeliveryAdapter],
        preferences: PreferenceResolver,
        hub: RealtimeHub,
        clock: Optional[Clock] = None,
        max_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._adapters = dict(adapters)
        self._preferences = preferences
        self._hub = hub
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def attempt(self, task: DeliveryTask) -> DeliveryOutcome:
        outcome, update_message, user_id = self._attempt(task)
        # Published after the transaction commits so subscribers never see uncommitted state.
        if update_message is not None and user_id is not None:
            self._hub.publish(user_id, update_message)
        return outcome

    def _attempt(self, task: DeliveryTask) -> Tuple[DeliveryOutcome, Optional[Dict[str, object]], Optional[str]]:
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            notification = session.get(Notification, task.notification_id)
            if notification is None or notification.deleted_at is not None:
                return DeliveryOutcome.SKIPPED, None, None
            if notification.status not in (NotificationStatus.SENT, NotificationStatus.DELIVERED):
                return DeliveryOutcome.SKIPPED, None, None
            state = channel_states(session, notification.id).get(task.channel, ChannelState())
            if state.is_terminal(self._max_attempts):
                return DeliveryOutcome.SKIPPED, None, None
            attempt_number = state.attempts + 1
            user_id = notification.user_id

            if notification.expires_at is not None and notification.expires_at <= now:
                self._record(session, notification.id, task.channel, attempt_number, now, False, AttemptReason.EXPIRED)
                return DeliveryOutcome.EXPIRED, self._expire(session, notification, now), user_id

            preferences = self._preferences.get(notification.user_id)
            suppression = self._suppression_reason(task.channel, notification.priority, preferences, now)
            if suppression is not None:
                self._record(session, notification.id, task.channel, attempt_number, now, True, suppression)
                LOGGER.info(
                    "notification_delivery_suppressed",
                    extra={
                        "notification_id": str(notification.id),
                        "channel": task.channel.value,
                        "reason": suppression.value,
                    },
                )
                return DeliveryOutcome.SUPPRESSED, self._refresh_status(session, notification, now), user_id

            message = DeliveryMessage(
                notification_id=notification.id,
                user_id=notification.user_id,
                channel=task.channel,
                category=notification.category,
                priority=notification.priority,
                title=notification.title,
                body=notification.body,
                data=dict(notification.data or {}),
                contact=preferences.contact,
            )

        reason, error = self._call_adapter(message)
        finished_at = self._clock.now()
        success = reason is AttemptReason.DELIVERED

        with session_scope(self._session_factory) as session:
            notification = session.get(Notification, task.notification_id)
            if notification is None:
                return DeliveryOutcome.SKIPPED, None, None
            self._record(session, notification.id, task.channel, attempt_number, finished_at, success, reason, error)
            if success:
                return DeliveryOutcome.DELIVERED, self._refresh_status(session, notification, finished_at), user_id
            if reason is AttemptReason.PERMANENT_ERROR or attempt_number >= self._max_attempts:
                LOGGER.warning(
                    "notification_channel_exhausted",
                    extra={
                        "notification_id": str(notification.id),
                        "channel": task.channel.value,
                        "attempts": attempt_number,
                        "error": error,
                    },
                )
                return DeliveryOutcome.FAILED, self._refresh_status(session, notification, finished_at), user_id
        return DeliveryOutcome.RETRY, None, None

    def abandon(self, task: DeliveryTask, error: str) -> DeliveryOutcome:
        """Give up on a channel whose attempts kept failing before an outcome was recorded."""

        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            notification = session.get(Notification, task.notification_id)
            if notification is None or notification.status is not NotificationStatus.SENT:
                return DeliveryOutcome.SKIPPED
            state = channel_states(session, notification.id).get(task.channel, ChannelState())
            if state.is_terminal(self._max_attempts):
                return DeliveryOutcome.SKIPPED
            self._record(
                session, notification.id, task.channel, state.attempts + 1, now, False, AttemptReason.ABANDONED, error
            )
            LOGGER.warning(
                "notification_channel_abandoned",
                extra={"notification_id": str(notification.id), "channel": task.channel.value, "error": error},
            )
            user_id = notification.user_id
            message = self._refresh_status(session, notification, now)
        if message is not None:
            self._hub.publish(user_id, message)
        return DeliveryOutcome.FAILED

    def pending_tasks(self, session: Session, notification: Notification) -> List[DeliveryTask]:
        """Tasks still owed for ``notification``, numbered after the attempts already made."""

        states = channel_states(session, notification.id)
        tasks = []
        for channel in notification.channel_set:
            state = states.get(channel, ChannelState())
            if not state.is_terminal(self._max_attempts):
                tasks.append(DeliveryTask(notification.id, channel, attempt=state.attempts + 1))
        return tasks

    def recover_inflight(self, *, limit: int = 1000) -> List[DeliveryTask]:
        """Rebuild queue membership from notifications that were sent but not finished."""

        with session_scope(self._session_factory) as session:
            stmt = (
                select(Notification)
                .where(Notification.status == NotificationStatus.SENT)
                .where(Notification.deleted_at.is_(None))
                .order_by(Notification.created_at)
                .limit(limit)
            )
            tasks: List[DeliveryTask] = []
            for notification in session.scalars(stmt):
                tasks.extend(self.pending_tasks(session, notification))
        if tasks:
            LOGGER.info("delivery_tasks_recovered", extra={"tasks": len(tasks)})
        return tasks

    def _call_adapter(self, message: DeliveryMessage) -> tuple[AttemptReason, Optional[str]]:
        adapter = self._adapters.get(message.channel) or LoggingAdapter(message.channel)
        log_extra = {
            "notification_id": str(message.notification_id),
            "channel": message.channel.value,
            "user_id": message.user_id,
        }
        try:
            adapter.deliver(message)
        except DeliveryTimeoutError as exc:
            LOGGER.warning("notification_delivery_timeout", extra={**log_extra, "error": str(exc)})
            return AttemptReason.TIMEOUT, str(exc) or "timed out"
        except TransientDeliveryError as exc:
            LOGGER.warning("notification_delivery_failed", extra={**log_extra, "error": str(exc)})
            return AttemptReason.TRANSIENT_ERROR, str(exc)
        except PermanentDeliveryError as exc:
            LOGGER.warning("notification_delivery_rejected", extra={**log_extra, "error": str(exc)})
            return AttemptReason.PERMANENT_ERROR, str(exc)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("notification_delivery_error", extra=log_extra)
            return AttemptReason.TRANSIENT_ERROR, f"{type(exc).__name__}: {exc}"
        LOGGER.info("notification_delivered", extra=log_extra)
        return AttemptReason.DELIVERED, None

    @staticmethod
    def _suppression_reason(channel, priority, preferences, now: datetime) -> Optional[AttemptReason]:
        # Urgent notifications bypass both do-not-disturb and quiet hours.
        if channel not in INTERRUPTIVE_CHANNELS or priority is NotificationPriority.URGENT:
            return None
        if preferences.do_not_disturb:
            return AttemptReason.SUPPRESSED_DO_NOT_DISTURB
        if in_quiet_hours(preferences.quiet_hours, now):
            return AttemptReason.SUPPRESSED_QUIET_HOURS
        return None

    @staticmethod
    def _record(
        session: Session,
        notification_id: uuid.UUID,
        channel: Channel,
        attempt_number: int,
        at: datetime,
        success: bool,
        reason: AttemptReason,
        error: Optional[str] = None,
    ) -> None:
        session.add(
            DeliveryAttempt(
                notification_id=notification_id,
                channel=channel,
                attempt_number=attempt_number,
                attempted_at=at,
                success=success,
                reason=reason,
                error=error[:1024] if error else None,
            )
        )
        session.flush()

    def _expire(self, session: Session, notification: Notification, now: datetime) -> Optional[Dict[str, object]]:
        result = session.execute(
            update(Notification)
            .where(Notification.id == notification.id)
            .where(Notification.status.in_([NotificationStatus.PENDING, NotificationStatus.SENT]))
            .values(status=NotificationStatus.EXPIRED, updated_at=now)
        )
        if not result.rowcount:
            return None
        session.refresh(notification)
        LOGGER.info("notification_expired", extra={"notification_id": str(notification.id)})
        return realtime_message("updated", notification)

    def _refresh_status(
        self, session: Session, notification: Notification, now: datetime
    ) -> Optional[Dict[str, object]]:
        """Derive the notification status from its channels' terminal outcomes.

        ``delivered`` as soon as any channel succeeded; ``failed`` only once
        every channel is terminal and none succeeded. Both transitions are
        conditional on the row still being ``sent`` so they can never both
        apply.
        """

        states = channel_states(session, notification.id)
        channels = notification.channel_set
        if any(states.get(channel, ChannelState()).succeeded for channel in channels):
            target = NotificationStatus.DELIVERED
            values = {"status": target, "delivered_at": now, "updated_at": now}
        elif all(states.get(channel, ChannelState()).is_terminal(self._max_attempts) for channel in channels):
            target = NotificationStatus.FAILED
            values = {"status": target, "updated_at": now}
        else:
            return None

        result = session.execute(
            update(Notification)
            .where(Notification.id == notification.id)
            .where(Notification.status == NotificationStatus.SENT)
            .values(**values)
        )
        if not result.rowcount:
            return None
        session.refresh(notification)
        LOGGER.info(
            "notification_status_changed",
            extra={"notification_id": str(notification.id), "status": target.value},
        )
        return realtime_message("updated", notification)

