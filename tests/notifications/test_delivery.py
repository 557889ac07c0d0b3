from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from coachnotify.core.database import SessionLocal, session_scope
from coachnotify.models.notification import (
    AttemptReason,
    Channel,
    DeliveryAttempt,
    Notification,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
)
from coachnotify.notifications.adapters import DeliveryTimeoutError, PermanentDeliveryError, TransientDeliveryError
from coachnotify.notifications.queue import backoff_delay
from coachnotify.schemas.notification import NotificationRequest
from coachnotify.schemas.preference import ChannelFlags, PreferenceUpdate, QuietHours


def _send(pipeline, **overrides) -> Notification:
    values = {
        "user_id": "user-1",
        "category": NotificationCategory.SESSION_REMINDER,
        "title": "Reminder",
        "body": "Your session starts soon.",
    }
    values.update(overrides)
    return pipeline.engine.send(NotificationRequest(**values))


def _reload(notification_id) -> Notification:
    with session_scope(SessionLocal) as session:
        return session.get(Notification, notification_id)


def _attempts(notification_id, channel: Channel):
    with session_scope(SessionLocal) as session:
        return list(
            session.scalars(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.notification_id == notification_id)
                .where(DeliveryAttempt.channel == channel)
                .order_by(DeliveryAttempt.attempt_number)
            )
        )


def test_backoff_doubles() -> None:
    assert [backoff_delay(1.0, attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_failing_channel_retries_with_backoff_while_other_channel_delivers(pipeline, adapters, clock) -> None:
    pipeline.preferences.update("user-1", PreferenceUpdate(channels=ChannelFlags(email=True, push=False, sms=True, in_app=False)))
    adapters[Channel.SMS].always_fail = TransientDeliveryError("carrier unavailable")
    start = clock.now()
    notification = _send(pipeline, channels=[Channel.EMAIL, Channel.SMS])

    assert pipeline.queue.run_pending() == 2
    assert _reload(notification.id).status is NotificationStatus.DELIVERED

    clock.advance(1)
    assert pipeline.queue.run_pending() == 1
    clock.advance(1)
    assert pipeline.queue.run_pending() == 0
    clock.advance(1)
    assert pipeline.queue.run_pending() == 1
    assert len(pipeline.queue) == 0

    attempts = _attempts(notification.id, Channel.SMS)
    assert [a.attempt_number for a in attempts] == [1, 2, 3]
    assert [a.attempted_at for a in attempts] == [start, start + timedelta(seconds=1), start + timedelta(seconds=3)]
    assert all(a.reason is AttemptReason.TRANSIENT_ERROR for a in attempts)
    assert len(adapters[Channel.EMAIL].messages) == 1
    assert _reload(notification.id).status is NotificationStatus.DELIVERED


def test_all_channels_exhausted_marks_failed(pipeline, adapters, clock) -> None:
    adapters[Channel.EMAIL].always_fail = TransientDeliveryError("smtp down")
    notification = _send(pipeline, channels=[Channel.EMAIL])

    for _ in range(3):
        pipeline.queue.run_pending()
        clock.advance(5)

    assert len(adapters[Channel.EMAIL].messages) == 3
    assert _reload(notification.id).status is NotificationStatus.FAILED


def test_permanent_error_is_not_retried(pipeline, adapters) -> None:
    adapters[Channel.PUSH].always_fail = PermanentDeliveryError("no push tokens")
    notification = _send(pipeline, channels=[Channel.PUSH])

    pipeline.queue.run_pending()

    assert len(pipeline.queue) == 0
    [attempt] = _attempts(notification.id, Channel.PUSH)
    assert attempt.reason is AttemptReason.PERMANENT_ERROR
    assert _reload(notification.id).status is NotificationStatus.FAILED


def test_transient_error_then_success(pipeline, adapters, clock) -> None:
    adapters[Channel.EMAIL].failures = [TransientDeliveryError("blip")]
    notification = _send(pipeline, channels=[Channel.EMAIL])

    pipeline.queue.run_pending()
    assert _reload(notification.id).status is NotificationStatus.SENT
    clock.advance(1)
    pipeline.queue.run_pending()

    reloaded = _reload(notification.id)
    assert reloaded.status is NotificationStatus.DELIVERED
    assert reloaded.delivered_at == clock.now()


def test_do_not_disturb_suppresses_interruptive_channels_only(pipeline, adapters) -> None:
    pipeline.preferences.update("user-1", PreferenceUpdate(do_not_disturb=True))
    notification = _send(pipeline, channels=[Channel.EMAIL, Channel.IN_APP])

    pipeline.queue.run_pending()

    assert adapters[Channel.EMAIL].messages == []
    assert len(adapters[Channel.IN_APP].messages) == 1
    [email] = _attempts(notification.id, Channel.EMAIL)
    assert email.success and email.reason is AttemptReason.SUPPRESSED_DO_NOT_DISTURB
    assert _reload(notification.id).status is NotificationStatus.DELIVERED


def test_quiet_hours_suppress_but_urgent_bypasses(pipeline, adapters, clock) -> None:
    clock.current = datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc)
    pipeline.preferences.update(
        "user-1",
        PreferenceUpdate(quiet_hours=QuietHours(enabled=True, start="22:00", end="08:00", timezone="UTC")),
    )

    quiet = _send(pipeline, channels=[Channel.EMAIL])
    urgent = _send(pipeline, channels=[Channel.EMAIL], priority=NotificationPriority.URGENT)
    pipeline.queue.run_pending()

    [suppressed] = _attempts(quiet.id, Channel.EMAIL)
    assert suppressed.reason is AttemptReason.SUPPRESSED_QUIET_HOURS
    [delivered] = _attempts(urgent.id, Channel.EMAIL)
    assert delivered.reason is AttemptReason.DELIVERED
    assert [m.notification_id for m in adapters[Channel.EMAIL].messages] == [urgent.id]


def test_preferences_are_read_at_delivery_time(pipeline, adapters) -> None:
    notification = _send(pipeline, channels=[Channel.EMAIL])
    pipeline.preferences.update("user-1", PreferenceUpdate(do_not_disturb=True))

    pipeline.queue.run_pending()

    [attempt] = _attempts(notification.id, Channel.EMAIL)
    assert attempt.reason is AttemptReason.SUPPRESSED_DO_NOT_DISTURB
    assert adapters[Channel.EMAIL].messages == []


def test_expired_notification_is_not_delivered(pipeline, adapters, clock) -> None:
    notification = _send(pipeline, channels=[Channel.EMAIL, Channel.IN_APP], expires_at=clock.now() + timedelta(seconds=10))
    clock.advance(20)

    pipeline.queue.run_pending()

    assert adapters[Channel.EMAIL].messages == []
    assert adapters[Channel.IN_APP].messages == []
    assert _reload(notification.id).status is NotificationStatus.EXPIRED
    [attempt] = _attempts(notification.id, Channel.EMAIL)
    assert attempt.reason is AttemptReason.EXPIRED


def test_deleted_notification_is_skipped(pipeline, adapters) -> None:
    notification = _send(pipeline, channels=[Channel.EMAIL])
    with session_scope(SessionLocal) as session:
        session.get(Notification, notification.id).deleted_at = datetime(2026, 3, 2, tzinfo=timezone.utc)

    pipeline.queue.run_pending()

    assert adapters[Channel.EMAIL].messages == []


def test_recover_inflight_rebuilds_outstanding_tasks(pipeline, adapters, clock) -> None:
    adapters[Channel.SMS].failures = [TransientDeliveryError("blip")]
    pipeline.preferences.update("user-1", PreferenceUpdate(channels=ChannelFlags(email=True, push=False, sms=True, in_app=False)))
    notification = _send(pipeline, channels=[Channel.SMS])
    pipeline.queue.run_pending()
    pipeline.queue.stop(grace_seconds=0)

    tasks = pipeline.executor.recover_inflight()

    assert [(t.notification_id, t.channel, t.attempt) for t in tasks] == [(notification.id, Channel.SMS, 2)]


def test_adapter_timeout_counts_as_failed_attempt_and_backs_off(pipeline, adapters, clock) -> None:
    adapters[Channel.EMAIL].always_fail = DeliveryTimeoutError("ses timed out after 5s")
    start = clock.now()
    notification = _send(pipeline, channels=[Channel.EMAIL])

    pipeline.queue.run_pending()
    assert pipeline.queue.next_due_in() == 1.0
    clock.advance(1)
    pipeline.queue.run_pending()
    clock.advance(2)
    pipeline.queue.run_pending()

    attempts = _attempts(notification.id, Channel.EMAIL)
    assert [a.reason for a in attempts] == [AttemptReason.TIMEOUT] * 3
    assert [a.attempted_at for a in attempts] == [start, start + timedelta(seconds=1), start + timedelta(seconds=3)]
    assert len(pipeline.queue) == 0
    assert _reload(notification.id).status is NotificationStatus.FAILED


def test_crash_on_final_attempt_still_settles_the_notification(pipeline, adapters, clock, monkeypatch) -> None:
    adapters[Channel.EMAIL].always_fail = TransientDeliveryError("smtp down")
    attempt = pipeline.executor.attempt

    def crash_on_last(task):
        if task.attempt == 3:
            raise RuntimeError("database unavailable")
        return attempt(task)

    monkeypatch.setattr(pipeline.executor, "attempt", crash_on_last)
    notification = _send(pipeline, channels=[Channel.EMAIL])

    pipeline.queue.run_pending()
    clock.advance(1)
    pipeline.queue.run_pending()
    clock.advance(2)
    pipeline.queue.run_pending()

    attempts = _attempts(notification.id, Channel.EMAIL)
    assert [a.reason for a in attempts] == [
        AttemptReason.TRANSIENT_ERROR,
        AttemptReason.TRANSIENT_ERROR,
        AttemptReason.ABANDONED,
    ]
    assert attempts[-1].error == "RuntimeError: database unavailable"
    assert len(pipeline.queue) == 0
    assert _reload(notification.id).status is NotificationStatus.FAILED
