from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from coachnotify.core.database import SessionLocal, session_scope
from coachnotify.models.notification import Channel, Notification, NotificationCategory, NotificationStatus
from coachnotify.notifications.engine import NoChannelsAvailableError
from coachnotify.notifications.preferences import effective_channels
from coachnotify.schemas.notification import NotificationRequest
from coachnotify.schemas.preference import ChannelFlags, NotificationPreferences, PreferenceUpdate


def _request(**overrides) -> NotificationRequest:
    values = {
        "user_id": "user-1",
        "category": NotificationCategory.SESSION_REMINDER,
        "title": "Session tomorrow",
        "body": "Your session starts at 10:00.",
    }
    values.update(overrides)
    return NotificationRequest(**values)


def _count() -> int:
    with session_scope(SessionLocal) as session:
        return session.scalar(select(func.count()).select_from(Notification))


def test_effective_channels_is_subset_of_enabled_in_canonical_order() -> None:
    prefs = NotificationPreferences(user_id="u", channels=ChannelFlags(email=True, push=False, sms=True, in_app=True))

    assert effective_channels(prefs, NotificationCategory.SESSION_REMINDER) == [
        Channel.EMAIL,
        Channel.SMS,
        Channel.IN_APP,
    ]
    assert effective_channels(
        prefs, NotificationCategory.SESSION_REMINDER, [Channel.IN_APP, Channel.PUSH, Channel.EMAIL]
    ) == [Channel.EMAIL, Channel.IN_APP]
    assert effective_channels(prefs, NotificationCategory.MARKETING) == []


def test_send_uses_default_enabled_channels_and_enqueues_one_task_each(pipeline) -> None:
    notification = pipeline.engine.send(_request())

    assert notification.status is NotificationStatus.SENT
    assert notification.channels == ["email", "push", "in_app"]
    assert len(pipeline.queue) == 3


def test_marketing_is_opt_in(pipeline) -> None:
    with pytest.raises(NoChannelsAvailableError):
        pipeline.engine.send(_request(category=NotificationCategory.MARKETING))
    assert _count() == 0
    assert len(pipeline.queue) == 0

    pipeline.preferences.update("user-1", PreferenceUpdate(categories={NotificationCategory.MARKETING: True}))
    notification = pipeline.engine.send(_request(category=NotificationCategory.MARKETING))
    assert notification.category is NotificationCategory.MARKETING


def test_requested_channels_outside_preferences_raise(pipeline) -> None:
    with pytest.raises(NoChannelsAvailableError):
        pipeline.engine.send(_request(channels=[Channel.SMS]))
    assert _count() == 0


def test_dedupe_key_returns_existing_notification(pipeline) -> None:
    first = pipeline.engine.send(_request(dedupe_key="evt_1:session_reminder:user-1"))
    second = pipeline.engine.send(_request(dedupe_key="evt_1:session_reminder:user-1", title="Different"))

    assert second.id == first.id
    assert second.title == "Session tomorrow"
    assert _count() == 1
    assert len(pipeline.queue) == 3


def test_send_bulk_skips_failures(pipeline) -> None:
    requests = [
        _request(user_id="a"),
        _request(user_id="b", category=NotificationCategory.MARKETING),
        _request(user_id="c"),
    ]

    result = pipeline.engine.send_bulk(requests, batch_size=2)

    assert [n.user_id for n in result.sent] == ["a", "c"]
    assert [(index, request.user_id) for index, request, _ in result.failed] == [(1, "b")]


def test_future_schedule_is_held_pending(pipeline, clock) -> None:
    notification = pipeline.engine.send(_request(scheduled_for=clock.now() + timedelta(hours=1)))

    assert notification.status is NotificationStatus.PENDING
    assert len(pipeline.queue) == 0


def test_past_schedule_is_sent_immediately(pipeline, clock) -> None:
    notification = pipeline.engine.send(_request(scheduled_for=clock.now() - timedelta(minutes=5)))

    assert notification.status is NotificationStatus.SENT
    assert len(pipeline.queue) == 3


def test_already_expired_request_is_stored_but_never_delivered(pipeline, adapters, clock, monkeypatch) -> None:
    published = []
    monkeypatch.setattr(pipeline.hub, "publish", lambda user_id, message: published.append(message))

    notification = pipeline.engine.send(
        _request(channels=[Channel.IN_APP], expires_at=clock.now() - timedelta(minutes=5))
    )
    pipeline.queue.run_pending()

    assert notification.status is NotificationStatus.EXPIRED
    assert len(pipeline.queue) == 0
    assert published == []
    assert adapters[Channel.IN_APP].messages == []
