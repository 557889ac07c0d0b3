from __future__ import annotations

from datetime import timedelta

from coachnotify.core.database import SessionLocal, session_scope
from coachnotify.models.notification import Channel, NotificationCategory, NotificationStatus
from coachnotify.notifications.adapters import TransientDeliveryError
from coachnotify.notifications.service import NotificationFilter, NotificationService, mark_all_read
from coachnotify.schemas.notification import NotificationRequest


def _send(pipeline, clock, title: str, *, user_id: str = "client-1", category=NotificationCategory.COACH_MESSAGE):
    clock.advance(1)
    return pipeline.engine.send(
        NotificationRequest(user_id=user_id, category=category, title=title, body=f"{title} body")
    )


def test_read_and_click_are_independent_of_delivery_status(pipeline, clock, adapters) -> None:
    adapters[Channel.EMAIL].always_fail = TransientDeliveryError("down")
    notification = _send(pipeline, clock, "New message")

    with session_scope(SessionLocal) as session:
        read = NotificationService(session, clock=clock).mark_read("client-1", notification.id)
        first_read_at = read.read_at
        assert read.status is NotificationStatus.SENT

    clock.advance(5)
    with session_scope(SessionLocal) as session:
        service = NotificationService(session, clock=clock)
        again = service.mark_read("client-1", notification.id)
        assert again.read_at == first_read_at
        clicked = service.mark_clicked("client-1", notification.id)
        assert clicked.clicked_at == clock.now()
        assert clicked.read_at == first_read_at

    pipeline.queue.run_pending()
    with session_scope(SessionLocal) as session:
        reloaded = NotificationService(session).get("client-1", notification.id)
        assert reloaded.status is NotificationStatus.DELIVERED
        assert reloaded.read_at == first_read_at


def test_click_implies_read(pipeline, clock) -> None:
    notification = _send(pipeline, clock, "Tap me")

    with session_scope(SessionLocal) as session:
        clicked = NotificationService(session, clock=clock).mark_clicked("client-1", notification.id)

    assert clicked.read_at == clicked.clicked_at == clock.now()


def test_list_filters_and_pagination(pipeline, clock) -> None:
    first = _send(pipeline, clock, "Welcome aboard", category=NotificationCategory.WELCOME)
    _send(pipeline, clock, "Coach replied")
    _send(pipeline, clock, "Coach replied again")
    _send(pipeline, clock, "Someone else", user_id="client-2")

    with session_scope(SessionLocal) as session:
        service = NotificationService(session, clock=clock)
        service.mark_read("client-1", first.id)

        items, total = service.list_for_user("client-1", limit=2)
        assert total == 3
        assert [item.title for item in items] == ["Coach replied again", "Coach replied"]

        unread, unread_total = service.list_for_user("client-1", NotificationFilter(unread=True))
        assert unread_total == 2
        assert first.id not in {item.id for item in unread}

        welcome, _ = service.list_for_user("client-1", NotificationFilter(category=NotificationCategory.WELCOME))
        assert [item.id for item in welcome] == [first.id]

        searched, _ = service.list_for_user("client-1", NotificationFilter(query="AGAIN"))
        assert [item.title for item in searched] == ["Coach replied again"]


def test_delete_is_soft_and_idempotent(pipeline, clock) -> None:
    notification = _send(pipeline, clock, "Temporary")

    with session_scope(SessionLocal) as session:
        service = NotificationService(session, clock=clock)
        service.delete("client-1", notification.id)
        service.delete("client-1", notification.id)
        assert service.list_for_user("client-1") == ([], 0)

    with session_scope(SessionLocal) as session:
        service = NotificationService(session, clock=clock)
        assert service.stats("client-1").total == 0


def test_mark_all_read_only_touches_the_users_unread(pipeline, clock) -> None:
    _send(pipeline, clock, "One")
    _send(pipeline, clock, "Two")
    _send(pipeline, clock, "Other user", user_id="client-2")

    result = mark_all_read(SessionLocal, "client-1", clock=clock)
    repeat = mark_all_read(SessionLocal, "client-1", clock=clock)

    assert (result.updated, result.failed) == (2, [])
    assert repeat.updated == 0
    with session_scope(SessionLocal) as session:
        service = NotificationService(session)
        assert service.list_for_user("client-2", NotificationFilter(unread=True))[1] == 1


def test_stats_rates_and_channel_breakdown(pipeline, clock, adapters) -> None:
    adapters[Channel.PUSH].always_fail = TransientDeliveryError("down")
    delivered = _send(pipeline, clock, "Delivered")
    _send(pipeline, clock, "Also delivered")
    pipeline.queue.run_pending()

    with session_scope(SessionLocal) as session:
        service = NotificationService(session, clock=clock)
        service.mark_clicked("client-1", delivered.id)
        stats = service.stats("client-1")

    assert stats.total == stats.total_sent == 2
    assert stats.total_delivered == 2
    assert stats.delivery_rate == 100.0
    assert stats.open_rate == 50.0
    assert stats.click_rate == 50.0
    assert stats.by_category == {"coach_message": 2}
    assert stats.by_channel["email"].delivered == 2
    assert stats.by_channel["push"].failed == 2


def test_search_treats_wildcards_literally(pipeline, clock) -> None:
    _send(pipeline, clock, "50% off your next session")
    _send(pipeline, clock, "Session booked")
    _send(pipeline, clock, "new_feature unlocked")

    with session_scope(SessionLocal) as session:
        service = NotificationService(session, clock=clock)
        percent, percent_total = service.list_for_user("client-1", NotificationFilter(query="%"))
        underscore, _ = service.list_for_user("client-1", NotificationFilter(query="n_w"))

    assert percent_total == 1
    assert [item.title for item in percent] == ["50% off your next session"]
    assert underscore == []


def test_stats_count_scheduled_but_not_deleted(pipeline, clock) -> None:
    kept = _send(pipeline, clock, "Kept")
    removed = _send(pipeline, clock, "Removed")
    pipeline.engine.send(
        NotificationRequest(
            user_id="client-1",
            category=NotificationCategory.COACH_MESSAGE,
            title="Later",
            body="Later body",
            scheduled_for=clock.now() + timedelta(hours=1),
        )
    )
    _send(pipeline, clock, "Someone else", user_id="client-2")

    with session_scope(SessionLocal) as session:
        service = NotificationService(session, clock=clock)
        service.delete("client-1", removed.id)
        service.mark_read("client-1", kept.id)
        mine = service.stats("client-1")
        everyone = service.stats()

    assert (mine.total, mine.total_sent, mine.total_read) == (2, 1, 1)
    assert mine.open_rate == 100.0
    assert everyone.total == 3
    assert everyone.by_category == {"coach_message": 3}
