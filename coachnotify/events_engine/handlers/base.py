"""Shared plumbing for provider event handlers."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.core.database import SessionFactory, session_scope
from coachnotify.events_engine.errors import HandlerError
from coachnotify.events_engine.schemas import HandlerResult, StoredEvent
from coachnotify.models.notification import NotificationCategory, NotificationPriority
from coachnotify.notifications.engine import NoChannelsAvailableError, NotificationEngine
from coachnotify.schemas.notification import NotificationRequest


def format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    if amount is None:
        return "an unknown amount"
    return f"{amount / 100:.2f} {(currency or 'usd').upper()}"


class BaseEventHandler:
    """Base class for handlers: domain writes first, then notification requests.

    Subclasses implement ``handle``. Database errors surface as
    ``HandlerError`` so the gateway marks the event failed and the sweep
    retries it; notification failures are logged and never fail the event.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        notifier: NotificationEngine,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger(f"coachnotify.events_engine.handlers.{type(self).__name__}")

    def __call__(self, event: StoredEvent) -> HandlerResult:
        return self.handle(event)

    def handle(self, event: StoredEvent) -> HandlerResult:  # pragma: no cover - abstract
        raise NotImplementedError

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise HandlerError(f"Database error while handling event: {exc}") from exc

    def _notify(
        self,
        event: StoredEvent,
        *,
        user_id: Optional[str],
        category: NotificationCategory,
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        data: Optional[dict] = None,
    ) -> None:
        if not user_id:
            return
        request = NotificationRequest(
            user_id=user_id,
            category=category,
            title=title,
            body=body,
            priority=priority,
            data={"event_id": event.external_id, "event_type": event.raw_type, **(data or {})},
            dedupe_key=f"{event.external_id}:{category.value}:{user_id}",
        )
        try:
            self._notifier.send(request)
        except NoChannelsAvailableError:
            self._logger.info(
                "handler_notification_skipped",
                extra={"event_id": event.external_id, "user_id": user_id, "category": category.value},
            )
        except Exception:  # noqa: BLE001 - domain state is already committed
            self._logger.exception(
                "handler_notification_failed",
                extra={"event_id": event.external_id, "user_id": user_id, "category": category.value},
            )
