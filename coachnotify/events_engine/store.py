"""Idempotency store for inbound provider events."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.core.database import SessionFactory, session_scope
from coachnotify.events_engine.errors import EventNotFoundError
from coachnotify.events_engine.schemas import StoredEvent
from coachnotify.models.inbound_event import EventStatus, InboundEvent
from coachnotify.schemas.event import ProviderEvent

LOGGER = logging.getLogger("coachnotify.events_engine.store")

_MAX_ERROR_LENGTH = 4000


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    RECLAIMED = "reclaimed"
    DUPLICATE = "duplicate"


class IdempotencyStore:
    """Durable record of every provider event, keyed by its external id.

    ``claim`` is the single serialisation point for concurrent deliveries of
    the same event: exactly one caller wins the unique insert (or, for a
    previously failed event, the conditional reclaim) and runs the handler.
    All later writes are single-row updates keyed by external id.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        retry_ceiling: int = 3,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._retry_ceiling = retry_ceiling
        self._clock = clock or SystemClock()

    @property
    def retry_ceiling(self) -> int:
        return self._retry_ceiling

    def claim(self, event: ProviderEvent, payload: dict, *, signature: Optional[str]) -> ClaimResult:
        now = self._clock.now()
        values = {
            "external_id": event.id,
            "event_type": event.type,
            "payload": payload,
            "signature": signature,
            "api_version": event.api_version,
            "livemode": event.livemode,
            "received_at": now,
            "last_attempt_at": now,
            "status": EventStatus.UNPROCESSED,
            "retry_count": 0,
        }
        with session_scope(self._session_factory) as session:
            inserted = self._insert_ignore(session, values)
        if inserted:
            return ClaimResult.CLAIMED
        # Provider redelivery of an event that failed earlier: run it again now
        # instead of waiting for the sweep.
        if self.reclaim(event.id):
            return ClaimResult.RECLAIMED
        return ClaimResult.DUPLICATE

    def reclaim(self, external_id: str) -> bool:
        """Move a failed event below the retry ceiling back to ``unprocessed``."""

        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(InboundEvent)
                .where(InboundEvent.external_id == external_id)
                .where(InboundEvent.status == EventStatus.FAILED)
                .where(InboundEvent.retry_count < self._retry_ceiling)
                .values(status=EventStatus.UNPROCESSED, last_attempt_at=self._clock.now())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    def reclaim_abandoned(self, external_id: str, *, older_than: datetime) -> bool:
        """Take over an event left ``unprocessed`` by a process that died mid-dispatch.

        The lease is renewed by bumping ``last_attempt_at``, so concurrent
        sweeps race on this conditional update and only one of them wins.
        """

        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(InboundEvent)
                .where(InboundEvent.external_id == external_id)
                .where(InboundEvent.status == EventStatus.UNPROCESSED)
                .where(InboundEvent.last_attempt_at <= older_than)
                .values(last_attempt_at=self._clock.now())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    def reset(self, external_id: str) -> bool:
        """Operator reprocess: failed or dead-lettered events start over with a fresh retry budget."""

        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(InboundEvent)
                .where(InboundEvent.external_id == external_id)
                .where(InboundEvent.status.in_([EventStatus.FAILED, EventStatus.DEAD_LETTER]))
                .values(status=EventStatus.UNPROCESSED, retry_count=0, last_attempt_at=self._clock.now())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    def load(self, external_id: str) -> StoredEvent:
        with session_scope(self._session_factory) as session:
            record = session.scalar(select(InboundEvent).where(InboundEvent.external_id == external_id))
            if record is None:
                raise EventNotFoundError(f"Event {external_id} not found")
            return StoredEvent.from_record(record)

    def status_of(self, external_id: str) -> Optional[EventStatus]:
        with session_scope(self._session_factory) as session:
            return session.scalar(select(InboundEvent.status).where(InboundEvent.external_id == external_id))

    def mark_processed(self, external_id: str, *, warning: Optional[str] = None) -> None:
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            session.execute(
                update(InboundEvent)
                .where(InboundEvent.external_id == external_id)
                .values(
                    status=EventStatus.PROCESSED,
                    processed_at=now,
                    last_attempt_at=now,
                    warning=warning[:1024] if warning else None,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )

    def mark_failed(self, external_id: str, error: str) -> EventStatus:
        """Record a handler failure; dead-letter the event once it reaches the retry ceiling."""

        with session_scope(self._session_factory) as session:
            record = session.scalar(select(InboundEvent).where(InboundEvent.external_id == external_id))
            if record is None:
                raise EventNotFoundError(f"Event {external_id} not found")
            retry_count = record.retry_count + 1
            status = EventStatus.DEAD_LETTER if retry_count >= self._retry_ceiling else EventStatus.FAILED
            session.execute(
                update(InboundEvent)
                .where(InboundEvent.external_id == external_id)
                .values(
                    status=status,
                    retry_count=retry_count,
                    last_error=error[:_MAX_ERROR_LENGTH],
                    last_attempt_at=self._clock.now(),
                )
                .execution_options(synchronize_session=False)
            )
        if status is EventStatus.DEAD_LETTER:
            LOGGER.error(
                "webhook_event_dead_lettered",
                extra={"external_id": external_id, "retry_count": retry_count, "error": error},
            )
        return status

    def due_for_retry(self, *, older_than: datetime, limit: int = 50) -> List[str]:
        """Failed events below the ceiling plus claims abandoned before ``older_than``."""

        with session_scope(self._session_factory) as session:
            stmt = (
                select(InboundEvent.external_id)
                .where(
                    or_(
                        and_(
                            InboundEvent.status == EventStatus.FAILED,
                            InboundEvent.retry_count < self._retry_ceiling,
                        ),
                        InboundEvent.status == EventStatus.UNPROCESSED,
                    )
                )
                .where(InboundEvent.last_attempt_at <= older_than)
                .order_by(InboundEvent.last_attempt_at)
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def purge(self, *, older_than: datetime) -> int:
        """Delete settled events (processed or dead-lettered) received before ``older_than``."""

        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(InboundEvent)
                .where(InboundEvent.status.in_([EventStatus.PROCESSED, EventStatus.DEAD_LETTER]))
                .where(InboundEvent.received_at < older_than)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    @staticmethod
    def _insert_ignore(session: Session, values: dict) -> bool:
        dialect_name = session.get_bind().dialect.name
        if dialect_name in ("sqlite", "postgresql"):
            factory = sqlite_insert if dialect_name == "sqlite" else pg_insert
            stmt = factory(InboundEvent).values(**values).on_conflict_do_nothing(index_elements=["external_id"])
            return bool(session.execute(stmt).rowcount)
        try:
            session.execute(insert(InboundEvent).values(**values))
            session.flush()
        except IntegrityError:
            session.rollback()
            return False
        return True
