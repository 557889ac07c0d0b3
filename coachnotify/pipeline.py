"""Wiring of the ingestion and notification pipeline components."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from coachnotify.core.clock import Clock, SystemClock
from coachnotify.core.config import AppSettings
from coachnotify.core.database import SessionFactory, SessionLocal, session_scope
from coachnotify.events_engine.gateway import EventGateway
from coachnotify.events_engine.handlers import default_router
from coachnotify.events_engine.router import EventHandler, EventRouter
from coachnotify.events_engine.schemas import EventType
from coachnotify.events_engine.signature import SignatureVerifier
from coachnotify.events_engine.store import IdempotencyStore
from coachnotify.events_engine.sweeper import RetrySweeper
from coachnotify.models.notification import Channel, Notification
from coachnotify.notifications.adapters import DeliveryAdapter, build_adapters
from coachnotify.notifications.delivery import DeliveryExecutor
from coachnotify.notifications.engine import NotificationEngine
from coachnotify.notifications.preference_cache import PreferenceCache, build_preference_cache
from coachnotify.notifications.preferences import PreferenceResolver
from coachnotify.notifications.queue import DeliveryQueue
from coachnotify.notifications.realtime import RealtimeHub
from coachnotify.notifications.scheduler import NotificationScheduler
from coachnotify.notifications.service import NotificationService
from coachnotify.workers.periodic import PeriodicWorker

LOGGER = logging.getLogger("coachnotify.pipeline")


@dataclass
class NotificationPipeline:
    """Every long-lived component of the service, built once per process."""

    settings: AppSettings
    clock: Clock
    session_factory: SessionFactory
    hub: RealtimeHub
    preferences: PreferenceResolver
    executor: DeliveryExecutor
    queue: DeliveryQueue
    engine: NotificationEngine
    scheduler: NotificationScheduler
    store: IdempotencyStore
    verifier: SignatureVerifier
    gateway: EventGateway
    sweeper: RetrySweeper
    workers: List[PeriodicWorker] = field(default_factory=list)
    started: bool = False

    def start(self) -> None:
        """Re-queue unfinished deliveries, then start queue workers and periodic jobs."""

        if self.started:
            return
        recovered = self.executor.recover_inflight()
        self.queue.enqueue_many(recovered)
        self.queue.start()
        for worker in self.workers:
            worker.start()
        self.started = True
        LOGGER.info("pipeline_started", extra={"recovered_tasks": len(recovered), "workers": len(self.workers)})

    def stop(self) -> None:
        if not self.started:
            return
        for worker in self.workers:
            worker.stop(timeout=self.settings.shutdown_grace_seconds)
        abandoned = self.queue.stop(self.settings.shutdown_grace_seconds)
        self.started = False
        LOGGER.info("pipeline_stopped", extra={"abandoned_tasks": abandoned})

    def recent_unread(self, user_id: str, limit: Optional[int] = None) -> List[Notification]:
        limit = self.settings.realtime_backfill_limit if limit is None else limit
        if limit <= 0:
            return []
        with session_scope(self.session_factory) as session:
            return NotificationService(session, clock=self.clock).recent_unread(user_id, limit)


def build_pipeline(
    settings: AppSettings,
    *,
    session_factory: Optional[SessionFactory] = None,
    clock: Optional[Clock] = None,
    adapters: Optional[Mapping[Channel, DeliveryAdapter]] = None,
    preference_cache: Optional[PreferenceCache] = None,
    routes: Optional[Mapping[EventType, EventHandler]] = None,
) -> NotificationPipeline:
    """Assemble the pipeline; overrides exist so tests can swap clock, adapters, and handlers."""

    session_factory = session_factory or SessionLocal
    clock = clock or SystemClock()
    hub = RealtimeHub()
    preferences = PreferenceResolver(session_factory, preference_cache or build_preference_cache(settings))

    executor = DeliveryExecutor(
        session_factory=session_factory,
        adapters=adapters if adapters is not None else build_adapters(settings),
        preferences=preferences,
        hub=hub,
        clock=clock,
        max_attempts=settings.delivery_max_attempts,
    )
    queue = DeliveryQueue(
        executor,
        clock=clock,
        worker_count=settings.delivery_worker_count,
        channel_concurrency=settings.delivery_channel_concurrency,
        backoff_base_seconds=settings.delivery_backoff_base_seconds,
        max_attempts=settings.delivery_max_attempts,
    )
    engine = NotificationEngine(
        session_factory=session_factory,
        preferences=preferences,
        queue=queue,
        hub=hub,
        clock=clock,
    )
    scheduler = NotificationScheduler(
        session_factory=session_factory,
        engine=engine,
        clock=clock,
        batch_size=settings.scheduler_batch_size,
    )

    store = IdempotencyStore(session_factory, retry_ceiling=settings.event_retry_ceiling, clock=clock)
    verifier = SignatureVerifier(
        settings.webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        clock=clock,
    )
    if routes is not None:
        router = EventRouter(routes)
    else:
        router = default_router(
            session_factory=session_factory,
            notifier=engine,
            clock=clock,
            coach_revenue_share=settings.coach_revenue_share,
        )
    gateway = EventGateway(
        store=store,
        router=router,
        verifier=verifier,
        max_payload_bytes=settings.max_payload_bytes,
    )
    sweeper = RetrySweeper(
        store=store,
        gateway=gateway,
        clock=clock,
        min_age_seconds=settings.event_retry_min_age_seconds,
        batch_size=settings.event_retry_batch_size,
        retention_days=settings.event_retention_days,
    )

    workers = [
        PeriodicWorker("notification-scheduler", settings.scheduler_interval_seconds, scheduler.run_once),
        PeriodicWorker("event-retry-sweeper", settings.event_retry_sweep_interval_seconds, sweeper.run_once),
    ]
    return NotificationPipeline(
        settings=settings,
        clock=clock,
        session_factory=session_factory,
        hub=hub,
        preferences=preferences,
        executor=executor,
        queue=queue,
        engine=engine,
        scheduler=scheduler,
        store=store,
        verifier=verifier,
        gateway=gateway,
        sweeper=sweeper,
        workers=workers,
    )
