"""Channel preference resolution and quiet-hours evaluation."""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone, tzinfo
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coachnotify.core.database import SessionFactory, session_scope
from coachnotify.models.notification import (
    CHANNEL_ORDER,
    Channel,
    NotificationCategory,
    UserNotificationPreference,
)
from coachnotify.notifications.preference_cache import InMemoryPreferenceCache, PreferenceCache
from coachnotify.schemas.preference import (
    ChannelFlags,
    ContactDetails,
    NotificationPreferences,
    PreferenceUpdate,
    QuietHours,
    default_categories,
)

LOGGER = logging.getLogger("coachnotify.notifications.preferences")


def enabled_channels(preferences: NotificationPreferences) -> List[Channel]:
    flags = preferences.channels
    return [channel for channel in CHANNEL_ORDER if getattr(flags, channel.value)]


def category_enabled(preferences: NotificationPreferences, category: NotificationCategory) -> bool:
    if category.value in preferences.categories:
        return bool(preferences.categories[category.value])
    return default_categories()[category.value]


def effective_channels(
    preferences: NotificationPreferences,
    category: NotificationCategory,
    requested: Optional[Iterable[Channel]] = None,
) -> List[Channel]:
    """Intersect requested channels with the user's enabled channels and category opt-in.

    The result is always a subset of the channels the user currently allows,
    in canonical order, regardless of how many channels were requested.
    """

    if not category_enabled(preferences, category):
        return []
    allowed = enabled_channels(preferences)
    if requested is None:
        return allowed
    wanted = set(requested)
    return [channel for channel in allowed if channel in wanted]


def _zone(name: str) -> tzinfo:
    if name == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _parse_clock(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def in_quiet_hours(quiet_hours: QuietHours, at: datetime) -> bool:
    """Return True when ``at`` falls inside the user's local quiet window.

    Windows wrap past midnight when start > end (22:00-08:00). Start is
    inclusive and end exclusive; an empty window (start == end) never matches.
    """

    if not quiet_hours.enabled:
        return False
    start = _parse_clock(quiet_hours.start)
    end = _parse_clock(quiet_hours.end)
    if start == end:
        return False
    local = at.astimezone(_zone(quiet_hours.timezone)).time().replace(second=0, microsecond=0)
    if start < end:
        return start <= local < end
    return local >= start or local < end


def _snapshot(row: UserNotificationPreference) -> NotificationPreferences:
    categories = default_categories()
    categories.update({str(key): bool(value) for key, value in (row.categories or {}).items()})
    return NotificationPreferences(
        user_id=row.user_id,
        channels=ChannelFlags(
            email=row.email_enabled,
            push=row.push_enabled,
            sms=row.sms_enabled,
            in_app=row.in_app_enabled,
        ),
        categories=categories,
        frequency=row.frequency,
        quiet_hours=QuietHours(
            enabled=row.quiet_hours_enabled,
            start=row.quiet_hours_start,
            end=row.quiet_hours_end,
            timezone=row.timezone,
        ),
        do_not_disturb=row.do_not_disturb,
        contact=ContactDetails.model_validate(row.contact or {}),
    )


class PreferenceResolver:
    """Reads (creating defaults on first use) and updates user preferences."""

    def __init__(self, session_factory: SessionFactory, cache: Optional[PreferenceCache] = None) -> None:
        self._session_factory = session_factory
        self._cache = cache or InMemoryPreferenceCache()

    def get(self, user_id: str) -> NotificationPreferences:
        cached = self._cache_get(user_id)
        if cached is not None:
            return cached
        with session_scope(self._session_factory) as session:
            row = self._load_or_create(session, user_id)
            preferences = _snapshot(row)
        self._cache_set(preferences)
        return preferences

    def update(self, user_id: str, changes: PreferenceUpdate) -> NotificationPreferences:
        with session_scope(self._session_factory) as session:
            row = self._load_or_create(session, user_id)
            if changes.channels is not None:
                row.email_enabled = changes.channels.email
                row.push_enabled = changes.channels.push
                row.sms_enabled = changes.channels.sms
                row.in_app_enabled = changes.channels.in_app
            if changes.categories is not None:
                merged = dict(row.categories or {})
                merged.update({category.value: enabled for category, enabled in changes.categories.items()})
                row.categories = merged
            if changes.frequency is not None:
                row.frequency = changes.frequency
            if changes.quiet_hours is not None:
                row.quiet_hours_enabled = changes.quiet_hours.enabled
                row.quiet_hours_start = changes.quiet_hours.start
                row.quiet_hours_end = changes.quiet_hours.end
                row.timezone = changes.quiet_hours.timezone
            if changes.do_not_disturb is not None:
                row.do_not_disturb = changes.do_not_disturb
            if changes.contact is not None:
                row.contact = changes.contact.model_dump()
            session.flush()
            preferences = _snapshot(row)

        self._cache_invalidate(user_id)
        LOGGER.info(
            "notification_preferences_updated",
            extra={"user_id": user_id, "fields": sorted(changes.model_dump(exclude_none=True))},
        )
        return preferences

    def _load_or_create(self, session: Session, user_id: str) -> UserNotificationPreference:
        row = session.get(UserNotificationPreference, user_id)
        if row is not None:
            return row
        row = UserNotificationPreference(user_id=user_id, categories=default_categories(), contact={})
        session.add(row)
        try:
            session.flush()
        except IntegrityError:
            # Another request created the defaults first.
            session.rollback()
            existing = session.get(UserNotificationPreference, user_id)
            if existing is None:
                raise
            return existing
        LOGGER.info("notification_preferences_created", extra={"user_id": user_id})
        return row

    def _cache_get(self, user_id: str) -> Optional[NotificationPreferences]:
        try:
            return self._cache.get(user_id)
        except httpx.HTTPError:
            LOGGER.warning("preference_cache_unavailable", extra={"user_id": user_id, "operation": "get"})
            return None

    def _cache_set(self, preferences: NotificationPreferences) -> None:
        try:
            self._cache.set(preferences)
        except httpx.HTTPError:
            LOGGER.warning("preference_cache_unavailable", extra={"user_id": preferences.user_id, "operation": "set"})

    def _cache_invalidate(self, user_id: str) -> None:
        try:
            self._cache.invalidate(user_id)
        except httpx.HTTPError:
            LOGGER.warning("preference_cache_unavailable", extra={"user_id": user_id, "operation": "invalidate"})
