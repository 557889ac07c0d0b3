"""Preference cache powered by Upstash Redis with in-memory fallback."""

from __future__ import annotations

import time
from threading import RLock
from typing import Callable, Dict, Optional, Protocol, Tuple

import httpx

from coachnotify.core.config import AppSettings
from coachnotify.schemas.preference import NotificationPreferences


class PreferenceCache(Protocol):
    """Contract for caching resolved user preferences."""

    def get(self, user_id: str) -> Optional[NotificationPreferences]:
        ...

    def set(self, preferences: NotificationPreferences) -> None:
        ...

    def invalidate(self, user_id: str) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryPreferenceCache(PreferenceCache):
    """Thread-safe TTL cache keyed by user id."""

    def __init__(self, ttl_seconds: float = 300, *, timer: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._timer = timer
        self._store: Dict[str, Tuple[float, NotificationPreferences]] = {}
        self._lock = RLock()

    def get(self, user_id: str) -> Optional[NotificationPreferences]:
        with self._lock:
            entry = self._store.get(user_id)
            if entry is None:
                return None
            expires_at, preferences = entry
            if self._timer() >= expires_at:
                self._store.pop(user_id, None)
                return None
            return preferences

    def set(self, preferences: NotificationPreferences) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._store[preferences.user_id] = (self._timer() + self._ttl, preferences)

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._store.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class RedisPreferenceCache(PreferenceCache):
    """Redis-backed cache using the Upstash REST API."""

    def __init__(self, *, url: str, token: str, prefix: str, ttl_seconds: int) -> None:
        self._client = httpx.Client(
            base_url=url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=5.0,
        )
        self._ttl_ms = max(ttl_seconds, 1) * 1000
        self._prefix = prefix

    def get(self, user_id: str) -> Optional[NotificationPreferences]:
        result = self._execute("GET", self._key(user_id))
        if result is None:
            return None
        return NotificationPreferences.model_validate_json(str(result))

    def set(self, preferences: NotificationPreferences) -> None:
        self._execute("SET", self._key(preferences.user_id), preferences.model_dump_json(), "PX", str(self._ttl_ms))

    def invalidate(self, user_id: str) -> None:
        self._execute("DEL", self._key(user_id))

    def clear(self) -> None:
        cursor = "0"
        while True:
            result = self._execute("SCAN", cursor, "MATCH", f"{self._prefix}:prefs:*", "COUNT", "100")
            cursor, keys = result if isinstance(result, list) else ("0", [])
            if keys:
                self._execute("DEL", *keys)
            if str(cursor) == "0":
                break

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:prefs:{user_id}"

    def _execute(self, *command: str) -> Optional[object]:
        response = self._client.post("/", json=list(command))
        response.raise_for_status()
        payload = response.json()
        return payload.get("result")


def build_preference_cache(settings: AppSettings) -> PreferenceCache:
    """Pick the Redis cache when credentials are configured, otherwise keep it in-process."""

    if settings.redis_url and settings.redis_token:
        return RedisPreferenceCache(
            url=settings.redis_url,
            token=settings.redis_token,
            prefix=settings.redis_cache_prefix,
            ttl_seconds=settings.preference_cache_ttl,
        )
    return InMemoryPreferenceCache(ttl_seconds=settings.preference_cache_ttl)
