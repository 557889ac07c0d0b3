import json
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("COACHNOTIFY_ENVIRONMENT", "test")
os.environ.setdefault("COACHNOTIFY_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("COACHNOTIFY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("COACHNOTIFY_BACKGROUND_WORKERS_ENABLED", "false")
os.environ.setdefault("COACHNOTIFY_REDIS_URL", "")
os.environ.setdefault("COACHNOTIFY_REDIS_TOKEN", "")
os.environ.setdefault("COACHNOTIFY_LOG_JSON", "false")

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from coachnotify.core.config import get_settings

get_settings.cache_clear()

from coachnotify.core.database import SessionLocal, engine  # noqa: E402
from coachnotify.main import create_app  # noqa: E402
from coachnotify.models import Base  # noqa: E402
from coachnotify.models.notification import Channel  # noqa: E402
from coachnotify.notifications.adapters import DeliveryMessage, DeliveryReceipt  # noqa: E402
from coachnotify.notifications.preference_cache import InMemoryPreferenceCache  # noqa: E402
from coachnotify.pipeline import NotificationPipeline, build_pipeline  # noqa: E402

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, **kwargs)
        return self.current


class RecordingAdapter:
    """Records every message; raises the queued failures first, in order."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel
        self.messages: List[DeliveryMessage] = []
        self.failures: List[Exception] = []
        self.always_fail: Optional[Exception] = None
        self._lock = threading.Lock()

    def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        with self._lock:
            self.messages.append(message)
            if self.always_fail is not None:
                raise self.always_fail
            if self.failures:
                raise self.failures.pop(0)
        return DeliveryReceipt(provider_message_id=f"{self.channel.value}-{len(self.messages)}")


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def adapters() -> Dict[Channel, RecordingAdapter]:
    return {channel: RecordingAdapter(channel) for channel in Channel}


@pytest.fixture()
def pipeline_factory(clock, adapters) -> Callable[..., NotificationPipeline]:
    def factory(**overrides) -> NotificationPipeline:
        overrides.setdefault("session_factory", SessionLocal)
        overrides.setdefault("clock", clock)
        overrides.setdefault("adapters", adapters)
        overrides.setdefault("preference_cache", InMemoryPreferenceCache())
        settings = overrides.pop("settings", None) or get_settings()
        return build_pipeline(settings, **overrides)

    return factory


@pytest.fixture()
def pipeline(pipeline_factory) -> NotificationPipeline:
    return pipeline_factory()


@pytest.fixture()
def client(pipeline) -> TestClient:  # noqa: ANN001
    app = create_app(pipeline=pipeline)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def provider_event() -> Callable[..., bytes]:
    def build(event_id: str, event_type: str, obj: Optional[dict] = None, **extra) -> bytes:
        payload = {
            "id": event_id,
            "type": event_type,
            "created": int(START.timestamp()),
            "livemode": False,
            "api_version": "2024-06-20",
            "data": {"object": obj or {}},
            **extra,
        }
        return json.dumps(payload).encode("utf-8")

    return build
