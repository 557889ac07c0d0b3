"""Router registrations."""

from fastapi import APIRouter

from coachnotify.api.routers import (
    events,
    health,
    notifications,
    preferences,
    realtime,
    templates,
    webhooks,
)


def get_api_router() -> APIRouter:
    router = APIRouter()
    router.include_router(health.router, tags=["health"])
    router.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["webhooks"])
    router.include_router(events.router, prefix="/api/v1/events", tags=["events"])
    router.include_router(notifications.router, prefix="/api/v1/notifications", tags=["notifications"])
    router.include_router(preferences.router, prefix="/api/v1/preferences", tags=["preferences"])
    router.include_router(templates.router, prefix="/api/v1/templates", tags=["templates"])
    router.include_router(realtime.router, prefix="/api/v1/realtime", tags=["realtime"])
    return router
