"""Per-user notification preference endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from coachnotify.api.dependencies import get_current_user_id, get_pipeline
from coachnotify.pipeline import NotificationPipeline
from coachnotify.schemas.preference import NotificationPreferences, PreferenceUpdate

router = APIRouter()


@router.get("", response_model=NotificationPreferences)
def get_preferences(
    user_id: str = Depends(get_current_user_id),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> NotificationPreferences:
    return pipeline.preferences.get(user_id)


@router.patch("", response_model=NotificationPreferences)
def update_preferences(
    payload: PreferenceUpdate,
    user_id: str = Depends(get_current_user_id),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> NotificationPreferences:
    return pipeline.preferences.update(user_id, payload)
