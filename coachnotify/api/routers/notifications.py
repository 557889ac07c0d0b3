"""Notification submission and inbox endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Response, status

from coachnotify.api.dependencies import get_current_user_id, get_notification_service, get_pipeline
from coachnotify.models.notification import NotificationCategory
from coachnotify.notifications.service import NotificationFilter, NotificationService, mark_all_read
from coachnotify.pipeline import NotificationPipeline
from coachnotify.schemas.notification import (
    BulkFailure,
    BulkNotificationRequest,
    BulkNotificationResponse,
    DeliveryAttemptResponse,
    MarkAllReadResponse,
    NotificationDetail,
    NotificationPage,
    NotificationRequest,
    NotificationResponse,
    NotificationStats,
)

router = APIRouter()


@router.post(
    "",
    response_model=NotificationResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_notification(
    payload: NotificationRequest,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> NotificationResponse:
    notification = pipeline.engine.send(payload)
    return NotificationResponse.model_validate(notification, from_attributes=True)


@router.post(
    "/bulk",
    response_model=BulkNotificationResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_notifications_bulk(
    payload: BulkNotificationRequest,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> BulkNotificationResponse:
    result = pipeline.engine.send_bulk(payload.notifications)
    return BulkNotificationResponse(
        created=[notification.id for notification in result.sent],
        failed=[BulkFailure(index=index, user_id=request.user_id, error=error) for index, request, error in result.failed],
    )


@router.get(
    "",
    response_model=NotificationPage,
)
def list_notifications(
    unread: Optional[bool] = Query(default=None),
    category: Optional[NotificationCategory] = Query(default=None),
    created_after: Optional[datetime] = Query(default=None),
    created_before: Optional[datetime] = Query(default=None),
    q: Optional[str] = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationPage:
    filters = NotificationFilter(
        unread=unread,
        category=category,
        created_after=created_after,
        created_before=created_before,
        query=q,
    )
    items, total = service.list_for_user(user_id, filters, limit=limit, offset=offset)
    return NotificationPage(
        items=[NotificationResponse.model_validate(item, from_attributes=True) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/read-all",
    response_model=MarkAllReadResponse,
)
def read_all_notifications(
    user_id: str = Depends(get_current_user_id),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> MarkAllReadResponse:
    result = mark_all_read(pipeline.session_factory, user_id, clock=pipeline.clock)
    return MarkAllReadResponse(updated=result.updated, failed=result.failed)


@router.get(
    "/failed",
    response_model=List[NotificationResponse],
)
def list_failed_notifications(
    limit: int = Query(default=100, ge=1, le=500),
    service: NotificationService = Depends(get_notification_service),
) -> List[NotificationResponse]:
    return [NotificationResponse.model_validate(item, from_attributes=True) for item in service.list_failed(limit=limit)]


@router.get(
    "/stats",
    response_model=NotificationStats,
)
def notification_stats(
    x_user_id: Optional[str] = Header(default=None, max_length=128),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationStats:
    return service.stats(x_user_id)


@router.get(
    "/{notification_id}",
    response_model=NotificationDetail,
)
def get_notification(
    notification_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationDetail:
    notification = service.get(user_id, notification_id)
    summary = NotificationResponse.model_validate(notification, from_attributes=True)
    return NotificationDetail(
        **summary.model_dump(),
        attempts=[
            DeliveryAttemptResponse.model_validate(attempt, from_attributes=True)
            for attempt in service.attempts(notification_id)
        ],
    )


@router.post(
    "/{notification_id}/read",
    response_model=NotificationResponse,
)
def read_notification(
    notification_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationResponse:
    notification = service.mark_read(user_id, notification_id)
    return NotificationResponse.model_validate(notification, from_attributes=True)


@router.post(
    "/{notification_id}/click",
    response_model=NotificationResponse,
)
def click_notification(
    notification_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationResponse:
    notification = service.mark_clicked(user_id, notification_id)
    return NotificationResponse.model_validate(notification, from_attributes=True)


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_notification(
    notification_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: NotificationService = Depends(get_notification_service),
) -> Response:
    service.delete(user_id, notification_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
