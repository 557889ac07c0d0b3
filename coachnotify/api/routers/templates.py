"""Notification template endpoints."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from coachnotify.api.dependencies import get_template_service
from coachnotify.notifications.templates import TemplateService
from coachnotify.schemas.template import TemplateCreate, TemplateResponse

router = APIRouter()


@router.post(
    "",
    response_model=TemplateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_template(
    payload: TemplateCreate,
    service: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    template = service.create(payload)
    return TemplateResponse.model_validate(template, from_attributes=True)


@router.get("", response_model=List[TemplateResponse])
def list_templates(service: TemplateService = Depends(get_template_service)) -> List[TemplateResponse]:
    return [TemplateResponse.model_validate(template, from_attributes=True) for template in service.list_active()]
