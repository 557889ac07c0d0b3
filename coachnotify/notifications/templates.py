"""Notification templates with ``{{ variable }}`` placeholders."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, List, Mapping, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coachnotify.models.notification import NotificationTemplate
from coachnotify.schemas.template import TemplateCreate

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class TemplateError(ValueError):
    """Base class for template failures."""


class TemplateNotFoundError(TemplateError):
    """Raised when a template id does not resolve to an active template."""


class TemplateConflictError(TemplateError):
    """Raised when a template name is already taken."""


class TemplateRenderError(TemplateError):
    """Raised when a template references a variable that was not supplied."""


def placeholders(text: str) -> List[str]:
    seen: List[str] = []
    for name in _PLACEHOLDER.findall(text):
        if name not in seen:
            seen.append(name)
    return seen


def render(text: str, variables: Mapping[str, Any]) -> str:
    missing = [name for name in placeholders(text) if name not in variables]
    if missing:
        raise TemplateRenderError(f"Missing template variables: {', '.join(missing)}")
    return _PLACEHOLDER.sub(lambda match: str(variables[match.group(1)]), text)


class TemplateService:
    """Stores templates and renders them into notification title/body pairs."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._logger = logging.getLogger("coachnotify.notifications.templates")

    def create(self, payload: TemplateCreate) -> NotificationTemplate:
        variables = placeholders(payload.subject_template)
        variables += [name for name in placeholders(payload.body_template) if name not in variables]
        template = NotificationTemplate(
            name=payload.name,
            category=payload.category,
            subject_template=payload.subject_template,
            body_template=payload.body_template,
            channels=[channel.value for channel in payload.channels],
            variables=variables,
        )
        self._session.add(template)
        try:
            self._session.flush()
        except IntegrityError as exc:
            self._session.rollback()
            raise TemplateConflictError(f"Template '{payload.name}' already exists") from exc
        self._logger.info("notification_template_created", extra={"template_id": str(template.id), "name": template.name})
        return template

    def list_active(self) -> List[NotificationTemplate]:
        stmt = select(NotificationTemplate).where(NotificationTemplate.is_active.is_(True)).order_by(NotificationTemplate.name)
        return list(self._session.scalars(stmt))

    def get_active(self, template_id: uuid.UUID) -> NotificationTemplate:
        template = self._session.get(NotificationTemplate, template_id)
        if template is None or not template.is_active:
            raise TemplateNotFoundError(f"Template {template_id} not found")
        return template

    def render(self, template_id: uuid.UUID, variables: Mapping[str, Any]) -> Tuple[str, str]:
        template = self.get_active(template_id)
        return render(template.subject_template, variables), render(template.body_template, variables)
