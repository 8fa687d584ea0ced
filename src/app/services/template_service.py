# src/app/services/template_service.py
"""
Conversion templates: named option presets owned by one user.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional
from uuid import UUID

from src.app.domain.errors import TemplateNameExistsError, TemplateNotFoundError
from src.app.domain.models import ConversionOptions, ConversionTemplate, normalize_format
from src.app.infra.db.base import ConversionTemplateRepository

if TYPE_CHECKING:
    from src.app.services.conversion_service import ConversionRequest

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class TemplateService:
    """
    CRUD for conversion templates, always scoped to the calling user.

    A template owned by someone else is reported as not found.
    """

    def __init__(
        self,
        repository: ConversionTemplateRepository,
        now: Callable[[], datetime] = _now_utc,
    ):
        self._repo = repository
        self._now = now

    def list_templates(self, user_id: UUID, target_format: Optional[str] = None) -> list[ConversionTemplate]:
        fmt = normalize_format(target_format) if target_format and target_format.strip() else None
        return self._repo.get_by_user(user_id, fmt)

    def get_template(self, user_id: UUID, template_id: UUID) -> ConversionTemplate:
        """
        Raises:
            TemplateNotFoundError: If absent or owned by another user
        """
        template = self._repo.get_by_id_for_user(template_id, user_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def create_template(
        self,
        user_id: UUID,
        name: str,
        target_format: str,
        options: Optional[ConversionOptions] = None,
        description: Optional[str] = None,
    ) -> ConversionTemplate:
        """
        Raises:
            InvalidTemplateError: If the name is blank or the format unsupported
            TemplateNameExistsError: If the user already has a template by that name
        """
        template = ConversionTemplate.create(
            user_id=user_id,
            name=name,
            target_format=target_format,
            options=options,
            description=description,
            now=self._now(),
        )
        if self._repo.name_exists(user_id, template.name):
            raise TemplateNameExistsError(template.name)

        self._repo.add(template)
        logger.info(
            "Created template: id=%s, user=%s, name=%s, target=%s",
            template.id, user_id, template.name, template.target_format,
        )
        return template

    def update_template(
        self,
        user_id: UUID,
        template_id: UUID,
        name: str,
        target_format: str,
        options: Optional[ConversionOptions] = None,
        description: Optional[str] = None,
    ) -> ConversionTemplate:
        template = self.get_template(user_id, template_id)
        template.update(
            name=name,
            target_format=target_format,
            options=options,
            description=description,
            now=self._now(),
        )
        if self._repo.name_exists(user_id, template.name, exclude_id=template.id):
            raise TemplateNameExistsError(template.name)

        self._repo.update(template)
        logger.info("Updated template: id=%s, user=%s", template.id, user_id)
        return template

    def delete_template(self, user_id: UUID, template_id: UUID) -> None:
        template = self.get_template(user_id, template_id)
        self._repo.delete(template.id)
        logger.info("Deleted template: id=%s, user=%s", template.id, user_id)

    def apply(self, user_id: UUID, request: ConversionRequest) -> ConversionRequest:
        """
        Merge the referenced template into a conversion request.

        The template's options fill every option the request leaves unset,
        and its target format is used when the request names none.

        Raises:
            TemplateNotFoundError: If the template is not visible to the user
        """
        if request.template_id is None:
            return request

        template = self.get_template(user_id, request.template_id)
        logger.debug("Applying template %s to %s conversion", template.id, request.type)
        return replace(
            request,
            options=request.options.with_defaults(template.options),
            target_format=request.target_format or template.target_format,
        )
