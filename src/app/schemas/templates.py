# src/app/schemas/templates.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.app.domain.models import ConversionTemplate
from src.app.schemas.conversions import ConversionOptionsModel


class TemplateRequest(BaseModel):
    """Body for both create and update; an update replaces every field."""
    name: str = Field(..., max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    target_format: str
    options: ConversionOptionsModel = Field(default_factory=ConversionOptionsModel)


class TemplateResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    target_format: str
    options: dict[str, Any]
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_template(cls, template: ConversionTemplate) -> "TemplateResponse":
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            target_format=template.target_format,
            options=template.options.to_dict(),
            created_at=template.created_at,
            updated_at=template.updated_at,
        )
