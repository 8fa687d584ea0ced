from __future__ import annotations

import pytest
from datetime import datetime, timezone
from uuid import uuid4

from src.app.domain.errors import InvalidTemplateError, TemplateNameExistsError, TemplateNotFoundError
from src.app.domain.models import ConversionOptions
from src.app.services.conversion_service import ConversionRequest
from src.app.services.template_service import TemplateService
from tests.unit.stubs import ConversionTemplateRepositoryStub

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def create_service() -> tuple[TemplateService, ConversionTemplateRepositoryStub]:
    repo = ConversionTemplateRepositoryStub()
    return TemplateService(repo, now=lambda: NOW), repo


class TestTemplateCrud:
    def test_create_persists(self) -> None:
        service, repo = create_service()
        user_id = uuid4()

        template = service.create_template(user_id, "Invoices", "pdf", ConversionOptions(page_size="A4"), "Monthly")

        assert repo.templates[template.id].options.page_size == "A4"
        assert template.description == "Monthly"
        assert template.created_at == NOW

    def test_same_name_rejected_per_user_only(self) -> None:
        service, _ = create_service()
        user_id = uuid4()
        service.create_template(user_id, "Invoices", "pdf")

        with pytest.raises(TemplateNameExistsError):
            service.create_template(user_id, " Invoices ", "png")
        service.create_template(uuid4(), "Invoices", "pdf")

    def test_invalid_template_not_persisted(self) -> None:
        service, repo = create_service()

        with pytest.raises(InvalidTemplateError):
            service.create_template(uuid4(), "Raw", "tiff")

        assert repo.templates == {}

    def test_list_is_scoped_and_filtered(self) -> None:
        service, _ = create_service()
        user_id = uuid4()
        service.create_template(user_id, "b-pdf", "pdf")
        service.create_template(user_id, "a-png", "png")
        service.create_template(uuid4(), "other", "pdf")

        assert [t.name for t in service.list_templates(user_id)] == ["a-png", "b-pdf"]
        assert [t.name for t in service.list_templates(user_id, "PDF")] == ["b-pdf"]
        assert len(service.list_templates(user_id, "  ")) == 2

    def test_update_keeps_own_name(self) -> None:
        service, repo = create_service()
        user_id = uuid4()
        template = service.create_template(user_id, "Invoices", "pdf")

        updated = service.update_template(user_id, template.id, "Invoices", "html", ConversionOptions(dpi=96))

        assert updated.target_format == "html"
        assert updated.updated_at == NOW
        assert repo.templates[template.id].options.dpi == 96

    def test_update_to_taken_name_rejected(self) -> None:
        service, repo = create_service()
        user_id = uuid4()
        service.create_template(user_id, "Invoices", "pdf")
        other = service.create_template(user_id, "Receipts", "pdf")

        with pytest.raises(TemplateNameExistsError):
            service.update_template(user_id, other.id, "Invoices", "pdf")

        assert repo.templates[other.id].name == "Receipts"

    def test_foreign_template_is_not_found(self) -> None:
        service, repo = create_service()
        template = service.create_template(uuid4(), "Invoices", "pdf")

        with pytest.raises(TemplateNotFoundError):
            service.get_template(uuid4(), template.id)
        with pytest.raises(TemplateNotFoundError):
            service.delete_template(uuid4(), template.id)

        assert template.id in repo.templates

    def test_delete(self) -> None:
        service, repo = create_service()
        user_id = uuid4()
        template = service.create_template(user_id, "Invoices", "pdf")

        service.delete_template(user_id, template.id)

        assert repo.templates == {}


class TestApplyTemplate:
    def test_request_without_template_unchanged(self) -> None:
        service, _ = create_service()
        request = ConversionRequest(html_content="<p/>")

        assert service.apply(uuid4(), request) is request

    def test_merges_options_and_target(self) -> None:
        service, _ = create_service()
        user_id = uuid4()
        template = service.create_template(user_id, "Thumbs", "webp", ConversionOptions(image_width=200, image_quality=70))
        request = ConversionRequest(
            data="aGk=",
            source_format="png",
            options=ConversionOptions(image_quality=90),
            template_id=template.id,
        )

        merged = service.apply(user_id, request)

        assert merged.target_format == "webp"
        assert merged.options == ConversionOptions(image_width=200, image_quality=90)
        assert request.options == ConversionOptions(image_quality=90)

    def test_explicit_target_kept(self) -> None:
        service, _ = create_service()
        user_id = uuid4()
        template = service.create_template(user_id, "Thumbs", "webp")

        merged = service.apply(user_id, ConversionRequest(target_format="gif", template_id=template.id))

        assert merged.target_format == "gif"
