# src/app/infra/converters/base.py
"""
Converter interface and registry.
Rendering itself happens in an external conversion service; this module only
knows which format pairs exist and how to hand bytes to that service.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import httpx

from src.app.domain.errors import ConversionFailedError
from src.app.domain.models import ConversionOptions, normalize_format

logger = logging.getLogger(__name__)

IMAGE_FORMATS = ("png", "jpeg", "webp")

SUPPORTED_CONVERSIONS: tuple[tuple[str, str], ...] = (
    ("html", "pdf"),
    *(("html", target) for target in IMAGE_FORMATS),
    ("markdown", "pdf"),
    ("markdown", "html"),
    *(("pdf", target) for target in IMAGE_FORMATS),
    ("docx", "pdf"),
    ("xlsx", "pdf"),
    *((source, target) for source in IMAGE_FORMATS for target in IMAGE_FORMATS if source != target),
)


class Converter(ABC):
    """A pure bytes-to-bytes transformation for one format pair."""

    @property
    @abstractmethod
    def source_format(self) -> str:
        pass

    @property
    @abstractmethod
    def target_format(self) -> str:
        pass

    @abstractmethod
    def convert(self, data: bytes, options: ConversionOptions) -> bytes:
        """
        Convert input bytes to the target format.

        Args:
            data: Decoded input
            options: Rendering options

        Returns:
            The converted output

        Raises:
            ConversionFailedError: If the conversion cannot be performed
        """
        pass


class ConverterRegistry:
    def __init__(self, converters: Iterable[Converter] = ()):
        self._converters: dict[tuple[str, str], Converter] = {}
        for converter in converters:
            self.register(converter)

    def register(self, converter: Converter) -> None:
        key = (normalize_format(converter.source_format), normalize_format(converter.target_format))
        self._converters[key] = converter

    def get(self, source_format: str, target_format: str) -> Optional[Converter]:
        return self._converters.get((normalize_format(source_format), normalize_format(target_format)))

    def is_supported(self, source_format: str, target_format: str) -> bool:
        return self.get(source_format, target_format) is not None


class RemoteConverter(Converter):
    """Delegates one format pair to the external conversion service over HTTP."""

    def __init__(
        self,
        source_format: str,
        target_format: str,
        base_url: str,
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._source_format = source_format
        self._target_format = target_format
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def source_format(self) -> str:
        return self._source_format

    @property
    def target_format(self) -> str:
        return self._target_format

    def convert(self, data: bytes, options: ConversionOptions) -> bytes:
        url = f"{self._base_url}/convert/{self._source_format}/{self._target_format}"

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    url,
                    files={"file": ("input", data, "application/octet-stream")},
                    data={key: str(value) for key, value in options.to_dict().items()},
                )
                response.raise_for_status()
        except httpx.TimeoutException as error:
            logger.error("Converter timed out: %s -> %s", self._source_format, self._target_format)
            raise ConversionFailedError(f"Conversion timed out after {self._timeout:.0f}s") from error
        except httpx.HTTPStatusError as error:
            detail = error.response.text.strip() or f"status {error.response.status_code}"
            raise ConversionFailedError(f"Converter rejected the input: {detail}") from error
        except httpx.HTTPError as error:
            raise ConversionFailedError(f"Converter unavailable: {error}") from error

        logger.debug(
            "Converted %s -> %s: %d bytes in, %d bytes out",
            self._source_format, self._target_format, len(data), len(response.content),
        )
        return response.content


def create_remote_registry(base_url: str, timeout_seconds: float = 120.0) -> ConverterRegistry:
    return ConverterRegistry(
        RemoteConverter(source, target, base_url, timeout_seconds)
        for source, target in SUPPORTED_CONVERSIONS
    )
