# src/app/services/input_validation.py
"""
Request payload limits and URL safety checks.
Runs before a job is created, so violations surface as validation errors.
"""
from __future__ import annotations

import ipaddress
import logging
import socket
from fnmatch import fnmatchcase
from typing import Callable, Optional
from urllib.parse import urlparse

from src.app.config import InputValidationSettings
from src.app.domain.errors import ValidationError

logger = logging.getLogger(__name__)

MB = 1024 * 1024

HostResolver = Callable[[str], list[str]]


def resolve_host(host: str) -> list[str]:
    """Return every address the host resolves to; empty if it does not resolve."""
    try:
        infos = socket.getaddrinfo(host, None)
    except (socket.gaierror, UnicodeError) as error:
        logger.debug("Could not resolve %s: %s", host, error)
        return []
    return [info[4][0] for info in infos]


def is_private_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified


def _too_large(kind: str, code: str, size: int, limit: int) -> ValidationError:
    return ValidationError(
        f"{kind} size ({size / MB:.2f}MB) exceeds the maximum allowed size ({limit / MB:.2f}MB).",
        code=code,
    )


def decoded_base64_size(data: str) -> int:
    encoded = data.strip()
    padding = len(encoded) - len(encoded.rstrip("="))
    return max(len(encoded) * 3 // 4 - padding, 0)


class InputValidator:
    def __init__(self, settings: InputValidationSettings, resolver: Optional[HostResolver] = None):
        self.settings = settings
        self._resolve = resolver or resolve_host
        self._allowlist = [pattern.lower() for pattern in settings.allowlist]
        self._blocklist = [pattern.lower() for pattern in settings.blocklist]

    def validate_url(self, url: str) -> None:
        """
        Reject URLs whose host is private, blocked or outside the allowlist.

        Raises:
            ValidationError: InputValidation.InvalidUrl, PrivateIpBlocked,
                UrlNotAllowed or UrlBlocked
        """
        if not (self.settings.enabled and self.settings.url_validation_enabled):
            return
        if not url or not url.strip():
            return

        host = (urlparse(url.strip()).hostname or "").lower()
        if not host:
            raise ValidationError("The URL is not a valid absolute URL.", code="InputValidation.InvalidUrl")

        if self.settings.block_private_ip_addresses and self._is_private_host(host):
            logger.warning("URL validation failed: private address blocked - %s", host)
            raise ValidationError(
                "URLs pointing to private or internal IP addresses are not allowed.",
                code="InputValidation.PrivateIpBlocked",
            )

        if self.settings.use_allowlist:
            if not _matches_any(host, self._allowlist):
                logger.warning("URL validation failed: host not in allowlist - %s", host)
                raise ValidationError(
                    f"The URL host '{host}' is not in the allowed list.",
                    code="InputValidation.UrlNotAllowed",
                )
        elif _matches_any(host, self._blocklist):
            logger.warning("URL validation failed: host in blocklist - %s", host)
            raise ValidationError(f"The URL host '{host}' is blocked.", code="InputValidation.UrlBlocked")

    def validate_file_size(self, size_bytes: int) -> None:
        if self.settings.enabled and size_bytes > self.settings.max_file_size_bytes:
            raise _too_large("File", "InputValidation.FileTooLarge", size_bytes, self.settings.max_file_size_bytes)

    def validate_html_content(self, content: Optional[str]) -> None:
        if not self.settings.enabled or not content:
            return
        size = len(content.encode("utf-8"))
        if size > self.settings.max_html_content_bytes:
            raise _too_large(
                "HTML content",
                "InputValidation.HtmlContentTooLarge",
                size,
                self.settings.max_html_content_bytes,
            )

    def validate_markdown_content(self, content: Optional[str]) -> None:
        if not self.settings.enabled or not content:
            return
        size = len(content.encode("utf-8"))
        if size > self.settings.max_markdown_content_bytes:
            raise _too_large(
                "Markdown content",
                "InputValidation.MarkdownContentTooLarge",
                size,
                self.settings.max_markdown_content_bytes,
            )

    def _is_private_host(self, host: str) -> bool:
        if is_private_address(host):
            return True
        try:
            ipaddress.ip_address(host)
            return False
        except ValueError:
            pass
        # Unresolvable hosts are left to the blocklist and the converter.
        return any(is_private_address(address) for address in self._resolve(host))


def _matches_any(host: str, patterns: list[str]) -> bool:
    return any(fnmatchcase(host, pattern) for pattern in patterns)
