"""Asset URL validation, expiring-link detection and placeholder rendering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import parse_qs, urlsplit

__all__ = [
    "EXPIRING_HOST_PATTERN",
    "UrlValidation",
    "create_placeholder",
    "is_expiring_url",
    "redact_presigned",
    "validate_asset_url",
]

EXPIRING_HOST_PATTERN = re.compile(r"^prod-files-secure\.s3\.[a-z0-9-]+\.amazonaws\.com$")
_PRESIGNED_PARAMS = ("x-amz-signature", "x-amz-expires", "x-amz-credential")
_ALT_PATTERN = re.compile(r"!\[(.*?)\]")


@dataclass(frozen=True)
class UrlValidation:
    is_valid: bool
    sanitized_url: Optional[str] = None
    error: Optional[str] = None


def validate_asset_url(
    url: object,
    *,
    allowed_schemes: Iterable[str] = ("http", "https"),
    allowed_hosts: Iterable[str] = (),
) -> UrlValidation:
    """Check that ``url`` is a usable remote asset reference.

    The URL is trimmed; empty strings, the literals ``undefined``/``null``,
    unparsable values, schemes outside ``allowed_schemes`` and (when
    ``allowed_hosts`` is non-empty) hosts outside it are rejected.

    >>> validate_asset_url(" https://example.com/a.png ").sanitized_url
    'https://example.com/a.png'
    >>> validate_asset_url("ftp://example.com/a.png").error
    'Invalid protocol: ftp:'
    """

    if not isinstance(url, str):
        return UrlValidation(False, error="URL is empty or not a string")
    trimmed = url.strip()
    if not trimmed:
        return UrlValidation(False, error="URL is empty after trimming")
    if trimmed in ("undefined", "null"):
        return UrlValidation(False, error="URL contains literal undefined/null")
    try:
        parts = urlsplit(trimmed)
        host = parts.hostname
    except ValueError as exc:
        return UrlValidation(False, error=f"Invalid URL format: {exc}")
    schemes = {s.lower() for s in allowed_schemes}
    if not parts.scheme:
        return UrlValidation(False, error="Invalid URL format: missing scheme")
    if parts.scheme.lower() not in schemes:
        return UrlValidation(False, error=f"Invalid protocol: {parts.scheme.lower()}:")
    if not host:
        return UrlValidation(False, error="Invalid URL format: missing host")
    hosts = {h.lower() for h in allowed_hosts}
    if hosts and host.lower() not in hosts:
        return UrlValidation(False, error=f"Host not allowed: {host}")
    return UrlValidation(True, sanitized_url=trimmed)


def is_expiring_url(url: str) -> bool:
    """True for presigned object-store links that stop working after a while."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    host = (parts.hostname or "").lower()
    if EXPIRING_HOST_PATTERN.match(host):
        return True
    params = {key.lower() for key in parse_qs(parts.query)}
    return any(name in params for name in _PRESIGNED_PARAMS)


def redact_presigned(url: str) -> str:
    """Drop the query string of an expiring link so its signature is not persisted."""

    if not is_expiring_url(url):
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    return parts._replace(query="", fragment="").geturl()


def create_placeholder(original_markdown: str, url: str, index: int) -> str:
    """Inert replacement for an asset reference that could not be resolved.

    The original URL is kept in an HTML comment for manual recovery.
    """

    match = _ALT_PATTERN.search(original_markdown)
    alt = (match.group(1) if match else "") or f"Image {index + 1}"
    comment = f"<!-- Failed to download image: {url} -->"
    return f"{comment}\n**[Image {index + 1}: {alt}]** *(Image failed to download)*"
