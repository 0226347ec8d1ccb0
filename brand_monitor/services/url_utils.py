from __future__ import annotations

import logging
import re
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^https?://", flags=re.IGNORECASE)
_LABEL_RE = re.compile(r"^[a-zA-Z0-9-]+$")
_TLD_RE = re.compile(r"^[a-zA-Z]+$")


def _with_scheme(url: str) -> str:
    return url if url.lower().startswith("http") else f"https://{url}"


def extract_domain(url: str) -> Optional[str]:
    try:
        parsed = urlparse(_with_scheme(url.strip()))
        if parsed.hostname:
            return parsed.hostname
    except ValueError:
        logger.debug("Failed to parse URL for domain extraction: %s", url)
    return None


def is_valid_url_format(url: str) -> bool:
    """Check that a company URL looks like domain.tld before scraping it."""

    hostname = extract_domain(url or "")
    if not hostname:
        return False

    parts = hostname.split(".")
    if len(parts) < 2:
        return False

    tld = parts[-1]
    if len(tld) < 2 or not _TLD_RE.match(tld):
        return False

    for part in parts:
        if not _LABEL_RE.match(part) or part.startswith("-") or part.endswith("-"):
            return False
    return True


def validate_competitor_url(url: Optional[str]) -> Optional[str]:
    """Clean a user-entered competitor URL into host[/path] form."""

    if not url:
        return None

    clean = url.strip().rstrip("/")
    if not clean:
        return None
    try:
        parsed = urlparse(_with_scheme(clean))
    except ValueError:
        return None
    if not parsed.hostname:
        return None
    path = parsed.path if parsed.path not in ("", "/") else ""
    return parsed.hostname + path


def normalize_domain(value: Optional[str]) -> str:
    """Strip scheme, leading www. and trailing slash, then case-fold."""

    if not value:
        return ""
    domain = _SCHEME_RE.sub("", value.strip())
    domain = re.sub(r"^www\.", "", domain, flags=re.IGNORECASE)
    domain = domain.rstrip("/")
    return domain.strip().casefold()


__all__ = [
    "extract_domain",
    "is_valid_url_format",
    "normalize_domain",
    "validate_competitor_url",
]
