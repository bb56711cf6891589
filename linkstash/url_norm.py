from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlparse

ALLOWED_SCHEMES = ("http", "https")


def is_http_url(url: str) -> bool:
    try:
        p = urlparse((url or "").strip())
    except ValueError:
        return False
    if p.scheme.lower() not in ALLOWED_SCHEMES:
        return False
    try:
        return bool(p.hostname)
    except ValueError:
        return False


def hostname_of(url: str) -> str:
    """Host part of an http(s) URL, lowercased, or "" when there is none."""
    try:
        return urlparse((url or "").strip()).hostname or ""
    except ValueError:
        return ""


def origin_of(url: str) -> Optional[str]:
    try:
        p = urlparse((url or "").strip())
    except ValueError:
        return None
    if not p.scheme or not p.netloc:
        return None
    return f"{p.scheme.lower()}://{p.netloc}"


def expand_template(template: str, url: str) -> str:
    """Fill an endpoint template for a target page URL.

    Placeholders: {url} (percent-encoded), {raw_url}, {domain}, {origin}.
    """
    url = (url or "").strip()
    return template.format(
        url=quote(url, safe=""),
        raw_url=url,
        domain=hostname_of(url),
        origin=origin_of(url) or "",
    )
