from __future__ import annotations

import html
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup  # type: ignore

from .errors import EnrichmentMiss
from .log import get_logger
from .url_norm import expand_template, is_http_url

log = get_logger(__name__)

_WS_RE = re.compile(r"\s+")
_SIZE_RE = re.compile(r"(\d+)\s*[xX]\s*(\d+)")

# rel values worth probing, in preference order; mask-icon is a monochrome
# svg meant for pinned tabs, not a favicon.
_ICON_RELS = ("icon", "shortcut icon", "apple-touch-icon", "apple-touch-icon-precomposed")


def decode_title(text: Optional[str]) -> Optional[str]:
    """Collapse whitespace and resolve HTML entities (&amp;, &#39;, &#x2F;, ...)."""
    if not text:
        return None
    out = _WS_RE.sub(" ", html.unescape(text)).strip()
    return out or None


def extract_title(content: bytes | str) -> Optional[str]:
    if not content:
        return None
    soup = BeautifulSoup(content, "lxml")
    if soup.title is None:
        return None
    return decode_title(soup.title.get_text())


def extract_icon_urls(content: bytes | str, *, base_url: str) -> List[str]:
    """Icon candidates declared by a page, absolute, best first.

    <link rel=icon>/<link rel="shortcut icon"> come first, then
    apple-touch-icon, then og:image. Relative hrefs are resolved against
    <base href> when present, else against base_url.
    """
    if not content:
        return []
    soup = BeautifulSoup(content, "lxml")
    base_tag = soup.find("base", href=True)
    if base_tag is not None:
        base_url = urljoin(base_url, base_tag["href"].strip())

    ranked: List[Tuple[int, int, str]] = []
    for pos, link in enumerate(soup.find_all("link")):
        rel = " ".join(x.lower() for x in (link.get("rel") or []))
        href = (link.get("href") or "").strip()
        if not href or rel not in _ICON_RELS:
            continue
        rank = 0 if rel in ("icon", "shortcut icon") else 1
        ranked.append((rank, pos, urljoin(base_url, href)))

    ranked.sort()
    out = [u for _rank, _pos, u in ranked]
    og = soup.find("meta", attrs={"property": "og:image"})
    if og is not None and (og.get("content") or "").strip():
        out.append(urljoin(base_url, og["content"].strip()))
    return _dedupe(u for u in out if is_http_url(u))


def pick_largest_icon(payload: Any, *, base_url: str) -> Optional[str]:
    """Largest usable icon from structured icon metadata.

    Accepts besticon-style {"icons": [{"url", "width", "height"}]} and web
    manifest style {"icons": [{"src", "sizes": "192x192"}]}.
    """
    icons = payload.get("icons") if isinstance(payload, dict) else payload
    if not isinstance(icons, list):
        return None
    best: Optional[str] = None
    best_area = -1
    for icon in icons:
        if not isinstance(icon, dict):
            continue
        ref = str(icon.get("url") or icon.get("src") or "").strip()
        if not ref:
            continue
        ref = urljoin(base_url, ref)
        if not is_http_url(ref):
            continue
        area = _icon_area(icon)
        if area > best_area:
            best, best_area = ref, area
    return best


def _icon_area(icon: Dict[str, Any]) -> int:
    try:
        w = int(icon.get("width") or 0)
        h = int(icon.get("height") or 0)
    except (TypeError, ValueError):
        w = h = 0
    area = w * h
    for m in _SIZE_RE.finditer(str(icon.get("sizes") or "")):
        area = max(area, int(m.group(1)) * int(m.group(2)))
    return area


def _dedupe(urls: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for u in urls:
        if u not in seen:
            seen.add(u)
            out.append(u)
    return out


def _check_status(r: httpx.Response) -> None:
    if not 200 <= r.status_code < 300:
        raise EnrichmentMiss(f"http {r.status_code}")


class TitleSource:
    """Fetches a page, directly or through a proxy, and reads its <title>."""

    def __init__(self, name: str, endpoint: str, *, decode: str = "html", field: str = "contents", max_bytes: int = 350_000):
        if decode not in ("html", "json"):
            raise ValueError(f"unknown decode rule for title source {name}: {decode}")
        self.name = name
        self.endpoint = endpoint
        self.decode = decode
        self.field = field
        self.max_bytes = max_bytes

    def __repr__(self) -> str:
        return f"TitleSource({self.name!r})"

    async def resolve(self, client: httpx.AsyncClient, url: str) -> str:
        r = await client.get(expand_template(self.endpoint, url))
        _check_status(r)
        title = extract_title(self._page(r))
        if not title:
            raise EnrichmentMiss("no <title>")
        return title

    def _page(self, r: httpx.Response) -> bytes | str:
        if self.decode == "html":
            return r.content[: self.max_bytes]
        try:
            data = r.json()
        except ValueError as e:
            raise EnrichmentMiss(f"malformed json: {e}") from e
        page = data.get(self.field) if isinstance(data, dict) else None
        if not isinstance(page, str):
            raise EnrichmentMiss(f"json payload has no {self.field!r} string")
        return page[: self.max_bytes]


class FaviconSource:
    """Produces favicon candidates for a page URL.

    Candidates from a source with prevalidated=True have already been
    checked by the source itself and skip the image probe.
    """

    prevalidated = False

    def __init__(self, name: str, endpoint: str):
        self.name = name
        self.endpoint = endpoint

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    async def candidates(self, client: httpx.AsyncClient, url: str) -> List[str]:
        raise NotImplementedError


class PageIconSource(FaviconSource):
    def __init__(self, name: str, endpoint: str = "{raw_url}", *, max_bytes: int = 350_000):
        super().__init__(name, endpoint)
        self.max_bytes = max_bytes

    async def candidates(self, client: httpx.AsyncClient, url: str) -> List[str]:
        r = await client.get(expand_template(self.endpoint, url))
        _check_status(r)
        # Through a proxy the response URL is the proxy's; resolve against the page.
        base = str(r.url) if self.endpoint.strip() == "{raw_url}" else url
        found = extract_icon_urls(r.content[: self.max_bytes], base_url=base)
        if not found:
            raise EnrichmentMiss("page declares no icons")
        return found


class IconListSource(FaviconSource):
    prevalidated = True

    async def candidates(self, client: httpx.AsyncClient, url: str) -> List[str]:
        r = await client.get(expand_template(self.endpoint, url))
        _check_status(r)
        try:
            payload = r.json()
        except ValueError as e:
            raise EnrichmentMiss(f"malformed json: {e}") from e
        best = pick_largest_icon(payload, base_url=url)
        if not best:
            raise EnrichmentMiss("no usable icon in metadata")
        return [best]


class FaviconServiceSource(FaviconSource):
    """Generic favicon-by-domain service; builds the URL, no request."""

    async def candidates(self, client: httpx.AsyncClient, url: str) -> List[str]:
        candidate = expand_template(self.endpoint, url)
        if not is_http_url(candidate):
            raise EnrichmentMiss(f"template produced no usable URL: {candidate!r}")
        return [candidate]


_FAVICON_KINDS = {
    "page": PageIconSource,
    "icon_list": IconListSource,
    "service": FaviconServiceSource,
}


def build_title_sources(entries: Iterable[Dict[str, Any]], *, max_bytes: int = 350_000) -> List[TitleSource]:
    out: List[TitleSource] = []
    for entry in entries:
        out.append(
            TitleSource(
                str(entry["name"]),
                str(entry["endpoint"]),
                decode=str(entry.get("decode") or "html"),
                field=str(entry.get("field") or "contents"),
                max_bytes=max_bytes,
            )
        )
    return out


def build_favicon_sources(entries: Iterable[Dict[str, Any]], *, max_bytes: int = 350_000) -> List[FaviconSource]:
    out: List[FaviconSource] = []
    for entry in entries:
        kind = str(entry.get("kind") or "service")
        cls = _FAVICON_KINDS.get(kind)
        if cls is None:
            raise ValueError(f"unknown favicon source kind: {kind}")
        if cls is PageIconSource:
            out.append(PageIconSource(str(entry["name"]), str(entry.get("endpoint") or "{raw_url}"), max_bytes=max_bytes))
        else:
            out.append(cls(str(entry["name"]), str(entry["endpoint"])))
    return out
