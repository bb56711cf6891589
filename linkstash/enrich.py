from __future__ import annotations

import asyncio
from typing import Awaitable, List, Optional, Sequence, Tuple, TypeVar

import httpx

from .config import DEFAULT_FAVICON_BACKSTOP, Settings
from .log import get_logger
from .model import EnrichmentResult
from .sources import (
    FaviconSource,
    TitleSource,
    build_favicon_sources,
    build_title_sources,
)
from .url_norm import expand_template, hostname_of, is_http_url

log = get_logger(__name__)

T = TypeVar("T")

BACKSTOP = "backstop"
HOSTNAME = "hostname"

# Pages can declare any number of icons; only the best few get probed.
MAX_PROBES_PER_SOURCE = 3


class Enricher:
    """Resolves a title and a favicon for a URL by walking source chains.

    Never raises for network trouble: every source miss, error or timeout
    moves on to the next source, and exhausted chains fall back to the
    hostname and to the backstop favicon URL. Each favicon source costs at
    most one lookup plus max_probes probes, each capped at timeout_s.
    """

    def __init__(
        self,
        *,
        title_sources: Sequence[TitleSource],
        favicon_sources: Sequence[FaviconSource],
        timeout_s: float = 3.0,
        backstop: str = DEFAULT_FAVICON_BACKSTOP,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "linkstash",
        max_probes: int = MAX_PROBES_PER_SOURCE,
    ):
        self.title_sources = list(title_sources)
        self.favicon_sources = list(favicon_sources)
        self.timeout_s = timeout_s
        self.backstop = backstop
        self.max_probes = max(1, int(max_probes))
        self._own_client = client is None
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": user_agent},
            timeout=httpx.Timeout(timeout_s, connect=timeout_s),
        )

    @classmethod
    def from_settings(cls, cfg: Settings, *, client: Optional[httpx.AsyncClient] = None) -> "Enricher":
        return cls(
            title_sources=build_title_sources(cfg.title_sources, max_bytes=cfg.fetch_max_bytes),
            favicon_sources=build_favicon_sources(cfg.favicon_sources, max_bytes=cfg.fetch_max_bytes),
            timeout_s=cfg.source_timeout_s,
            backstop=cfg.favicon_backstop,
            client=client,
            user_agent=cfg.user_agent,
        )

    async def aclose(self) -> None:
        if self._own_client:
            await self.client.aclose()

    async def __aenter__(self) -> "Enricher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def backstop_favicon(self, url: str) -> str:
        return expand_template(self.backstop, url)

    async def enrich(self, url: str) -> EnrichmentResult:
        url = (url or "").strip()
        if not is_http_url(url):
            log.debug("Not enriching non-http(s) URL: %r", url)
            return EnrichmentResult()
        (title, title_src), (favicon, favicon_src) = await asyncio.gather(
            self.enrich_title(url),
            self.enrich_favicon(url),
        )
        return EnrichmentResult(title=title, favicon=favicon, title_source=title_src, favicon_source=favicon_src)

    async def enrich_title(self, url: str) -> Tuple[str, str]:
        for source in self.title_sources:
            title = await self._attempt(source.name, url, source.resolve(self.client, url))
            if title:
                log.debug("Title for %s from %s: %r", url, source.name, title)
                return title, source.name
        return hostname_of(url), HOSTNAME

    async def enrich_favicon(self, url: str) -> Tuple[str, str]:
        for source in self.favicon_sources:
            found: Optional[List[str]] = await self._attempt(source.name, url, source.candidates(self.client, url))
            for candidate in (found or [])[: self.max_probes]:
                if source.prevalidated or await self._attempt(
                    f"{source.name}/probe", candidate, probe_image(self.client, candidate)
                ):
                    log.debug("Favicon for %s from %s: %s", url, source.name, candidate)
                    return candidate, source.name
        return self.backstop_favicon(url), BACKSTOP

    async def _attempt(self, label: str, url: str, call: Awaitable[T]) -> Optional[T]:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_s)
        except asyncio.TimeoutError:
            log.debug("%s timed out after %.1fs for %s", label, self.timeout_s, url)
        except Exception as e:
            log.debug("%s missed for %s: %s", label, url, e)
        return None


async def probe_image(client: httpx.AsyncClient, url: str) -> bool:
    """Lightweight existence check: 2xx response with an image content type."""
    r = await client.head(url)
    if r.status_code in (403, 405, 501):
        # Some hosts refuse HEAD; ask for the body but never read it.
        async with client.stream("GET", url) as r:
            return _is_image_response(r)
    return _is_image_response(r)


def _is_image_response(r: httpx.Response) -> bool:
    ctype = r.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    return 200 <= r.status_code < 300 and ctype.startswith("image/")
