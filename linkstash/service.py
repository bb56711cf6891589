from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import Settings
from .enrich import Enricher
from .errors import DuplicateFolderError, StoreError, ValidationError
from .intake import DebouncedIntake, ResultCallback
from .log import get_logger
from .model import Bookmark, BookmarkDraft, EnrichmentResult, Folder
from .store import ANY, RecordStore
from .url_norm import expand_template, hostname_of, is_http_url

log = get_logger(__name__)


class BookmarkService:
    """Bookmark and folder operations for a presentation layer.

    Saves never wait on the network: a new bookmark is written at once with
    the user's title (or its hostname) and the user's favicon (or the
    backstop icon), then a background task fills in whatever was missing.

    The store is opened on ``async with`` entry (or ``await svc.start()``).
    """

    def __init__(self, store: RecordStore, enricher: Optional[Enricher] = None, settings: Optional[Settings] = None):
        self.store = store
        self.enricher = enricher
        self.settings = settings or Settings()
        self._backfills: Dict[str, _Backfill] = {}

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Optional[httpx.AsyncClient] = None) -> "BookmarkService":
        store = RecordStore(settings.db_path)
        enricher = Enricher.from_settings(settings, client=client) if settings.enrich_enabled else None
        return cls(store, enricher, settings)

    async def start(self) -> None:
        await self.store.aopen()

    async def aclose(self) -> None:
        pending = list(self._backfills.values())
        self._backfills.clear()
        for p in pending:
            p.task.cancel()
        if pending:
            await asyncio.wait([p.task for p in pending])
        if self.enricher is not None:
            await self.enricher.aclose()
        await self.store.aclose()

    async def __aenter__(self) -> "BookmarkService":
        try:
            await self.start()
        except BaseException:
            if self.enricher is not None:
                await self.enricher.aclose()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    # -- bookmarks ------------------------------------------------------------

    async def add_bookmark(self, draft: BookmarkDraft, *, wait: bool = False) -> Bookmark:
        """Validate and save a bookmark.

        wait=True runs enrichment before the first write instead of in the
        background.
        """
        url = _require_url(draft.url)
        user_title = (draft.title or "").strip()
        user_favicon = (draft.favicon or "").strip() or None

        title = user_title or hostname_of(url)
        favicon = user_favicon or self.get_favicon_url(url)
        if wait and self.enricher is not None and not (user_title and user_favicon):
            res = await self.enricher.enrich(url)
            if not user_title and res.title:
                title = res.title
            if not user_favicon and res.favicon:
                favicon = res.favicon

        saved = await self.store.put_bookmark(
            Bookmark(
                id="",
                title=title,
                url=url,
                folder=(draft.folder or "").strip() or None,
                favicon=favicon,
                description=(draft.description or "").strip() or None,
            )
        )
        log.info("Saved bookmark %s: %s", saved.id, saved.url)

        if not wait:
            self._schedule_backfill(
                saved.id,
                saved.url,
                expect_title=None if user_title else saved.title,
                expect_favicon=None if user_favicon else saved.favicon,
            )
        return saved

    async def update_bookmark(self, bookmark: Bookmark) -> Bookmark:
        """Replace a bookmark's editable fields.

        When the URL changes, a pending lookup for the old URL is dropped and
        restarted for the new one, for the fields that still hold placeholders.
        """
        if not bookmark.id:
            raise ValidationError("bookmark has no id")
        url = _require_url(bookmark.url)
        title = (bookmark.title or "").strip()
        if not title:
            raise ValidationError("bookmark title must not be empty")
        current = await self.store.get_bookmark(bookmark.id)
        if current is None:
            raise ValidationError(f"no bookmark with id {bookmark.id}")

        pending = self._cancel_backfill(bookmark.id) if url != current.url else None
        saved = await self.store.put_bookmark(
            Bookmark(
                id=bookmark.id,
                title=title,
                url=url,
                folder=(bookmark.folder or "").strip() or None,
                favicon=bookmark.favicon or None,
                description=(bookmark.description or "").strip() or None,
            )
        )
        if pending is not None:
            expect_title = saved.title if saved.title == pending.expect_title else None
            expect_favicon = saved.favicon if saved.favicon == pending.expect_favicon else None
            self._schedule_backfill(saved.id, saved.url, expect_title=expect_title, expect_favicon=expect_favicon)
        return saved

    async def get_bookmark(self, bookmark_id: str) -> Optional[Bookmark]:
        return await self.store.get_bookmark(bookmark_id)

    async def delete_bookmark(self, bookmark_id: str) -> None:
        self._cancel_backfill(bookmark_id)
        await self.store.delete_bookmark(bookmark_id)

    async def open_bookmark(self, bookmark_id: str) -> Optional[Bookmark]:
        """Record an access and return the bookmark (None when unknown)."""
        await self.store.touch_access(bookmark_id)
        return await self.store.get_bookmark(bookmark_id)

    async def list_bookmarks(self, folder: Optional[str] = None) -> List[Bookmark]:
        """Most recently accessed first.

        folder=None lists everything, "" only bookmarks without a folder,
        any other value the bookmarks filed under exactly that name.
        """
        return await self.store.list_bookmarks(ANY if folder is None else folder)

    async def recent_bookmarks(self, limit: int = 5) -> List[Bookmark]:
        return (await self.store.list_bookmarks())[: max(0, limit)]

    async def search_bookmarks(self, query: str) -> List[Bookmark]:
        needle = (query or "").casefold()
        return [
            b
            for b in await self.store.list_bookmarks()
            if needle in b.title.casefold()
            or needle in b.url.casefold()
            or needle in (b.description or "").casefold()
        ]

    def get_favicon_url(self, url: str) -> str:
        """Backstop favicon for a URL, built without any request ("" if invalid)."""
        if not is_http_url(url):
            return ""
        if self.enricher is not None:
            return self.enricher.backstop_favicon(url)
        return expand_template(self.settings.favicon_backstop, url.strip())

    # -- folders --------------------------------------------------------------

    async def add_folder(self, name: str) -> Folder:
        name = (name or "").strip()
        if not name:
            raise ValidationError("folder name must not be empty")
        existing = await self.store.find_folder_by_name(name)
        if existing is not None:
            raise DuplicateFolderError(f"folder already exists: {existing.name}")
        folder = await self.store.put_folder(Folder(id="", name=name))
        log.info("Created folder %s: %s", folder.id, folder.name)
        return folder

    async def delete_folder(self, folder_id: str) -> None:
        # Bookmarks keep their folder name; nothing cascades.
        await self.store.delete_folder(folder_id)

    async def list_folders(self, *, with_counts: bool = False) -> List[Folder]:
        return await self.store.list_folders(with_counts=with_counts)

    # -- export / import ------------------------------------------------------

    async def export_all(self) -> Dict[str, List[Dict[str, Any]]]:
        bookmarks = await self.store.list_bookmarks()
        folders = await self.store.list_folders()
        return {
            "bookmarks": [b.to_dict() for b in bookmarks],
            "folders": [f.to_dict() for f in folders],
        }

    async def import_all(self, data: Dict[str, Any]) -> None:
        """Upsert exported records by id; folders are written before bookmarks."""
        if not isinstance(data, dict):
            raise ValidationError("import data must be a mapping with bookmarks and folders")
        raw_bookmarks = data.get("bookmarks") or []
        raw_folders = data.get("folders") or []
        if not isinstance(raw_bookmarks, list) or not isinstance(raw_folders, list):
            raise ValidationError("bookmarks and folders must be lists")

        try:
            folders = [Folder.from_dict(x) for x in raw_folders]
            bookmarks = [Bookmark.from_dict(x) for x in raw_bookmarks]
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"malformed import record: {e}") from e

        for f in folders:
            if not f.id or not f.name.strip():
                raise ValidationError(f"folder record needs id and name: {f!r}")
        for b in bookmarks:
            if not b.id or not b.title.strip():
                raise ValidationError(f"bookmark record needs id and title: {b.id!r}")
            _require_url(b.url)

        await self.store.restore(bookmarks, folders)
        log.info("Imported %d bookmarks and %d folders.", len(bookmarks), len(folders))

    # -- enrichment -----------------------------------------------------------

    def enrichment_intake(self, on_result: Optional[ResultCallback] = None) -> DebouncedIntake:
        """Debounced trigger for a URL input field, bound to this service's enricher."""
        return DebouncedIntake(self._enrich_for_intake, quiet_s=self.settings.debounce_s, on_result=on_result)

    async def _enrich_for_intake(self, url: str) -> EnrichmentResult:
        if self.enricher is not None:
            return await self.enricher.enrich(url)
        if not is_http_url(url):
            return EnrichmentResult()
        return EnrichmentResult(title=hostname_of(url), favicon=self.get_favicon_url(url))

    async def wait_for_enrichment(self) -> None:
        while self._backfills:
            await asyncio.wait([p.task for p in self._backfills.values()])

    def _schedule_backfill(
        self,
        bookmark_id: str,
        url: str,
        *,
        expect_title: Optional[str],
        expect_favicon: Optional[str],
    ) -> None:
        """Start the background lookup for one bookmark.

        expect_* hold the placeholder values written at save time (None means
        leave that field alone); the merge only replaces a field that still
        holds its placeholder.
        """
        self._cancel_backfill(bookmark_id)
        if self.enricher is None or (expect_title is None and expect_favicon is None):
            return
        task = asyncio.get_running_loop().create_task(
            self._backfill(bookmark_id, url, expect_title=expect_title, expect_favicon=expect_favicon)
        )
        self._backfills[bookmark_id] = _Backfill(task, expect_title, expect_favicon)

        def _forget(t: asyncio.Task) -> None:
            pending = self._backfills.get(bookmark_id)
            if pending is not None and pending.task is t:
                del self._backfills[bookmark_id]

        task.add_done_callback(_forget)

    def _cancel_backfill(self, bookmark_id: str) -> Optional[_Backfill]:
        pending = self._backfills.pop(bookmark_id, None)
        if pending is not None:
            pending.task.cancel()
        return pending

    async def _backfill(
        self,
        bookmark_id: str,
        url: str,
        *,
        expect_title: Optional[str],
        expect_favicon: Optional[str],
    ) -> None:
        enricher = self.enricher
        if enricher is None:
            return
        want_title = expect_title is not None
        want_favicon = expect_favicon is not None
        jobs = []
        if want_title:
            jobs.append(enricher.enrich_title(url))
        if want_favicon:
            jobs.append(enricher.enrich_favicon(url))
        results = await asyncio.gather(*jobs)

        new_title = results.pop(0)[0] if want_title else None
        new_favicon = results.pop(0)[0] if want_favicon else None
        try:
            merged = await self.store.merge_enrichment(
                bookmark_id,
                title=new_title,
                favicon=new_favicon,
                expect_title=expect_title,
                expect_favicon=expect_favicon,
            )
        except StoreError as e:
            log.warning("Could not store enrichment for %s: %s", bookmark_id, e)
            return
        if merged is None:
            log.debug("Bookmark %s is gone; dropping enrichment.", bookmark_id)
        else:
            log.debug("Enriched bookmark %s: title=%r favicon=%s", bookmark_id, merged.title, merged.favicon)


@dataclass(frozen=True)
class _Backfill:
    task: asyncio.Task
    expect_title: Optional[str]
    expect_favicon: Optional[str]


def _require_url(url: Optional[str]) -> str:
    url = (url or "").strip()
    if not is_http_url(url):
        raise ValidationError(f"not an http(s) URL: {url!r}")
    return url
