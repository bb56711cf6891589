from __future__ import annotations

import asyncio
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import DuplicateFolderError, StoreError
from .log import get_logger
from .model import Bookmark, Folder, parse_ts, utc_now

log = get_logger(__name__)

# Filter value for list_bookmarks(): every bookmark regardless of folder.
ANY = object()
_UNSET = object()

Listener = Callable[[str], None]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS folders (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    date_created TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_folders_name ON folders(name COLLATE NOCASE);

CREATE TABLE IF NOT EXISTS bookmarks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    url TEXT NOT NULL,
    folder TEXT,
    favicon TEXT,
    description TEXT,
    created TEXT NOT NULL,
    last_updated TEXT NOT NULL,
    last_accessed TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bookmarks_folder ON bookmarks(folder);
CREATE INDEX IF NOT EXISTS idx_bookmarks_created ON bookmarks(created);
CREATE INDEX IF NOT EXISTS idx_bookmarks_last_accessed ON bookmarks(last_accessed);
"""

_BOOKMARK_COLS = "id, title, url, folder, favicon, description, created, last_updated, last_accessed"


def new_id() -> str:
    return uuid.uuid4().hex


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so ORDER BY on the column is chronological.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class RecordStore:
    """sqlite-backed bookmark and folder records.

    Every public operation is a coroutine. The sqlite work itself runs on a
    worker thread, one transaction per call, under a single connection lock,
    so a record's read-modify-write never interleaves with another write.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = str(db_path)
        self.busy_timeout_ms = max(0, int(busy_timeout_ms))
        self.clock = clock
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def __enter__(self) -> "RecordStore":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    def open(self) -> None:
        if self.conn is not None:
            return
        conn: sqlite3.Connection | None = None
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            timeout_s = max(0.1, self.busy_timeout_ms / 1000.0)
            conn = sqlite3.connect(self.db_path, timeout=timeout_s, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.executescript(_SCHEMA)
            conn.commit()
        except (OSError, sqlite3.Error) as e:
            if conn is not None:
                conn.close()
            raise StoreError(f"cannot open store at {self.db_path}: {e}") from e
        self.conn = conn
        log.debug("Opened record store: %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    async def aopen(self) -> None:
        await asyncio.to_thread(self.open)

    async def aclose(self) -> None:
        await asyncio.to_thread(self.close)

    async def __aenter__(self) -> "RecordStore":
        await self.aopen()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # -- change notification ------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it.

        Listeners get "bookmarks" or "folders" after each committed write.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, kind: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind)
            except Exception as e:
                log.warning("Store listener %r failed on %s change: %s", listener, kind, e)

    # -- bookmarks ------------------------------------------------------------

    async def put_bookmark(self, bookmark: Bookmark) -> Bookmark:
        return await self._run(self._put_bookmark, bookmark, notify="bookmarks")

    async def get_bookmark(self, bookmark_id: str) -> Optional[Bookmark]:
        return await self._run(self._get_bookmark, bookmark_id)

    async def delete_bookmark(self, bookmark_id: str) -> bool:
        return await self._run(self._delete, "bookmarks", bookmark_id, notify="bookmarks")

    async def list_bookmarks(self, folder: Any = ANY) -> List[Bookmark]:
        return await self._run(self._list_bookmarks, folder)

    async def touch_access(self, bookmark_id: str) -> bool:
        return await self._run(self._touch_access, bookmark_id, notify="bookmarks")

    async def merge_enrichment(
        self,
        bookmark_id: str,
        *,
        title: Optional[str] = None,
        favicon: Optional[str] = None,
        expect_title: Any = _UNSET,
        expect_favicon: Any = _UNSET,
    ) -> Optional[Bookmark]:
        """Write enrichment output into an existing bookmark.

        Only title and favicon are touched. When expect_title/expect_favicon
        are given, the field is replaced only while the stored value still
        equals it, so edits made after the initial save are kept. Returns the
        stored bookmark, or None when it no longer exists.
        """
        return await self._run(
            self._merge_enrichment,
            bookmark_id,
            title,
            favicon,
            expect_title,
            expect_favicon,
            notify="bookmarks",
        )

    # -- folders --------------------------------------------------------------

    async def put_folder(self, folder: Folder) -> Folder:
        return await self._run(self._put_folder, folder, notify="folders")

    async def get_folder(self, folder_id: str) -> Optional[Folder]:
        return await self._run(self._get_folder, folder_id)

    async def find_folder_by_name(self, name: str) -> Optional[Folder]:
        return await self._run(self._find_folder_by_name, name)

    async def delete_folder(self, folder_id: str) -> bool:
        return await self._run(self._delete, "folders", folder_id, notify="folders")

    async def list_folders(self, *, with_counts: bool = False) -> List[Folder]:
        return await self._run(self._list_folders, with_counts)

    # -- bulk -----------------------------------------------------------------

    async def restore(self, bookmarks: Iterable[Bookmark], folders: Iterable[Folder]) -> None:
        """Upsert records by id, folders first, in one transaction.

        Ids and timestamps are kept. A missing created falls back to the
        earliest stamp given; stamps earlier than created are raised to it.
        """
        await self._run(self._restore, list(bookmarks), list(folders))
        self._notify("folders")
        self._notify("bookmarks")

    # -- plumbing -------------------------------------------------------------

    async def _run(self, fn, *args, notify: Optional[str] = None):
        result = await asyncio.to_thread(self._locked, fn, *args)
        if notify and result is not None and result is not False:
            self._notify(notify)
        return result

    def _locked(self, fn, *args):
        with self._lock:
            conn = self.conn
            if conn is None:
                raise StoreError("store is not open")
            try:
                with conn:
                    return fn(conn, *args)
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    def _now(self) -> datetime:
        return self.clock()

    def _put_bookmark(self, conn: sqlite3.Connection, b: Bookmark) -> Bookmark:
        current = self._get_bookmark(conn, b.id) if b.id else None
        now = self._now()
        if current is None:
            stored = Bookmark(
                id=b.id or new_id(),
                title=b.title,
                url=b.url,
                folder=b.folder,
                favicon=b.favicon,
                description=b.description,
                created=now,
                last_updated=now,
                last_accessed=now,
            )
            conn.execute(
                f"INSERT INTO bookmarks ({_BOOKMARK_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _bookmark_row(stored),
            )
            return stored

        stored = Bookmark(
            id=current.id,
            title=b.title,
            url=b.url,
            folder=b.folder,
            favicon=b.favicon,
            description=b.description,
            created=current.created,
            last_updated=max(now, current.created),
            last_accessed=current.last_accessed,
        )
        conn.execute(
            """
            UPDATE bookmarks
            SET title = ?, url = ?, folder = ?, favicon = ?, description = ?, last_updated = ?
            WHERE id = ?
            """,
            (
                stored.title,
                stored.url,
                stored.folder,
                stored.favicon,
                stored.description,
                _ts(stored.last_updated),
                stored.id,
            ),
        )
        return stored

    def _get_bookmark(self, conn: sqlite3.Connection, bookmark_id: str) -> Optional[Bookmark]:
        row = conn.execute(
            f"SELECT {_BOOKMARK_COLS} FROM bookmarks WHERE id = ? LIMIT 1",
            (bookmark_id,),
        ).fetchone()
        return _bookmark_from_row(row) if row else None

    def _list_bookmarks(self, conn: sqlite3.Connection, folder: Any) -> List[Bookmark]:
        query = f"SELECT {_BOOKMARK_COLS} FROM bookmarks"
        params: tuple = ()
        if folder is ANY:
            pass
        elif not folder:
            query += " WHERE folder IS NULL OR folder = ''"
        else:
            query += " WHERE folder = ?"
            params = (folder,)
        query += " ORDER BY last_accessed DESC, rowid DESC"
        return [_bookmark_from_row(r) for r in conn.execute(query, params)]

    def _touch_access(self, conn: sqlite3.Connection, bookmark_id: str) -> bool:
        current = self._get_bookmark(conn, bookmark_id)
        if current is None:
            return False
        now = max(self._now(), current.created)
        conn.execute("UPDATE bookmarks SET last_accessed = ? WHERE id = ?", (_ts(now), bookmark_id))
        return True

    def _merge_enrichment(
        self,
        conn: sqlite3.Connection,
        bookmark_id: str,
        title: Optional[str],
        favicon: Optional[str],
        expect_title: Any,
        expect_favicon: Any,
    ) -> Optional[Bookmark]:
        current = self._get_bookmark(conn, bookmark_id)
        if current is None:
            return None

        changed = False
        if title and title != current.title and (expect_title is _UNSET or current.title == expect_title):
            current.title = title
            changed = True
        if favicon and favicon != current.favicon and (expect_favicon is _UNSET or current.favicon == expect_favicon):
            current.favicon = favicon
            changed = True
        if not changed:
            return current

        current.last_updated = max(self._now(), current.created)
        conn.execute(
            "UPDATE bookmarks SET title = ?, favicon = ?, last_updated = ? WHERE id = ?",
            (current.title, current.favicon, _ts(current.last_updated), current.id),
        )
        return current

    def _delete(self, conn: sqlite3.Connection, table: str, record_id: str) -> bool:
        cur = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cur.rowcount > 0

    def _put_folder(self, conn: sqlite3.Connection, f: Folder) -> Folder:
        current = self._get_folder(conn, f.id) if f.id else None
        folder_id = current.id if current else (f.id or new_id())
        self._check_folder_name(conn, folder_id, f.name)
        if current is None:
            stored = Folder(id=folder_id, name=f.name, date_created=self._now())
            conn.execute(
                "INSERT INTO folders (id, name, date_created) VALUES (?, ?, ?)",
                (stored.id, stored.name, _ts(stored.date_created)),
            )
            return stored
        conn.execute("UPDATE folders SET name = ? WHERE id = ?", (f.name, folder_id))
        return Folder(id=folder_id, name=f.name, date_created=current.date_created)

    def _check_folder_name(self, conn: sqlite3.Connection, folder_id: str, name: str) -> None:
        wanted = name.casefold()
        for row in conn.execute("SELECT id, name FROM folders WHERE id != ?", (folder_id,)):
            if str(row["name"]).casefold() == wanted:
                raise DuplicateFolderError(f"folder already exists: {row['name']}")

    def _get_folder(self, conn: sqlite3.Connection, folder_id: str) -> Optional[Folder]:
        row = conn.execute(
            "SELECT id, name, date_created FROM folders WHERE id = ? LIMIT 1",
            (folder_id,),
        ).fetchone()
        return _folder_from_row(row) if row else None

    def _find_folder_by_name(self, conn: sqlite3.Connection, name: str) -> Optional[Folder]:
        wanted = (name or "").casefold()
        for row in conn.execute("SELECT id, name, date_created FROM folders"):
            if str(row["name"]).casefold() == wanted:
                return _folder_from_row(row)
        return None

    def _list_folders(self, conn: sqlite3.Connection, with_counts: bool) -> List[Folder]:
        rows = conn.execute(
            "SELECT id, name, date_created FROM folders ORDER BY date_created DESC, rowid DESC"
        ).fetchall()
        folders = [_folder_from_row(r) for r in rows]
        if with_counts:
            counts: Dict[str, int] = {
                str(r[0]): int(r[1])
                for r in conn.execute(
                    "SELECT folder, COUNT(*) FROM bookmarks WHERE folder IS NOT NULL GROUP BY folder"
                )
            }
            for f in folders:
                f.bookmark_count = counts.get(f.name, 0)
        return folders

    def _restore(self, conn: sqlite3.Connection, bookmarks: List[Bookmark], folders: List[Folder]) -> bool:
        now = self._now()
        for f in folders:
            self._check_folder_name(conn, f.id, f.name)
            conn.execute(
                """
                INSERT INTO folders (id, name, date_created) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name=excluded.name, date_created=excluded.date_created
                """,
                (f.id, f.name, _ts(f.date_created or now)),
            )
        for b in bookmarks:
            given = [t for t in (b.last_updated, b.last_accessed) if t is not None]
            created = b.created or min(given, default=now)
            filled = Bookmark(
                id=b.id,
                title=b.title,
                url=b.url,
                folder=b.folder,
                favicon=b.favicon,
                description=b.description,
                created=created,
                # Missing or earlier stamps are pulled up to created.
                last_updated=max(b.last_updated or created, created),
                last_accessed=max(b.last_accessed or created, created),
            )
            conn.execute(
                f"""
                INSERT INTO bookmarks ({_BOOKMARK_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title=excluded.title,
                    url=excluded.url,
                    folder=excluded.folder,
                    favicon=excluded.favicon,
                    description=excluded.description,
                    created=excluded.created,
                    last_updated=excluded.last_updated,
                    last_accessed=excluded.last_accessed
                """,
                _bookmark_row(filled),
            )
        return True


def _bookmark_row(b: Bookmark) -> tuple:
    return (
        b.id,
        b.title,
        b.url,
        b.folder,
        b.favicon,
        b.description,
        _ts(b.created),
        _ts(b.last_updated),
        _ts(b.last_accessed),
    )


def _bookmark_from_row(row: sqlite3.Row) -> Bookmark:
    return Bookmark(
        id=row["id"],
        title=row["title"],
        url=row["url"],
        folder=row["folder"],
        favicon=row["favicon"],
        description=row["description"],
        created=parse_ts(row["created"]),
        last_updated=parse_ts(row["last_updated"]),
        last_accessed=parse_ts(row["last_accessed"]),
    )


def _folder_from_row(row: sqlite3.Row) -> Folder:
    return Folder(id=row["id"], name=row["name"], date_created=parse_ts(row["date_created"]))
