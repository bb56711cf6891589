from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List

from . import __version__
from .config import Settings, load_settings
from .errors import StoreError, ValidationError
from .log import LogConfig, get_logger, setup_logging
from .model import Bookmark, BookmarkDraft
from .service import BookmarkService

log = get_logger(__name__)


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(
        prog="linkstash",
        description="Local bookmark store with automatic title and favicon lookup.",
    )
    p.add_argument("-V", "--version", action="version", version=f"linkstash {__version__}")
    p.add_argument("--config", default=None, help="YAML config file (optional). Env vars override defaults.")
    p.add_argument("--db", default=None, help="SQLite database path (overrides env/config).")
    p.add_argument("--log-level", default=None, help="DEBUG/INFO/WARN/ERROR (overrides env/config).")
    p.add_argument("--no-color", action="store_true", help="Disable colored logging.")
    p.add_argument("--no-enrich", action="store_true", help="Never contact title/favicon sources.")
    sub = p.add_subparsers(dest="cmd", required=True)

    add = sub.add_parser("add", help="Save a bookmark.")
    add.add_argument("url")
    add.add_argument("--title", default="", help="Title (default: looked up from the page).")
    add.add_argument("--folder", default=None)
    add.add_argument("--description", default=None)
    add.add_argument("--favicon", default=None, help="Favicon URL (default: looked up).")
    add.add_argument("--wait", action="store_true", help="Look up title/favicon before saving.")

    ls = sub.add_parser("list", help="List bookmarks, most recently used first.")
    ls.add_argument("--folder", default=None, help='Folder name; "" lists bookmarks without a folder.')

    search = sub.add_parser("search", help="Case-insensitive search over title, URL and description.")
    search.add_argument("query")

    open_ = sub.add_parser("open", help="Mark a bookmark as accessed and print its URL.")
    open_.add_argument("id")

    rm = sub.add_parser("rm", help="Delete a bookmark.")
    rm.add_argument("id")

    sub.add_parser("folders", help="List folders with bookmark counts.")

    mkdir = sub.add_parser("mkdir", help="Create a folder.")
    mkdir.add_argument("name")

    rmdir = sub.add_parser("rmdir", help="Delete a folder (its bookmarks keep the folder name).")
    rmdir.add_argument("id")

    exp = sub.add_parser("export", help="Write all bookmarks and folders as JSON.")
    exp.add_argument("--out", default=None, help="Output file (default: stdout).")

    imp = sub.add_parser("import", help="Upsert bookmarks and folders from an export file.")
    imp.add_argument("file")

    args = p.parse_args(argv)
    cfg = load_settings(args.config)
    if args.db:
        cfg.db_path = args.db
    if args.log_level:
        cfg.log_level = args.log_level
    if args.no_color:
        cfg.no_color = True
    if args.no_enrich:
        cfg.enrich_enabled = False
    setup_logging(LogConfig(level=cfg.log_level, no_color=cfg.no_color))

    try:
        return asyncio.run(_run(args, cfg))
    except ValidationError as e:
        log.error("%s", e)
        return 2
    except StoreError as e:
        log.error("Bookmark store unavailable: %s", e)
        return 1


async def _run(args, cfg: Settings) -> int:
    async with BookmarkService.from_settings(cfg) as svc:
        if args.cmd == "add":
            draft = BookmarkDraft(
                url=args.url,
                title=args.title,
                folder=args.folder,
                description=args.description,
                favicon=args.favicon,
            )
            b = await svc.add_bookmark(draft, wait=args.wait)
            # A CLI process exits right away; let the background lookup land first.
            await svc.wait_for_enrichment()
            _print_bookmark((await svc.get_bookmark(b.id)) or b)
            return 0

        if args.cmd == "list":
            for b in await svc.list_bookmarks(args.folder):
                _print_bookmark(b)
            return 0

        if args.cmd == "search":
            for b in await svc.search_bookmarks(args.query):
                _print_bookmark(b)
            return 0

        if args.cmd == "open":
            b = await svc.open_bookmark(args.id)
            if b is None:
                log.error("No bookmark with id %s", args.id)
                return 2
            print(b.url)
            return 0

        if args.cmd == "rm":
            await svc.delete_bookmark(args.id)
            return 0

        if args.cmd == "folders":
            for f in await svc.list_folders(with_counts=True):
                print(f"{f.id}\t{f.name}\t{f.bookmark_count or 0}")
            return 0

        if args.cmd == "mkdir":
            f = await svc.add_folder(args.name)
            print(f"{f.id}\t{f.name}")
            return 0

        if args.cmd == "rmdir":
            await svc.delete_folder(args.id)
            return 0

        if args.cmd == "export":
            text = json.dumps(await svc.export_all(), ensure_ascii=False, indent=2)
            if args.out:
                Path(args.out).write_text(text + "\n", encoding="utf-8")
                log.info("Wrote export: %s", args.out)
            else:
                sys.stdout.write(text + "\n")
            return 0

        if args.cmd == "import":
            path = Path(args.file)
            if not path.exists():
                log.error("Input file not found: %s", path)
                return 2
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except ValueError as e:
                log.error("Failed to parse %s: %s", path, e)
                return 2
            await svc.import_all(data)
            return 0

    return 2


def _print_bookmark(b: Bookmark) -> None:
    folder = b.folder or "-"
    print(f"{b.id}\t{folder}\t{b.title}\t{b.url}")
