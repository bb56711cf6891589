from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings (with a trailing Z) and epoch millis."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in data and data[k] is not None:
            return data[k]
    return None


@dataclass
class Bookmark:
    id: str
    title: str
    url: str
    folder: Optional[str] = None
    favicon: Optional[str] = None
    description: Optional[str] = None
    created: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    last_accessed: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "folder": self.folder,
            "favicon": self.favicon,
            "description": self.description,
            "created": format_ts(self.created),
            "last_updated": format_ts(self.last_updated),
            "last_accessed": format_ts(self.last_accessed),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Bookmark":
        # camelCase keys come from exports of the original browser app.
        return Bookmark(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            folder=data.get("folder") or None,
            favicon=data.get("favicon") or None,
            description=data.get("description") or None,
            created=parse_ts(data.get("created")),
            last_updated=parse_ts(_pick(data, "last_updated", "lastUpdated")),
            last_accessed=parse_ts(_pick(data, "last_accessed", "lastAccessed")),
        )


@dataclass
class Folder:
    id: str
    name: str
    date_created: Optional[datetime] = None
    bookmark_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "date_created": format_ts(self.date_created),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Folder":
        return Folder(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            date_created=parse_ts(_pick(data, "date_created", "dateCreated")),
        )


@dataclass
class BookmarkDraft:
    url: str
    title: str = ""
    folder: Optional[str] = None
    description: Optional[str] = None
    favicon: Optional[str] = None


@dataclass
class EnrichmentResult:
    title: Optional[str] = None
    favicon: Optional[str] = None
    title_source: Optional[str] = None
    favicon_source: Optional[str] = None

    @property
    def empty(self) -> bool:
        return self.title is None and self.favicon is None
