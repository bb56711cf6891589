from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# Title chain, tried in order. "decode" says how the response body carries
# the page: "html" is the page itself, "json" wraps it under "field".
DEFAULT_TITLE_SOURCES: List[Dict[str, Any]] = [
    {"name": "direct", "endpoint": "{raw_url}", "decode": "html"},
    {"name": "allorigins-get", "endpoint": "https://api.allorigins.win/get?url={url}", "decode": "json", "field": "contents"},
    {"name": "allorigins-raw", "endpoint": "https://api.allorigins.win/raw?url={url}", "decode": "html"},
    {"name": "corsproxy", "endpoint": "https://corsproxy.io/?url={url}", "decode": "html"},
]

# Favicon chain, tried in order. kinds: page | icon_list | service
DEFAULT_FAVICON_SOURCES: List[Dict[str, Any]] = [
    {"name": "page", "kind": "page", "endpoint": "{raw_url}"},
    {"name": "besticon", "kind": "icon_list", "endpoint": "https://besticon-demo.herokuapp.com/allicons.json?url={url}"},
    {"name": "duckduckgo", "kind": "service", "endpoint": "https://icons.duckduckgo.com/ip3/{domain}.ico"},
    {"name": "favicon.ico", "kind": "service", "endpoint": "{origin}/favicon.ico"},
]

DEFAULT_FAVICON_BACKSTOP = "https://www.google.com/s2/favicons?domain={domain}&sz=16"


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None else v


def _default_db_path() -> str:
    base = os.getenv("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return str(Path(base) / "linkstash" / "bookmarks.sqlite")


@dataclass
class Settings:
    # Storage
    db_path: str = field(default_factory=_default_db_path)

    # Enrichment
    enrich_enabled: bool = True
    source_timeout_s: float = 3.0
    debounce_s: float = 0.5
    user_agent: str = "linkstash/0.3 (+https://example.invalid)"
    fetch_max_bytes: int = 350_000
    favicon_backstop: str = DEFAULT_FAVICON_BACKSTOP
    title_sources: List[Dict[str, Any]] = field(default_factory=lambda: [dict(x) for x in DEFAULT_TITLE_SOURCES])
    favicon_sources: List[Dict[str, Any]] = field(default_factory=lambda: [dict(x) for x in DEFAULT_FAVICON_SOURCES])

    # Logging / UX
    log_level: str = "INFO"
    no_color: bool = False

    @staticmethod
    def from_env() -> "Settings":
        s = Settings()
        s.db_path = _env_str("LINKSTASH_DB", s.db_path)

        s.enrich_enabled = _env_bool("LINKSTASH_ENRICH", s.enrich_enabled)
        s.source_timeout_s = _env_float("LINKSTASH_SOURCE_TIMEOUT_S", s.source_timeout_s)
        s.debounce_s = _env_float("LINKSTASH_DEBOUNCE_S", s.debounce_s)
        s.user_agent = _env_str("LINKSTASH_UA", s.user_agent)
        s.fetch_max_bytes = _env_int("LINKSTASH_FETCH_MAX_BYTES", s.fetch_max_bytes)
        s.favicon_backstop = _env_str("LINKSTASH_FAVICON_BACKSTOP", s.favicon_backstop)

        s.log_level = _env_str("LINKSTASH_LOG_LEVEL", s.log_level)
        s.no_color = _env_bool("LINKSTASH_NO_COLOR", s.no_color)
        return s

    @staticmethod
    def from_file(path: Path) -> "Settings":
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        s = Settings.from_env()
        for k, v in data.items():
            if hasattr(s, k):
                setattr(s, k, v)
        return s


def load_settings(config_path: Optional[str]) -> Settings:
    if config_path:
        return Settings.from_file(Path(config_path))
    return Settings.from_env()
