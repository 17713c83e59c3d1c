from __future__ import annotations

import dataclasses
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

from .html_utils import extract_domain

Category = Literal["general", "article", "blog", "news", "tutorial", "research", "book", "video", "poem", "other"]
HighlightColor = Literal["yellow", "green", "blue", "pink", "orange"]

CATEGORIES: tuple[str, ...] = ("general", "article", "blog", "news", "tutorial", "research", "book", "video", "poem", "other")
HIGHLIGHT_COLORS: tuple[str, ...] = ("yellow", "green", "blue", "pink", "orange")
DEFAULT_FOLDER_COLOR = "#6366f1"

_ID_ALPHABET = string.digits + string.ascii_lowercase


def now_iso() -> str:
    """UTC timestamp in the same shape as JavaScript's ``toISOString``."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_id(prefix: str) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{now_ms()}_{suffix}"


def _as_bool(value: Any) -> bool:
    return bool(value) if value is not None else False


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value if item is not None]


@dataclass(slots=True)
class Highlight:
    id: str
    text: str
    color: str = "yellow"
    note: str = ""
    tags: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=now_iso)

    @classmethod
    def create(cls, text: str, color: str = "yellow", *, note: str = "", tags: list[str] | None = None) -> "Highlight":
        if color not in HIGHLIGHT_COLORS:
            raise ValueError(f"unknown highlight color {color!r}")
        return cls(
            id=generate_id("highlight"),
            text=text,
            color=color,
            note=note,
            tags=[t.strip().lower() for t in tags or [] if t.strip()],
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "color": self.color,
            "note": self.note,
            "tags": list(self.tags),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "Highlight":
        return cls(
            id=str(data.get("id") or generate_id("highlight")),
            text=str(data.get("text") or ""),
            color=str(data.get("color") or "yellow"),
            note=str(data.get("note") or ""),
            tags=_as_str_list(data.get("tags")),
            timestamp=str(data.get("timestamp") or now_iso()),
        )


# attribute name -> persisted (camelCase) key
ARTICLE_FIELDS: dict[str, str] = {
    "id": "id",
    "url": "url",
    "title": "title",
    "category": "category",
    "tags": "tags",
    "is_read": "isRead",
    "is_favorite": "isFavorite",
    "is_archived": "isArchived",
    "date_added": "dateAdded",
    "last_modified": "lastModified",
    "thumbnail": "thumbnail",
    "excerpt": "excerpt",
    "content": "content",
    "reading_time": "readingTime",
    "highlights": "highlights",
    "read_progress": "readProgress",
    "folder_id": "folderId",
    "last_read_at": "lastReadAt",
    "read_count": "readCount",
    "total_read_time": "totalReadTime",
}
_KEY_TO_ATTR = {key: attr for attr, key in ARTICLE_FIELDS.items()}
_IMMUTABLE_FIELDS = frozenset({"id", "date_added"})


@dataclass(slots=True)
class Article:
    id: str
    url: str
    title: str = ""
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    is_read: bool = False
    is_favorite: bool = False
    is_archived: bool = False
    date_added: str = field(default_factory=now_iso)
    last_modified: str | None = None
    thumbnail: str = ""
    excerpt: str = ""
    content: str = ""
    reading_time: int = 0
    highlights: list[Highlight] = field(default_factory=list)
    read_progress: int = 0
    folder_id: str | None = None
    last_read_at: str | None = None
    read_count: int = 0
    total_read_time: int = 0
    # Keys we do not model (e.g. "author" from Kindle imports) survive a load/save cycle.
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        url: str,
        title: str = "",
        category: str = "general",
        *,
        tags: list[str] | None = None,
        folder_id: str | None = None,
        thumbnail: str = "",
        excerpt: str = "",
        content: str = "",
        reading_time: int = 0,
        is_read: bool = False,
        is_favorite: bool = False,
        is_archived: bool = False,
        highlights: list[Highlight] | None = None,
    ) -> "Article":
        return cls(
            id=generate_id("article"),
            url=url,
            title=title or extract_domain(url),
            category=category if category in CATEGORIES else "other",
            tags=list(tags or []),
            is_read=is_read,
            is_favorite=is_favorite,
            is_archived=is_archived,
            thumbnail=thumbnail,
            excerpt=excerpt,
            content=content,
            reading_time=reading_time,
            highlights=list(highlights or []),
            folder_id=folder_id,
        )

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = dict(self.extra)
        for attr, key in ARTICLE_FIELDS.items():
            value = getattr(self, attr)
            if attr == "highlights":
                value = [h.to_record() for h in value]
            elif attr == "tags":
                value = list(value)
            record[key] = value
        return record

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "Article":
        extra = {k: v for k, v in data.items() if k not in _KEY_TO_ATTR}
        return cls(
            id=str(data.get("id") or generate_id("article")),
            url=str(data.get("url") or ""),
            title=str(data.get("title") or ""),
            category=str(data.get("category") or "general"),
            tags=_as_str_list(data.get("tags")),
            is_read=_as_bool(data.get("isRead")),
            is_favorite=_as_bool(data.get("isFavorite")),
            is_archived=_as_bool(data.get("isArchived")),
            date_added=str(data.get("dateAdded") or now_iso()),
            last_modified=data.get("lastModified") or None,
            thumbnail=str(data.get("thumbnail") or ""),
            excerpt=str(data.get("excerpt") or ""),
            content=str(data.get("content") or ""),
            reading_time=_as_int(data.get("readingTime")),
            highlights=[Highlight.from_record(h) for h in data.get("highlights") or [] if isinstance(h, Mapping)],
            read_progress=max(0, min(100, _as_int(data.get("readProgress")))),
            folder_id=data.get("folderId") or None,
            last_read_at=data.get("lastReadAt") or None,
            read_count=max(0, _as_int(data.get("readCount"))),
            total_read_time=max(0, _as_int(data.get("totalReadTime"))),
            extra=extra,
        )

    def with_updates(self, updates: Mapping[str, Any]) -> "Article":
        """Shallow merge of ``updates`` (attribute names) onto a copy of this article."""
        unknown = [name for name in updates if name not in ARTICLE_FIELDS]
        if unknown:
            raise ValueError(f"unknown article fields: {', '.join(sorted(unknown))}")
        changes = {name: value for name, value in updates.items() if name not in _IMMUTABLE_FIELDS}
        return dataclasses.replace(self, **changes)


def update_keys(updates: Mapping[str, Any]) -> dict[str, Any]:
    """Translate attribute-name updates to persisted keys, serializing nested values."""
    out: dict[str, Any] = {}
    for attr, value in updates.items():
        if attr == "highlights":
            value = [h.to_record() if isinstance(h, Highlight) else dict(h) for h in value]
        out[ARTICLE_FIELDS[attr]] = value
    return out


@dataclass(slots=True)
class Folder:
    id: str
    name: str
    color: str = DEFAULT_FOLDER_COLOR
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def create(cls, name: str, color: str = DEFAULT_FOLDER_COLOR) -> "Folder":
        return cls(id=generate_id("folder"), name=name, color=color or DEFAULT_FOLDER_COLOR)

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "color": self.color, "createdAt": self.created_at}

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "Folder":
        return cls(
            id=str(data.get("id") or generate_id("folder")),
            name=str(data.get("name") or ""),
            color=str(data.get("color") or DEFAULT_FOLDER_COLOR),
            created_at=str(data.get("createdAt") or now_iso()),
        )


@dataclass(slots=True)
class ReadingSession:
    article_id: str
    start_time: int
    end_time: int | None = None
    duration: int = 0

    def to_record(self) -> dict[str, Any]:
        return {
            "articleId": self.article_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "ReadingSession":
        end = data.get("endTime")
        return cls(
            article_id=str(data.get("articleId") or ""),
            start_time=_as_int(data.get("startTime")),
            end_time=_as_int(end) if end is not None else None,
            duration=_as_int(data.get("duration")),
        )


@dataclass(slots=True, frozen=True)
class Identity:
    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: str = ""


@dataclass(slots=True)
class Credential:
    id_token: str
    refresh_token: str = ""
    # epoch seconds; 0 means unknown
    expires_at: float = 0.0

    @property
    def expired(self) -> bool:
        return bool(self.expires_at) and time.time() >= self.expires_at


__all__ = [
    "ARTICLE_FIELDS",
    "Article",
    "CATEGORIES",
    "Credential",
    "Folder",
    "HIGHLIGHT_COLORS",
    "Highlight",
    "Identity",
    "ReadingSession",
    "generate_id",
    "now_iso",
    "now_ms",
    "parse_iso",
    "update_keys",
]
