from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, TypeVar

from .errors import StorageError
from .html_utils import normalize_url
from .models import Article, Folder, ReadingSession, now_iso

logger = logging.getLogger(__name__)

ARTICLES_KEY = "readlater_articles"
FOLDERS_KEY = "readlater_folders"
SESSIONS_KEY = "readitlater_sessions"
PREFS_KEY = "readlater_prefs"

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=FULL;
CREATE TABLE IF NOT EXISTS blobs (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

T = TypeVar("T")


class Database:
    """Local cache: namespaced JSON blobs in sqlite, one transaction per mutation.

    Each blob holds a whole collection (articles, folders, sessions) in the
    same camelCase JSON the browser client kept in localStorage, so existing
    exports can be loaded as-is. Mutations read, modify and write the full
    collection inside a single ``BEGIN IMMEDIATE`` transaction and are
    committed before the call returns.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.path,
            timeout=30,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        cur = self._conn.cursor()
        try:
            yield cur
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        with self.cursor() as cur:
            try:
                cur.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageError(f"could not start transaction: {exc}") from exc
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            else:
                try:
                    cur.execute("COMMIT")
                except sqlite3.Error as exc:
                    cur.execute("ROLLBACK")
                    raise StorageError(f"commit failed: {exc}") from exc

    def close(self) -> None:
        self._conn.close()

    # --- raw blobs ---
    def _read(self, cur: sqlite3.Cursor, key: str, default: Any) -> Any:
        cur.execute("SELECT value FROM blobs WHERE key = ?", (key,))
        row = cur.fetchone()
        if not row:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.error("Stored blob %s is not valid JSON; treating as empty", key)
            return default

    def _write(self, cur: sqlite3.Cursor, key: str, value: Any) -> None:
        try:
            payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise StorageError(f"could not serialize {key}: {exc}") from exc
        try:
            cur.execute(
                "INSERT INTO blobs (key, value, updated_at) VALUES (?, ?, ?)\n"
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, payload, now_iso()),
            )
        except sqlite3.Error as exc:
            raise StorageError(f"could not write {key}: {exc}") from exc

    def get_blob(self, key: str, default: Any = None) -> Any:
        with self.cursor() as cur:
            return self._read(cur, key, default)

    def set_blob(self, key: str, value: Any) -> None:
        with self.transaction() as cur:
            self._write(cur, key, value)

    def _mutate(self, key: str, default: Any, fn: Callable[[Any], tuple[Any, T]]) -> T:
        with self.transaction() as cur:
            current = self._read(cur, key, default)
            new_value, result = fn(current)
            self._write(cur, key, new_value)
            return result

    # --- articles ---
    def get_articles(self) -> list[Article]:
        raw = self.get_blob(ARTICLES_KEY, [])
        return [Article.from_record(item) for item in raw if isinstance(item, Mapping)]

    def save_articles(self, articles: list[Article]) -> None:
        self.set_blob(ARTICLES_KEY, [a.to_record() for a in articles])

    def get_article(self, article_id: str) -> Article | None:
        for article in self.get_articles():
            if article.id == article_id:
                return article
        return None

    def add_article(self, article: Article) -> None:
        def _apply(records: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], None]:
            return [article.to_record(), *records], None

        self._mutate(ARTICLES_KEY, [], _apply)

    def update_article(self, article_id: str, updates: Mapping[str, Any]) -> Article | None:
        """Shallow-merge ``updates`` (attribute names) onto the stored article."""

        def _apply(records: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], Article | None]:
            for index, record in enumerate(records):
                if record.get("id") == article_id:
                    changes = dict(updates)
                    changes.setdefault("last_modified", now_iso())
                    updated = Article.from_record(record).with_updates(changes)
                    records[index] = updated.to_record()
                    return records, updated
            return records, None

        return self._mutate(ARTICLES_KEY, [], _apply)

    def delete_article(self, article_id: str) -> bool:
        def _apply(records: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], bool]:
            kept = [r for r in records if r.get("id") != article_id]
            return kept, len(kept) != len(records)

        return self._mutate(ARTICLES_KEY, [], _apply)

    def clear_articles(self) -> None:
        with self.transaction() as cur:
            cur.execute("DELETE FROM blobs WHERE key = ?", (ARTICLES_KEY,))

    def find_duplicate(self, url: str) -> Article | None:
        key = normalize_url(url)
        for article in self.get_articles():
            if normalize_url(article.url) == key:
                return article
        return None

    # --- folders ---
    def get_folders(self) -> list[Folder]:
        raw = self.get_blob(FOLDERS_KEY, [])
        return [Folder.from_record(item) for item in raw if isinstance(item, Mapping)]

    def add_folder(self, name: str, color: str | None = None) -> Folder:
        folder = Folder.create(name, color) if color else Folder.create(name)

        def _apply(records: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], Folder]:
            return [*records, folder.to_record()], folder

        return self._mutate(FOLDERS_KEY, [], _apply)

    def update_folder(self, folder_id: str, updates: Mapping[str, Any]) -> Folder | None:
        allowed = {"name", "color"}

        def _apply(records: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], Folder | None]:
            for index, record in enumerate(records):
                if record.get("id") == folder_id:
                    folder = Folder.from_record(record)
                    for name, value in updates.items():
                        if name not in allowed:
                            raise ValueError(f"unknown folder field {name!r}")
                        setattr(folder, name, value)
                    records[index] = folder.to_record()
                    return records, folder
            return records, None

        return self._mutate(FOLDERS_KEY, [], _apply)

    def delete_folder(self, folder_id: str) -> bool:
        """Remove a folder; its articles stay and lose the association."""
        with self.transaction() as cur:
            folders = self._read(cur, FOLDERS_KEY, [])
            kept = [f for f in folders if f.get("id") != folder_id]
            if len(kept) == len(folders):
                return False
            self._write(cur, FOLDERS_KEY, kept)
            articles = self._read(cur, ARTICLES_KEY, [])
            touched = False
            for record in articles:
                if record.get("folderId") == folder_id:
                    record["folderId"] = None
                    touched = True
            if touched:
                self._write(cur, ARTICLES_KEY, articles)
            return True

    # --- reading sessions ---
    def get_sessions(self) -> list[ReadingSession]:
        raw = self.get_blob(SESSIONS_KEY, [])
        return [ReadingSession.from_record(item) for item in raw if isinstance(item, Mapping)]

    def append_session(self, session: ReadingSession, limit: int = 100) -> None:
        def _apply(records: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], None]:
            records = [*records, session.to_record()]
            if len(records) > limit:
                records = records[-limit:]
            return records, None

        self._mutate(SESSIONS_KEY, [], _apply)

    # --- per-device preferences (opaque, round-tripped untouched) ---
    def get_prefs(self) -> dict[str, Any]:
        raw = self.get_blob(PREFS_KEY, {})
        return raw if isinstance(raw, dict) else {}

    def set_prefs(self, prefs: Mapping[str, Any]) -> None:
        self.set_blob(PREFS_KEY, dict(prefs))

    # --- lightweight key/value metadata ---
    def get_meta(self, key: str) -> str | None:
        with self.cursor() as cur:
            cur.execute("SELECT value FROM meta WHERE key = ?", (key,))
            row = cur.fetchone()
            return row[0] if row else None

    def set_meta(self, key: str, value: str | None) -> None:
        with self.cursor() as cur:
            if value is None:
                cur.execute("DELETE FROM meta WHERE key = ?", (key,))
                return
            cur.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?)\n"
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )


__all__ = ["Database", "ARTICLES_KEY", "FOLDERS_KEY", "SESSIONS_KEY", "PREFS_KEY"]
