from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import httpx

from .config import Settings
from .errors import RetrievalError
from .extractor import ExtractedArticle, estimate_reading_time
from .html_utils import tidy_url
from .models import Article
from .retrieval import fetch_article, strategies_from_templates
from .sync import SyncEngine, WriteOutcome

logger = logging.getLogger(__name__)

MIN_USABLE_CONTENT = 100
EXCERPT_LENGTH = 200


@dataclass(slots=True)
class SaveResult:
    saved: Article | None = None
    duplicate: Article | None = None
    manual_entry: bool = False
    outcome: WriteOutcome | None = None


class Library:
    """Save pipeline: validate, de-duplicate, fetch, extract, then write through the engine."""

    def __init__(self, engine: SyncEngine, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self.engine = engine
        self.settings = settings
        self._strategies = strategies_from_templates(settings.strategies)
        self._client = client

    async def _fetch(self, url: str) -> ExtractedArticle | None:
        try:
            return await fetch_article(
                url,
                strategies=self._strategies,
                timeout=self.settings.fetch_timeout,
                min_length=self.settings.min_html_length,
                client=self._client,
            )
        except RetrievalError as exc:
            logger.info("Falling back to manual entry for %s: %s", url, exc)
            return None

    async def save_url(
        self,
        url: str,
        title: str | None = None,
        tags: Iterable[str] = (),
        folder_id: str | None = None,
        force: bool = False,
    ) -> SaveResult:
        cleaned = tidy_url(url.strip())
        if not cleaned:
            raise ValueError(f"not a valid URL: {url!r}")

        existing = self.engine.db.find_duplicate(cleaned)
        if existing is not None and not force:
            logger.info("Already saved: %s (%s)", cleaned, existing.id)
            return SaveResult(duplicate=existing)

        extracted = await self._fetch(cleaned)
        content = extracted.content if extracted else ""
        article = Article.create(
            cleaned,
            (title or "").strip() or (extracted.title if extracted else ""),
            "general",
            tags=[t.strip().lower() for t in tags if t.strip()],
            folder_id=folder_id,
            thumbnail=extracted.image if extracted else "",
            excerpt=(extracted.description if extracted else "") or content[:EXCERPT_LENGTH],
            content=content,
            reading_time=extracted.reading_time if extracted else 0,
        )
        outcome = await self.engine.add_article(article)
        manual = extracted is None or len(content) < MIN_USABLE_CONTENT
        if outcome.local_ok:
            logger.info("Saved %s as %s (status=%s)", cleaned, article.id, outcome.status)
        return SaveResult(
            saved=article if outcome.local_ok else None,
            duplicate=existing,
            manual_entry=manual,
            outcome=outcome,
        )

    async def save_manual_content(self, article_id: str, content: str) -> WriteOutcome:
        """Store text the reader pasted in after extraction came up short."""
        text = content.strip()
        updates = {"content": text, "reading_time": estimate_reading_time(text)}
        article = self.engine.db.get_article(article_id)
        if article is not None and not article.excerpt:
            updates["excerpt"] = text[:EXCERPT_LENGTH]
        return await self.engine.update_article(article_id, updates)


__all__ = ["Library", "SaveResult"]
