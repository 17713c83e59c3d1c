from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .models import Article, Highlight, generate_id
from .sync import SyncEngine

logger = logging.getLogger(__name__)

CLIPPING_SEPARATOR = "=========="
KINDLE_URL = "#kindle-import"
_AUTHOR_RE = re.compile(r"^(.*)\s+\(([^)]+)\)$")


@dataclass(slots=True)
class Book:
    title: str
    author: str = "Unknown Author"
    highlights: list[Highlight] = field(default_factory=list)


def parse_kindle_clippings(text: str) -> dict[str, Book]:
    """Group a Kindle ``My Clippings.txt`` export by book title.

    Bookmarks and notes are skipped; only highlighted passages are kept.
    """
    books: dict[str, Book] = {}
    for clipping in text.split(CLIPPING_SEPARATOR):
        lines = [line.strip() for line in clipping.strip().splitlines() if line.strip()]
        if len(lines) < 3:
            continue
        title_line = lines[0].lstrip("\ufeff")
        title, author = title_line, "Unknown Author"
        match = _AUTHOR_RE.match(title_line)
        if match:
            title, author = match.group(1).strip(), match.group(2).strip()

        passage = lines[-1]
        if passage.startswith(("Your Bookmark", "Your Note")):
            continue
        book = books.setdefault(title, Book(title=title, author=author))
        book.highlights.append(Highlight(id=generate_id("highlight"), text=passage, color="yellow"))
    return books


async def import_books(engine: SyncEngine, books: dict[str, Book]) -> tuple[int, int]:
    """Merge books into the library by title; returns ``(added, updated)``."""
    added = updated = 0
    for book in books.values():
        existing = next((a for a in engine.db.get_articles() if a.title == book.title), None)
        if existing is not None:
            known = {h.text for h in existing.highlights}
            fresh = [h for h in book.highlights if h.text not in known]
            if fresh:
                await engine.update_article(existing.id, {"highlights": [*existing.highlights, *fresh]})
            updated += 1
            continue

        quoted = "\n\n".join(f"> {h.text}" for h in book.highlights)
        article = Article.create(
            KINDLE_URL,
            book.title,
            "other",
            tags=["kindle", "imported"],
            excerpt=f"Imported Kindle Highlights for {book.title}",
            content=f"Imported from Kindle\nAuthor: {book.author}\n\n{quoted}",
            reading_time=-(-len(book.highlights) // 5),
            is_read=True,
            highlights=book.highlights,
        )
        article.extra["author"] = book.author
        await engine.add_article(article)
        added += 1
    logger.info("Kindle import: %d added, %d updated", added, updated)
    return added, updated


__all__ = ["Book", "import_books", "parse_kindle_clippings"]
