from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable

from .database import Database
from .models import Article

logger = logging.getLogger(__name__)


def canonical_tag_map(articles: Iterable[Article]) -> dict[str, str]:
    """Map each lowercase tag to its most frequent casing (ties: lexicographically smallest)."""
    variants: dict[str, Counter[str]] = {}
    for article in articles:
        for tag in article.tags:
            variants.setdefault(tag.lower(), Counter())[tag] += 1
    return {
        lower: min(counts.items(), key=lambda item: (-item[1], item[0]))[0]
        for lower, counts in variants.items()
    }


def canonicalize(tags: Iterable[str], mapping: dict[str, str]) -> list[str]:
    out: list[str] = []
    for tag in tags:
        canonical = mapping.get(tag.lower(), tag)
        if canonical not in out:
            out.append(canonical)
    return out


def normalize_tags(db: Database) -> int:
    """Merge case-variant duplicate tags across every cached article.

    Writes only to the local cache and only when something changed; remote
    copies pick up the new casing with the next edit to each article.
    Returns the number of articles rewritten.
    """
    articles = db.get_articles()
    if not articles:
        return 0
    mapping = canonical_tag_map(articles)
    changed = 0
    for article in articles:
        new_tags = canonicalize(article.tags, mapping)
        if new_tags != article.tags:
            article.tags = new_tags
            changed += 1
    if changed:
        db.save_articles(articles)
        logger.info("Tags normalized: %d article(s) rewritten", changed)
    return changed


def all_tags(articles: Iterable[Article]) -> list[tuple[str, int]]:
    """Every article tag with its usage count, most used first."""
    counts = Counter(tag for article in articles for tag in article.tags)
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


__all__ = ["all_tags", "canonical_tag_map", "canonicalize", "normalize_tags"]
