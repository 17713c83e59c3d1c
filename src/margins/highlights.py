from __future__ import annotations

import datetime as dt
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Sequence

from .models import Article, Highlight


@dataclass(slots=True)
class HighlightRef:
    highlight: Highlight
    article_id: str
    article_title: str
    article_url: str


@dataclass(slots=True)
class HighlightStats:
    total_highlights: int
    articles_with_highlights: int
    highlights_with_notes: int
    highlights_with_tags: int
    color_distribution: dict[str, int]
    top_tags: list[tuple[str, int]]
    avg_per_article: float


def all_highlights(articles: Iterable[Article]) -> list[HighlightRef]:
    return [
        HighlightRef(highlight=h, article_id=a.id, article_title=a.title, article_url=a.url)
        for a in articles
        for h in a.highlights
    ]


def search_highlights(articles: Iterable[Article], query: str) -> list[HighlightRef]:
    needle = query.lower()
    return [
        ref
        for ref in all_highlights(articles)
        if needle in ref.highlight.text.lower()
        or needle in ref.highlight.note.lower()
        or any(needle in tag for tag in ref.highlight.tags)
    ]


def highlights_by_tag(articles: Iterable[Article], tag: str) -> list[HighlightRef]:
    wanted = tag.lower()
    return [ref for ref in all_highlights(articles) if wanted in ref.highlight.tags]


def highlight_tag_counts(articles: Iterable[Article]) -> list[tuple[str, int]]:
    counts = Counter(tag for ref in all_highlights(articles) for tag in ref.highlight.tags)
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def highlight_stats(articles: Sequence[Article]) -> HighlightStats:
    refs = all_highlights(articles)
    with_highlights = sum(1 for a in articles if a.highlights)
    return HighlightStats(
        total_highlights=len(refs),
        articles_with_highlights=with_highlights,
        highlights_with_notes=sum(1 for r in refs if r.highlight.note.strip()),
        highlights_with_tags=sum(1 for r in refs if r.highlight.tags),
        color_distribution=dict(Counter(r.highlight.color for r in refs)),
        top_tags=highlight_tag_counts(articles)[:10],
        avg_per_article=round(len(refs) / with_highlights, 1) if with_highlights else 0.0,
    )


def export_markdown(articles: Sequence[Article], now: dt.datetime | None = None) -> str:
    """All highlights as Markdown, grouped under one heading per article."""
    now = now or dt.datetime.now()
    grouped = [a for a in articles if a.highlights]
    total = sum(len(a.highlights) for a in grouped)
    lines = [
        "# All Highlights",
        "",
        f"Exported: {now.strftime('%Y-%m-%d %H:%M')}",
        "",
        f"Total: {total} highlights from {len(grouped)} articles",
        "",
        "---",
        "",
    ]
    for article in grouped:
        lines += [f"## {article.title}", "", f"[{article.url}]({article.url})", ""]
        for h in article.highlights:
            lines += [f"> {h.text}", ""]
            if h.note:
                lines += [f"**Note:** {h.note}", ""]
            if h.tags:
                lines += [f"**Tags:** {', '.join(h.tags)}", ""]
        lines += ["---", ""]
    return "\n".join(lines)


__all__ = [
    "HighlightRef",
    "HighlightStats",
    "all_highlights",
    "export_markdown",
    "highlight_stats",
    "highlight_tag_counts",
    "highlights_by_tag",
    "search_highlights",
]
