from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

BOILERPLATE_SELECTORS: tuple[str, ...] = (
    "script", "style", "noscript", "nav", "header", "footer", "aside",
    ".nav", ".navigation", ".menu", ".sidebar", ".widget",
    ".advertisement", ".ads", ".ad", ".advert", ".sponsor",
    ".social", ".share", ".sharing", ".social-share",
    ".comments", ".comment-section", "#comments", ".disqus",
    ".related", ".recommended", ".more-articles", ".read-more",
    '[role="navigation"]', '[role="banner"]', '[role="contentinfo"]',
    ".cookie", ".cookie-banner", ".popup", ".modal", ".overlay", ".newsletter",
    "iframe", "form", "button", "input", "select",
    ".author-bio", ".author-box", ".byline-block",
    ".tags", ".categories", ".meta-box",
    ".breadcrumb", ".breadcrumbs",
    ".pagination", ".pager",
)

# Most specific first.
CONTENT_SELECTORS: tuple[str, ...] = (
    'article[role="main"]',
    "article.post-content",
    "article.article-content",
    ".post-content",
    ".article-content",
    ".article-body",
    ".entry-content",
    ".story-body",
    ".story-content",
    ".post-body",
    ".content-body",
    "article .content",
    "article",
    '[role="main"]',
    "main",
    ".content",
    "#content",
    "#main",
    ".post",
    ".article",
)

ARTICLE_HEADING_SELECTOR = "article h1, .article-title, .post-title, .entry-title, h1.title"
TEXT_BLOCK_SELECTOR = "p, h1, h2, h3, h4, h5, h6, li, blockquote, pre, td, th"
HEADING_TAGS = frozenset({"h1", "h2", "h3", "h4", "h5", "h6"})

MIN_NODE_TEXT = 300
MIN_FRAGMENT = 30
LOW_YIELD_THRESHOLD = 500
MIN_SENTENCE = 20
CHUNK_SIZE = 200
MIN_TAIL_CHUNK = 50
FAILURE_THRESHOLD = 100

_UI_PHRASE_RE = re.compile(
    r"^(share|tweet|pin|email|print|comments?|reply|subscribe|sign up|log in|menu|search)\b",
    re.I,
)
_TITLE_SUFFIX_RE = re.compile(r"(?:\s*\|\s*|\s+[-–—]\s+)[^|–—-]+$")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")
_WS_RE = re.compile(r"\s+")


@dataclass(slots=True)
class ExtractedArticle:
    title: str = ""
    description: str = ""
    image: str = ""
    content: str = ""
    reading_time: int = 0


def _collapse(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def _text(node: Tag) -> str:
    return _collapse(node.get_text(" "))


def _parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def _meta(soup: BeautifulSoup, *selectors: str) -> str:
    for selector in selectors:
        tag = soup.select_one(selector)
        if tag is not None:
            content = (tag.get("content") or "").strip()
            if content:
                return content
    return ""


def clean_title(raw: str) -> str:
    """Drop a trailing `` | Site Name`` / `` - Site Name`` suffix and collapse whitespace."""
    title = _collapse(raw or "")
    stripped = _TITLE_SUFFIX_RE.sub("", title).strip()
    return _collapse(stripped) if stripped else title


def _resolve_title(soup: BeautifulSoup) -> str:
    title = _meta(soup, 'meta[property="og:title"]', 'meta[name="twitter:title"]', 'meta[property="twitter:title"]')
    if not title:
        heading = soup.select_one(ARTICLE_HEADING_SELECTOR)
        if heading is not None:
            title = _text(heading)
    if not title and soup.title is not None:
        title = soup.title.get_text()
    return clean_title(title)


def extract_metadata(html: str) -> ExtractedArticle:
    """Title, description and image; content is left empty."""
    try:
        soup = _parse(html)
        return ExtractedArticle(
            title=_resolve_title(soup),
            description=_meta(soup, 'meta[property="og:description"]', 'meta[name="description"]'),
            image=_meta(
                soup,
                'meta[property="og:image"]',
                'meta[name="twitter:image"]',
                'meta[property="twitter:image"]',
            ),
        )
    except Exception:  # noqa: BLE001
        logger.exception("Metadata extraction failed")
        return ExtractedArticle()


def strip_boilerplate(soup: BeautifulSoup) -> None:
    for selector in BOILERPLATE_SELECTORS:
        for element in soup.select(selector):
            if not element.decomposed:
                element.decompose()


def select_content_node(soup: BeautifulSoup) -> Tag | None:
    for selector in CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is not None and len(_text(node)) > MIN_NODE_TEXT:
            logger.debug("Content node matched %s", selector)
            return node
    return soup.body


def _structured_fragments(node: Tag) -> list[str]:
    fragments: list[str] = []
    seen: set[str] = set()
    for element in node.select(TEXT_BLOCK_SELECTOR):
        text = _text(element)
        if len(text) < MIN_FRAGMENT or _UI_PHRASE_RE.match(text):
            continue
        # Nested blocks (a <p> inside an <li>) would otherwise repeat.
        if text in seen:
            continue
        seen.add(text)
        if element.name in HEADING_TAGS:
            text = f"## {text}"
        fragments.append(text)
    return fragments


def _sentence_chunks(text: str) -> list[str]:
    chunks: list[str] = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        if len(sentence) < MIN_SENTENCE:
            continue
        current += sentence + " "
        if len(current) > CHUNK_SIZE:
            chunks.append(current.strip())
            current = ""
    tail = current.strip()
    if tail and (len(tail) > MIN_TAIL_CHUNK or not chunks):
        chunks.append(tail)
    return chunks


def extract_content(html: str) -> str:
    try:
        soup = _parse(html)
        strip_boilerplate(soup)
        node = select_content_node(soup)
        if node is None:
            return ""
        fragments = _structured_fragments(node)
        if len(" ".join(fragments)) >= LOW_YIELD_THRESHOLD:
            return "\n\n".join(fragments)
        logger.debug("Structured extraction yielded too little, using sentence chunks")
        return "\n\n".join(_sentence_chunks(_text(node)))
    except Exception:  # noqa: BLE001
        logger.exception("Content extraction failed")
        return ""


def extract(html: str) -> ExtractedArticle:
    article = extract_metadata(html)
    article.content = extract_content(html)
    article.reading_time = estimate_reading_time(article.content)
    return article


def is_extraction_failure(content: str | None) -> bool:
    return len((content or "").strip()) < FAILURE_THRESHOLD


def estimate_reading_time(text: str | None, wpm: int = 200) -> int:
    """Minutes to read ``text``; at least one for any non-empty text."""
    if not text or not text.strip():
        return 0
    words = len(text.split())
    return max(1, -(-words // wpm))


__all__ = [
    "ExtractedArticle",
    "clean_title",
    "estimate_reading_time",
    "extract",
    "extract_content",
    "extract_metadata",
    "is_extraction_failure",
    "select_content_node",
    "strip_boilerplate",
]
