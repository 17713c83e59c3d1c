from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from margins.config import Settings
from margins.library import Library

ARTICLE_HTML = (
    "<html><head><title>Slow Cooking | Kitchen Notes</title>"
    '<meta name="description" content="Low and slow wins." />'
    '<meta property="og:image" content="https://kitchen.example.com/pot.jpg" /></head>'
    "<body><article>"
    + "".join(f"<p>Paragraph {i} explains why braising at a low temperature keeps the meat tender and juicy.</p>" for i in range(8))
    + "</article></body></html>"
)


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        root=tmp_path,
        db_path=tmp_path / "margins.db",
        fetch_timeout=1.0,
        min_html_length=100,
        strategies=("{url}", "https://proxy.example/?{url}"),
        project_id="",
        api_key="",
        rpm_write=60,
        poll_interval=30.0,
        session_limit=100,
    )


def _library(engine, tmp_path: Path, handler) -> Library:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Library(engine, _settings(tmp_path), client=client)


@pytest.mark.asyncio
async def test_save_url_extracts_and_stores(engine, db, tmp_path) -> None:
    library = _library(engine, tmp_path, lambda request: httpx.Response(200, text=ARTICLE_HTML))

    result = await library.save_url("kitchen.example.com/braise", tags=[" Cooking ", "Food"])

    assert result.saved is not None
    assert result.manual_entry is False
    stored = db.get_article(result.saved.id)
    assert stored.url == "https://kitchen.example.com/braise"
    assert stored.title == "Slow Cooking"
    assert stored.tags == ["cooking", "food"]
    assert stored.excerpt == "Low and slow wins."
    assert stored.thumbnail == "https://kitchen.example.com/pot.jpg"
    assert stored.category == "general"
    assert stored.reading_time == 1
    assert "Paragraph 0" in stored.content


@pytest.mark.asyncio
async def test_duplicate_is_reported_unless_forced(engine, db, tmp_path) -> None:
    library = _library(engine, tmp_path, lambda request: httpx.Response(200, text=ARTICLE_HTML))
    first = await library.save_url("https://kitchen.example.com/braise")

    again = await library.save_url("https://www.kitchen.example.com/braise/?utm_source=mail")
    assert again.saved is None
    assert again.duplicate is not None and again.duplicate.id == first.saved.id
    assert len(db.get_articles()) == 1

    forced = await library.save_url("https://kitchen.example.com/braise", force=True)
    assert forced.saved is not None
    assert len(db.get_articles()) == 2


@pytest.mark.asyncio
async def test_unreachable_page_falls_back_to_manual_entry(engine, db, tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    library = _library(engine, tmp_path, handler)
    result = await library.save_url("https://paywalled.example.com/story", title="The Story")

    assert result.saved is not None
    assert result.manual_entry is True
    assert result.saved.title == "The Story"
    assert result.saved.content == ""

    outcome = await library.save_manual_content(result.saved.id, "  Pasted body of the story. " * 20)
    assert outcome.status == "success"
    stored = db.get_article(result.saved.id)
    assert stored.content.startswith("Pasted body")
    assert stored.reading_time == 1
    assert stored.excerpt


@pytest.mark.asyncio
async def test_title_falls_back_to_domain(engine, tmp_path) -> None:
    library = _library(engine, tmp_path, lambda request: httpx.Response(500))
    result = await library.save_url("https://www.unknown.example.org/x")
    assert result.saved.title == "unknown.example.org"


@pytest.mark.asyncio
async def test_invalid_url_is_rejected(engine, tmp_path) -> None:
    library = _library(engine, tmp_path, lambda request: httpx.Response(200, text=ARTICLE_HTML))
    with pytest.raises(ValueError):
        await library.save_url("/relative/path")
