from __future__ import annotations

import datetime as dt

import pytest

from margins.analytics import SessionTracker, analytics, daily_stats, format_minutes, reading_streak
from margins.models import Article, ReadingSession

DAY_MS = 24 * 60 * 60 * 1000
NOW = int(dt.datetime(2024, 6, 10, 12, 0, tzinfo=dt.timezone.utc).timestamp() * 1000)


def _session(days_ago: int, minutes: int, article_id: str = "a") -> ReadingSession:
    start = NOW - days_ago * DAY_MS
    return ReadingSession(article_id=article_id, start_time=start, end_time=start + minutes * 60000, duration=minutes * 60000)


@pytest.mark.asyncio
async def test_tracker_folds_session_into_article(engine, db) -> None:
    article = Article.create("https://example.com/a", "A")
    await engine.add_article(article)
    ticks = iter([1_000, 61_000])
    tracker = SessionTracker(engine, clock=lambda: next(ticks))

    await tracker.start_session(article.id)
    session, outcome = await tracker.end_session()

    assert session.duration == 60_000
    assert outcome is not None and outcome.status == "success"
    stored = db.get_article(article.id)
    assert stored.read_count == 1
    assert stored.total_read_time == 60_000
    assert stored.last_read_at
    assert [s.duration for s in db.get_sessions()] == [60_000]


@pytest.mark.asyncio
async def test_tracker_without_open_session(engine) -> None:
    tracker = SessionTracker(engine)
    assert await tracker.end_session() is None


@pytest.mark.asyncio
async def test_tracker_respects_session_cap(engine, db) -> None:
    ticks = iter(range(0, 100_000, 1_000))
    tracker = SessionTracker(engine, limit=2, clock=lambda: next(ticks))
    for _ in range(3):
        await tracker.start_session("unknown")
        await tracker.end_session()
    assert len(db.get_sessions()) == 2


def test_daily_stats_groups_by_day() -> None:
    sessions = [_session(0, 10, "a"), _session(0, 5, "b"), _session(1, 20, "a"), _session(10, 30, "a")]
    stats = daily_stats(sessions, days=7, now=NOW)
    assert [(s.date, s.sessions, s.articles_read) for s in stats] == [
        ("2024-06-09", 1, 1),
        ("2024-06-10", 2, 2),
    ]


def test_reading_streak_allows_yesterday() -> None:
    assert reading_streak([_session(1, 5), _session(2, 5), _session(4, 5)], now=NOW) == 2
    assert reading_streak([_session(0, 5), _session(1, 5)], now=NOW) == 2
    assert reading_streak([_session(3, 5)], now=NOW) == 0
    assert reading_streak([], now=NOW) == 0


def test_analytics_summary() -> None:
    read = Article.create("https://example.com/1", "1", "news", is_read=True, is_favorite=True)
    read.read_count = 3
    unread = Article.create("https://example.com/2", "2", "news")
    report = analytics([read, unread], [_session(0, 30), _session(1, 10)], now=NOW)
    assert report.total_articles == 2
    assert report.read_articles == 1
    assert report.unread_articles == 1
    assert report.favorite_articles == 1
    assert report.total_read_minutes == 40
    assert report.avg_session_minutes == 20
    assert report.category_distribution == {"news": 2}
    assert report.most_read == [read]


def test_format_minutes() -> None:
    assert format_minutes(45) == "45m"
    assert format_minutes(60) == "1h"
    assert format_minutes(135) == "2h 15m"
