from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from .models import Article, ReadingSession, now_iso, now_ms, parse_iso
from .sync import SyncEngine, WriteOutcome

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_SESSION_LIMIT = 100


class SessionTracker:
    """Open/close reading sessions and fold each one into its article's stats."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        limit: int = DEFAULT_SESSION_LIMIT,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.engine = engine
        self.limit = limit
        self._clock = clock
        self.current: ReadingSession | None = None

    async def start_session(self, article_id: str) -> ReadingSession:
        if self.current is not None:
            await self.end_session()
        self.current = ReadingSession(article_id=article_id, start_time=self._clock())
        return self.current

    async def end_session(self) -> tuple[ReadingSession, WriteOutcome | None] | None:
        session = self.current
        if session is None:
            return None
        self.current = None
        session.end_time = self._clock()
        session.duration = max(0, session.end_time - session.start_time)
        self.engine.db.append_session(session, self.limit)

        article = self.engine.db.get_article(session.article_id)
        if article is None:
            logger.debug("Session closed for unknown article %s", session.article_id)
            return session, None
        outcome = await self.engine.update_article(
            article.id,
            {
                "last_read_at": now_iso(),
                "read_count": article.read_count + 1,
                "total_read_time": article.total_read_time + session.duration,
            },
        )
        return session, outcome


@dataclass(slots=True)
class DailyStat:
    date: str
    sessions: int
    total_time: int
    articles_read: int


@dataclass(slots=True)
class Analytics:
    total_articles: int
    read_articles: int
    unread_articles: int
    favorite_articles: int
    total_read_minutes: int
    sessions_last_30_days: int
    reading_streak: int
    avg_session_minutes: int
    daily_stats: list[DailyStat] = field(default_factory=list)
    category_distribution: dict[str, int] = field(default_factory=dict)
    most_read: list[Article] = field(default_factory=list)
    recently_read: list[Article] = field(default_factory=list)


def _day(ms: int) -> str:
    return dt.datetime.fromtimestamp(ms / 1000, tz=dt.timezone.utc).date().isoformat()


def reading_history(sessions: Iterable[ReadingSession], days: int = 30, now: int | None = None) -> list[ReadingSession]:
    now = now_ms() if now is None else now
    cutoff = now - days * DAY_MS
    return [s for s in sessions if s.start_time > cutoff]


def daily_stats(sessions: Iterable[ReadingSession], days: int = 7, now: int | None = None) -> list[DailyStat]:
    buckets: dict[str, tuple[int, int, set[str]]] = {}
    for session in reading_history(sessions, days, now):
        date = _day(session.start_time)
        count, total, articles = buckets.get(date, (0, 0, set()))
        articles.add(session.article_id)
        buckets[date] = (count + 1, total + (session.duration or 0), articles)
    return [
        DailyStat(date=date, sessions=count, total_time=total, articles_read=len(articles))
        for date, (count, total, articles) in sorted(buckets.items())
    ]


def reading_streak(sessions: Sequence[ReadingSession], now: int | None = None) -> int:
    """Consecutive reading days ending today, or yesterday if nothing was read today yet."""
    now = now_ms() if now is None else now
    dates = {stat.date for stat in daily_stats(sessions, 365, now)}
    if not dates:
        return 0
    day = dt.date.fromisoformat(_day(now))
    if day.isoformat() not in dates:
        day -= dt.timedelta(days=1)
        if day.isoformat() not in dates:
            return 0
    streak = 0
    while day.isoformat() in dates:
        streak += 1
        day -= dt.timedelta(days=1)
    return streak


def _last_read_key(article: Article) -> dt.datetime:
    return parse_iso(article.last_read_at) or dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def analytics(articles: Sequence[Article], sessions: Sequence[ReadingSession], now: int | None = None) -> Analytics:
    now = now_ms() if now is None else now
    recent = reading_history(sessions, 30, now)
    total_read_ms = sum(s.duration or 0 for s in recent)
    return Analytics(
        total_articles=len(articles),
        read_articles=sum(1 for a in articles if a.is_read),
        unread_articles=sum(1 for a in articles if not a.is_read and not a.is_archived),
        favorite_articles=sum(1 for a in articles if a.is_favorite),
        total_read_minutes=round(total_read_ms / 60000),
        sessions_last_30_days=len(recent),
        reading_streak=reading_streak(sessions, now),
        avg_session_minutes=round(total_read_ms / len(recent) / 60000) if recent else 0,
        daily_stats=daily_stats(sessions, 7, now),
        category_distribution=dict(Counter(a.category for a in articles)),
        most_read=sorted((a for a in articles if a.read_count > 0), key=lambda a: -a.read_count)[:5],
        recently_read=sorted((a for a in articles if a.last_read_at), key=_last_read_key, reverse=True)[:5],
    )


def format_minutes(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


__all__ = [
    "Analytics",
    "DailyStat",
    "SessionTracker",
    "analytics",
    "daily_stats",
    "format_minutes",
    "reading_history",
    "reading_streak",
]
