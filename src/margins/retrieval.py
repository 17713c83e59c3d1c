from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence
from urllib.parse import quote

import httpx

from .errors import RetrievalError
from .extractor import ExtractedArticle, extract

logger = logging.getLogger(__name__)

DIRECT_TEMPLATE = "{url}"
DEFAULT_STRATEGY_TEMPLATES: tuple[str, ...] = (
    DIRECT_TEMPLATE,
    "https://api.allorigins.win/raw?url={url}",
    "https://corsproxy.io/?{url}",
    "https://api.codetabs.com/v1/proxy?quest={url}",
)
DEFAULT_TIMEOUT = 10.0
DEFAULT_MIN_LENGTH = 500
ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
USER_AGENT = "Mozilla/5.0 (compatible; margins/0.1)"


@dataclass(slots=True, frozen=True)
class FetchStrategy:
    """One way of reaching a page; proxies receive the target URL percent-encoded."""

    name: str
    template: str

    @property
    def direct(self) -> bool:
        return self.template == DIRECT_TEMPLATE

    def build(self, url: str) -> str:
        if self.direct:
            return url
        return self.template.replace("{url}", quote(url, safe=""))


def strategies_from_templates(templates: Sequence[str]) -> list[FetchStrategy]:
    strategies = []
    for index, template in enumerate(templates, start=1):
        name = "direct" if template == DIRECT_TEMPLATE else f"proxy-{index}"
        strategies.append(FetchStrategy(name=name, template=template))
    return strategies


DEFAULT_STRATEGIES: tuple[FetchStrategy, ...] = tuple(strategies_from_templates(DEFAULT_STRATEGY_TEMPLATES))


def looks_like_html(body: str, min_length: int) -> bool:
    """Reject empty bodies and the short plain-text error pages proxies like to return."""
    return bool(body) and "<" in body and len(body) > min_length


async def fetch_html(
    url: str,
    *,
    strategies: Sequence[FetchStrategy] = DEFAULT_STRATEGIES,
    timeout: float = DEFAULT_TIMEOUT,
    min_length: int = DEFAULT_MIN_LENGTH,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Fetch raw HTML for ``url``, trying each strategy in order.

    Raises ``RetrievalError`` only after every strategy has failed.
    """
    owns_client = client is None
    http_client = client or httpx.AsyncClient(
        follow_redirects=True,
        headers={"Accept": ACCEPT_HEADER, "User-Agent": USER_AGENT},
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
    )
    attempts: list[tuple[str, str]] = []
    try:
        for strategy in strategies:
            target = strategy.build(url)
            try:
                response = await http_client.get(
                    target,
                    timeout=httpx.Timeout(timeout, connect=timeout, read=timeout, write=timeout, pool=timeout),
                )
                response.raise_for_status()
            except httpx.TimeoutException:
                logger.info("Fetch via %s timed out after %.1fs", strategy.name, timeout)
                attempts.append((strategy.name, "timeout"))
                continue
            except httpx.HTTPStatusError as exc:
                logger.info("Fetch via %s failed: HTTP %s", strategy.name, exc.response.status_code)
                attempts.append((strategy.name, f"HTTP {exc.response.status_code}"))
                continue
            except httpx.HTTPError as exc:
                logger.info("Fetch via %s failed: %s", strategy.name, exc)
                attempts.append((strategy.name, str(exc) or type(exc).__name__))
                continue

            body = response.text
            if not looks_like_html(body, min_length):
                logger.info("Fetch via %s returned no usable HTML (%d chars)", strategy.name, len(body))
                attempts.append((strategy.name, "invalid response"))
                continue
            logger.debug("Fetched %s via %s", url, strategy.name)
            return body
    finally:
        if owns_client:
            await http_client.aclose()
    raise RetrievalError(url, attempts)


async def fetch_article(
    url: str,
    *,
    strategies: Sequence[FetchStrategy] = DEFAULT_STRATEGIES,
    timeout: float = DEFAULT_TIMEOUT,
    min_length: int = DEFAULT_MIN_LENGTH,
    client: httpx.AsyncClient | None = None,
) -> ExtractedArticle:
    html = await fetch_html(url, strategies=strategies, timeout=timeout, min_length=min_length, client=client)
    return await asyncio.to_thread(extract, html)


__all__ = [
    "DEFAULT_STRATEGIES",
    "DEFAULT_STRATEGY_TEMPLATES",
    "FetchStrategy",
    "fetch_article",
    "fetch_html",
    "looks_like_html",
    "strategies_from_templates",
]
