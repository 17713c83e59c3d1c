from __future__ import annotations

from typing import Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_DEFAULT_DROP_PARAMS = (
    "utm_",
    "gclid",
    "fbclid",
    "mkt_tok",
    "mc_cid",
    "mc_eid",
    "yclid",
    "spm",
    "ref",
)


def normalize_url(url: str, drop_prefixes: Iterable[str] = _DEFAULT_DROP_PARAMS) -> str:
    """Duplicate-detection key: no scheme, no ``www.``, no trailing slash, lowercased.

    Tracking parameters are dropped; any remaining query parameters are kept
    (sorted) so that ``?id=1`` and ``?id=2`` stay distinct.
    """
    url = (url or "").strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url.lower()
    host = (parts.hostname or "").lower()
    if not parts.scheme or not host:
        return url.lower()
    if host.startswith("www."):
        host = host[4:]
    path = parts.path.rstrip("/")
    kept: list[tuple[str, str]] = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if any(key.startswith(prefix) for prefix in drop_prefixes):
            continue
        kept.append((key, value))
    normalized = host + path
    if kept:
        normalized += "?" + urlencode(sorted(kept))
    return normalized.lower()


def extract_domain(url: str) -> str:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return url
    if not host:
        return url
    return host.replace("www.", "", 1)


def tidy_url(url: str) -> str | None:
    """Return an absolute http(s) URL for user input, or None when it is not one."""
    url = (url or "").strip()
    if not url:
        return None

    lowered = url.lower()
    if lowered.startswith(("http://", "https://")):
        candidate = url
    elif lowered.startswith("//"):
        candidate = "https:" + url
    elif lowered.startswith("www."):
        candidate = "https://" + url
    else:
        temp = "https://" + url.lstrip("/")
        parsed_temp = urlsplit(temp)
        if url.startswith("/") or not parsed_temp.netloc or "." not in parsed_temp.netloc:
            return None
        candidate = temp

    parsed = urlsplit(candidate)
    if not parsed.scheme or not parsed.netloc or "." not in parsed.netloc:
        return None
    return urlunsplit((parsed.scheme.lower(), parsed.netloc.lower(), parsed.path or "/", parsed.query, parsed.fragment))


__all__ = ["normalize_url", "extract_domain", "tidy_url"]
