from __future__ import annotations

from margins.html_utils import extract_domain, normalize_url, tidy_url


def test_normalize_url_removes_tracking_params() -> None:
    assert normalize_url("https://Example.com/articles?id=123&utm_source=rss") == "example.com/articles?id=123"


def test_normalize_url_matches_scheme_and_www_variants() -> None:
    assert normalize_url("https://www.example.com/post/") == normalize_url("http://example.com/post")


def test_normalize_url_keeps_distinguishing_params() -> None:
    assert normalize_url("https://example.com/p?id=1") != normalize_url("https://example.com/p?id=2")
    assert normalize_url("https://example.com/p?b=2&a=1") == normalize_url("https://example.com/p?a=1&b=2")


def test_normalize_url_without_scheme_is_lowercased() -> None:
    assert normalize_url("Not A URL") == "not a url"


def test_extract_domain() -> None:
    assert extract_domain("https://www.example.com/a") == "example.com"
    assert extract_domain("garbage") == "garbage"


def test_tidy_url_handles_www() -> None:
    assert tidy_url("www.example.com/article") == "https://www.example.com/article"


def test_tidy_url_rejects_relative() -> None:
    assert tidy_url("/about") is None
    assert tidy_url("") is None
