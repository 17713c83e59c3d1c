from __future__ import annotations

import pytest

from margins.codec import decode_article, decode_value, encode_article, encode_value
from margins.models import Article, Highlight


def test_encode_value_envelopes() -> None:
    assert encode_value(None) == {"nullValue": None}
    assert encode_value(True) == {"booleanValue": True}
    assert encode_value(3) == {"integerValue": "3"}
    assert encode_value(["a"]) == {"arrayValue": {"values": [{"stringValue": "a"}]}}
    assert encode_value({"k": 1.5}) == {"mapValue": {"fields": {"k": {"doubleValue": 1.5}}}}
    with pytest.raises(TypeError):
        encode_value(object())


def test_decode_accepts_timestamps_and_empty_arrays() -> None:
    assert decode_value({"timestampValue": "2024-05-01T10:00:00Z"}) == "2024-05-01T10:00:00Z"
    assert decode_value({"arrayValue": {}}) == []
    with pytest.raises(ValueError):
        decode_value({"geoPointValue": {}})


def test_article_document_round_trip() -> None:
    article = Article.create(
        "https://example.com/a",
        "A",
        "research",
        tags=["ml"],
        highlights=[Highlight.create("quoted", "blue", note="n")],
    )
    fields = encode_article(article)
    assert "id" not in fields

    decoded = decode_article(article.id, fields)
    assert decoded == article


def test_decode_defaults_missing_fields() -> None:
    decoded = decode_article("doc-1", {"url": {"stringValue": "https://example.com"}})
    assert decoded.id == "doc-1"
    assert decoded.folder_id is None
    assert decoded.tags == []
    assert decoded.is_read is False
    assert decoded.date_added
