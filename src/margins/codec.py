from __future__ import annotations

from typing import Any, Mapping

from .models import Article


def encode_value(value: Any) -> dict[str, Any]:
    """Wrap a plain JSON-ish value in the remote store's typed envelope."""
    if value is None:
        return {"nullValue": None}
    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def decode_value(envelope: Mapping[str, Any]) -> Any:
    if "nullValue" in envelope:
        return None
    if "booleanValue" in envelope:
        return bool(envelope["booleanValue"])
    if "integerValue" in envelope:
        return int(envelope["integerValue"])
    if "doubleValue" in envelope:
        return float(envelope["doubleValue"])
    if "stringValue" in envelope:
        return str(envelope["stringValue"])
    if "timestampValue" in envelope:
        return str(envelope["timestampValue"])
    if "arrayValue" in envelope:
        values = (envelope["arrayValue"] or {}).get("values") or []
        return [decode_value(item) for item in values]
    if "mapValue" in envelope:
        return decode_fields((envelope["mapValue"] or {}).get("fields") or {})
    raise ValueError(f"unsupported value envelope: {sorted(envelope)}")


def encode_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key): encode_value(value) for key, value in record.items()}


def decode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


def encode_article(article: Article) -> dict[str, Any]:
    """Every article field except ``id``, which is the document name."""
    record = article.to_record()
    record.pop("id", None)
    return encode_fields(record)


def decode_article(doc_id: str, fields: Mapping[str, Any]) -> Article:
    """Decode a remote document, defaulting absent fields (folderId, flags, tags, dateAdded)."""
    record = decode_fields(fields)
    record["id"] = doc_id
    return Article.from_record(record)


def doc_id_from_name(name: str) -> str:
    return name.rsplit("/", 1)[-1]


__all__ = [
    "decode_article",
    "decode_fields",
    "decode_value",
    "doc_id_from_name",
    "encode_article",
    "encode_fields",
    "encode_value",
]
