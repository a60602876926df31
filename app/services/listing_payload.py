"""Listing payload normalization (job payload contract, version 1).

Jobs are created from loosely shaped catalog rows (admin imports, n8n
callbacks). Before a job is handed to a worker its payload is normalized into
one fixed shape, stamped with ``payload_version``:

    listing_id, listing_key, client_id, title, description, tags, category,
    price, quantity, image_1_url..image_3_url, variations

Tag rules: accepts lists, JSON-encoded lists, nested {"tags": [...]} bags, or
delimited strings (``, ; | newline``); each tag trimmed of quotes and
whitespace runs and cut to 20 characters; de-duplicated case-insensitively
keeping first spelling; at most 13.
"""
from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping

LISTING_PAYLOAD_VERSION = 1
MAX_TAGS = 13
MAX_TAG_LENGTH = 20
MAX_IMAGES = 3

_DELIMITERS = re.compile(r"[,\n;|]+")
_QUOTES = re.compile(r"^['\"]+|['\"]+$")
_SPACES = re.compile(r"\s+")


def _first(row: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = row.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _first_string(row: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    value = _first(row, keys)
    if value is None:
        return None
    return str(value).strip() or None


def _first_number(row: Mapping[str, Any], keys: Iterable[str]) -> float | None:
    value = _first(row, keys)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _maybe_json_list(text: str) -> Any:
    if text.startswith("[") and text.endswith("]"):
        try:
            return json.loads(text)
        except ValueError:
            return None
    return None


def _dedupe(values: Iterable[str], *, casefold: bool = False) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        item = value.strip()
        if not item:
            continue
        marker = item.casefold() if casefold else item
        if marker in seen:
            continue
        seen.add(marker)
        output.append(item)
    return output


def _normalize_tag(value: str) -> str:
    cleaned = _QUOTES.sub("", value.strip())
    return _SPACES.sub(" ", cleaned).strip()[:MAX_TAG_LENGTH].strip()


def parse_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [tag for entry in value for tag in parse_tags(entry)]
    if isinstance(value, Mapping):
        for key in ("tags", "values", "items", "list"):
            if value.get(key) is not None:
                return parse_tags(value[key])
        return [tag for entry in value.values() for tag in parse_tags(entry)]
    text = str(value).strip()
    if not text:
        return []
    parsed = _maybe_json_list(text)
    if parsed is not None:
        return parse_tags(parsed)
    return [tag for tag in (_normalize_tag(part) for part in _DELIMITERS.split(text)) if tag]


def normalize_tags(value: Any) -> list[str]:
    return _dedupe(parse_tags(value), casefold=True)[:MAX_TAGS]


def parse_urls(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return _dedupe(str(item) for item in value if item)
    text = str(value).strip()
    if not text:
        return []
    parsed = _maybe_json_list(text)
    if parsed is not None:
        return parse_urls(parsed)
    return _dedupe(_DELIMITERS.split(text))


def parse_variations(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def build_listing_payload(row: Mapping[str, Any], *, client_id: str | None = None) -> dict[str, Any]:
    """Map a raw catalog row onto the versioned job payload."""
    image_urls = parse_urls(_first(row, ["images", "image_urls", "photo_urls"]))
    payload: dict[str, Any] = {
        "listing_id": _first_string(row, ["id", "listing_id"]),
        "listing_key": _first_string(row, ["key", "listing_key"]),
        "client_id": client_id or _first_string(row, ["client_id", "clientId", "store_id"]),
        "title": _first_string(row, ["title", "name"]) or "",
        "description": _first_string(row, ["description", "catalog_description"]) or "",
        "tags": normalize_tags(_first(row, ["tags", "tag_list", "tag_values"])),
        "category": _first_string(row, ["category", "category_name"]) or "",
        "price": _first_number(row, ["price", "sale_price", "amount_usd"]) or 0,
        "quantity": int(_first_number(row, ["quantity"]) or 1),
        "variations": parse_variations(_first(row, ["variations", "variation", "variants"])),
    }
    for index in range(MAX_IMAGES):
        explicit = _first_string(row, [f"image_{index + 1}_url", f"image_url_{index + 1}"])
        payload[f"image_{index + 1}_url"] = explicit or (image_urls[index] if index < len(image_urls) else None)
    return payload


__all__ = [
    "LISTING_PAYLOAD_VERSION",
    "build_listing_payload",
    "normalize_tags",
    "parse_tags",
    "parse_urls",
    "parse_variations",
]
