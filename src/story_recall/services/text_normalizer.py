"""Canonical text used to derive embeddings from cards and chapter summaries.

The normalized text is both the embedding input and the source of the content
digest that decides staleness. Only fields that change the meaning of an
entity contribute to it; presentation-only fields (category, pin flag, sort
order, avatar, triggers) never do.
"""

import hashlib
import json
import re
from typing import Any, Iterable, Protocol, Union

WHITESPACE_PATTERN = re.compile(r"\s+")
TAG_SPLIT_PATTERN = re.compile(r"[,，、;；\n]+")
FIELD_SEPARATOR = "\n\n"
TAG_PREFIX = "tags: "


class CardLike(Protocol):
    name: str
    description: Any
    tags: Any


class SummaryLike(Protocol):
    summary: str


def collapse_whitespace(value: str | None) -> str:
    """Strip and collapse internal whitespace runs to single spaces."""
    if not value:
        return ""
    return WHITESPACE_PATTERN.sub(" ", value).strip()


def parse_tags(raw: Union[str, Iterable[str], None]) -> list[str]:
    """Parse a tag field into a canonical, ordered list.

    Accepts a JSON array string, a delimited string or an iterable of strings.
    Tags are stripped, empties dropped, case-insensitive duplicates removed
    (first spelling wins) and the result sorted case-insensitively.
    """
    if raw is None:
        return []

    values: list[str]
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return []
        values = []
        if stripped.startswith("["):
            try:
                decoded = json.loads(stripped)
            except ValueError:
                decoded = None
            if isinstance(decoded, list):
                values = [str(item) for item in decoded if item is not None]
        if not values:
            values = TAG_SPLIT_PATTERN.split(stripped)
    else:
        values = [str(item) for item in raw if item is not None]

    seen: dict[str, str] = {}
    for value in values:
        tag = collapse_whitespace(value)
        if tag and tag.casefold() not in seen:
            seen[tag.casefold()] = tag
    return sorted(seen.values(), key=lambda tag: (tag.casefold(), tag))


def normalize_card(card: CardLike) -> str:
    parts = [collapse_whitespace(card.name), collapse_whitespace(card.description)]
    tags = parse_tags(card.tags)
    if tags:
        parts.append(TAG_PREFIX + ", ".join(tags))
    return FIELD_SEPARATOR.join(part for part in parts if part)


def normalize_summary(summary: SummaryLike) -> str:
    return collapse_whitespace(summary.summary)


def normalize(entity: Union[CardLike, SummaryLike]) -> str:
    """Build the canonical embedding text for a card or a chapter summary."""
    if hasattr(entity, "summary") and not hasattr(entity, "name"):
        return normalize_summary(entity)  # pyright: ignore [reportArgumentType]
    if hasattr(entity, "name"):
        return normalize_card(entity)  # pyright: ignore [reportArgumentType]
    raise TypeError(f"Cannot normalize entity of type {type(entity).__name__}")


def content_digest(text: str) -> str:
    """SHA-256 hex digest of normalized text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def truncate_text(text: str, max_chars: int) -> str:
    """Keep the first ``max_chars`` characters; never drops from the middle."""
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip()
