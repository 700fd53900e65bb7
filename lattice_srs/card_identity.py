"""Stable identifiers for cards defined in notes."""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping

from ulid import ULID

CARD_ID_PREFIX = "card_"
_CARD_ID_RE = re.compile(r"^card_[0-9A-HJKMNP-TV-Z]{26}$")


def generate_card_id() -> str:
    """Generate a new card id; ids are never reused."""
    return f"{CARD_ID_PREFIX}{ULID()}"


def is_valid_card_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_CARD_ID_RE.match(value))


def ensure_card_id(card: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of *card* carrying an ``id``, generating one if needed."""

    result = dict(card)
    if not result.get("id"):
        result["id"] = generate_card_id()
    return result


def update_card_content(old_card: Mapping[str, Any], new_content: Mapping[str, Any]) -> Dict[str, Any]:
    """Take the fields of *new_content* while keeping the identity of *old_card*."""

    result = {key: value for key, value in new_content.items() if key != "id"}
    result["id"] = old_card.get("id")
    return result


__all__ = [
    "CARD_ID_PREFIX",
    "ensure_card_id",
    "generate_card_id",
    "is_valid_card_id",
    "update_card_content",
]
