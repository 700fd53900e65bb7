"""Domain model for card review state.

This module defines :class:`MemoryState`, the immutable value object that
holds the FSRS (Free Spaced Repetition Scheduler) attributes for a single
card, and :class:`StoredCardRecord`, which wraps it with the bookkeeping the
review state store persists. It also provides the helpers for decoding and
encoding the JSON records written to the state file.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional

from lattice_srs.errors import CorruptRecordError, InvalidArgument


class Rating(IntEnum):
    """Reviewer feedback on a single recall attempt."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @classmethod
    def parse(cls, value: Any) -> "Rating":
        """Coerce *value* (enum, ``1``-``4`` or a rating name) to a :class:`Rating`."""

        if isinstance(value, Rating):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
            if key.isdigit():
                value = int(key)
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        raise InvalidArgument(f"Unsupported rating: {value!r}")


class Phase(IntEnum):
    """Coarse learning phase; the ordinal is what gets persisted."""

    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


def ensure_utc(value: datetime) -> datetime:
    """Normalise *value* to a UTC timezone aware datetime."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Convert a JSON field into a :class:`datetime` in UTC if possible."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Serialise a datetime in ISO-8601 format (UTC) for JSON storage."""

    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class MemoryState:
    """Retention model for one card.

    Parameters
    ----------
    due_at:
        When the card becomes eligible for review again.
    stability:
        Days until retrievability decays to the reference retention. ``0.0``
        marks a card that has never been rated.
    difficulty:
        Intrinsic difficulty estimate; ``0.0`` until the first rating.
    elapsed_days / scheduled_days:
        Days between the last two reviews, and the interval chosen at the
        last review.
    review_count / lapse_count:
        Number of ratings recorded, and how many of them were lapses.
    learning_step:
        Learning or relearning steps already scheduled in the current phase.
    last_reviewed_at:
        Timestamp of the most recent rating, ``None`` for new cards.
    phase:
        Current :class:`Phase`.
    """

    due_at: datetime
    stability: float = 0.0
    difficulty: float = 0.0
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0
    review_count: int = 0
    lapse_count: int = 0
    learning_step: int = 0
    last_reviewed_at: Optional[datetime] = None
    phase: Phase = Phase.NEW

    @classmethod
    def new(cls, now: Optional[datetime] = None) -> "MemoryState":
        """Return the state of a card that has never been reviewed, due at *now*."""

        return cls(due_at=ensure_utc(now) if now else utc_now())

    @property
    def is_new(self) -> bool:
        return self.phase == Phase.NEW

    def is_due(self, now: datetime) -> bool:
        return self.due_at <= ensure_utc(now)

    def replace(self, **changes: Any) -> "MemoryState":
        """Return a new instance with *changes* applied."""

        return replace(self, **changes)


@dataclass(frozen=True)
class StoredCardRecord:
    """A :class:`MemoryState` together with the store's bookkeeping."""

    card_id: str
    memory_state: MemoryState
    last_review_date: Optional[datetime] = None
    deleted: bool = False

    def replace(self, **changes: Any) -> "StoredCardRecord":
        return replace(self, **changes)


# ---------------------------------------------------------------------------
# JSON encoding
# ---------------------------------------------------------------------------

def _require_number(payload: Mapping[str, Any], key: str, default: Optional[float] = None) -> float:
    raw = payload.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise CorruptRecordError(f"field '{key}' must be numeric, got {raw!r}")
    value = float(raw)
    if math.isnan(value) or math.isinf(value):
        raise CorruptRecordError(f"field '{key}' is not finite")
    return value


def _require_int(payload: Mapping[str, Any], key: str) -> int:
    return int(_require_number(payload, key, 0))


def memory_state_from_dict(payload: Mapping[str, Any]) -> MemoryState:
    """Decode the ``fsrsCard`` object of a persisted record."""

    if not isinstance(payload, Mapping):
        raise CorruptRecordError("fsrsCard must be an object")
    due = parse_datetime(payload.get("due"))
    if due is None:
        raise CorruptRecordError(f"unparseable due date: {payload.get('due')!r}")
    last_review_raw = payload.get("last_review")
    last_review = parse_datetime(last_review_raw)
    if last_review_raw not in (None, "") and last_review is None:
        raise CorruptRecordError(f"unparseable last_review: {last_review_raw!r}")
    try:
        phase = Phase(_require_int(payload, "state"))
    except ValueError as exc:
        if isinstance(exc, CorruptRecordError):
            raise
        raise CorruptRecordError(f"unknown state ordinal: {payload.get('state')!r}") from exc

    return MemoryState(
        due_at=due,
        stability=_require_number(payload, "stability"),
        difficulty=_require_number(payload, "difficulty"),
        elapsed_days=_require_number(payload, "elapsed_days", 0.0),
        scheduled_days=_require_number(payload, "scheduled_days", 0.0),
        review_count=_require_int(payload, "reps"),
        lapse_count=_require_int(payload, "lapses"),
        learning_step=_require_int(payload, "learning_steps"),
        last_reviewed_at=last_review,
        phase=phase,
    )


def memory_state_to_dict(state: MemoryState) -> Dict[str, Any]:
    """Encode *state* as the ``fsrsCard`` object of a persisted record."""

    data: Dict[str, Any] = {
        "due": format_datetime(state.due_at),
        "stability": state.stability,
        "difficulty": state.difficulty,
        "elapsed_days": state.elapsed_days,
        "scheduled_days": state.scheduled_days,
        "reps": state.review_count,
        "lapses": state.lapse_count,
        "state": int(state.phase),
        "learning_steps": state.learning_step,
    }
    if state.last_reviewed_at is not None:
        data["last_review"] = format_datetime(state.last_reviewed_at)
    return data


def record_from_dict(payload: Any) -> StoredCardRecord:
    """Create a :class:`StoredCardRecord` from one entry of the state file.

    Raises :class:`CorruptRecordError` when a required field is missing or
    malformed; callers loading a whole file skip such entries.
    """

    if not isinstance(payload, Mapping):
        raise CorruptRecordError("record must be an object")
    card_id = payload.get("cardId")
    if not isinstance(card_id, str) or not card_id.strip():
        raise CorruptRecordError(f"missing cardId: {card_id!r}")
    if "fsrsCard" not in payload:
        raise CorruptRecordError(f"record '{card_id}' has no fsrsCard")
    memory_state = memory_state_from_dict(payload["fsrsCard"])
    deleted = payload.get("deleted")
    if deleted is None:
        deleted = False
    elif not isinstance(deleted, bool):
        raise CorruptRecordError(f"record '{card_id}' has a non-boolean deleted flag: {deleted!r}")
    return StoredCardRecord(
        card_id=card_id,
        memory_state=memory_state,
        last_review_date=parse_datetime(payload.get("lastReviewDate")),
        deleted=deleted,
    )


def record_to_dict(record: StoredCardRecord) -> Dict[str, Any]:
    """Serialise *record* into a JSON friendly dictionary."""

    data: Dict[str, Any] = {
        "cardId": record.card_id,
        "fsrsCard": memory_state_to_dict(record.memory_state),
    }
    if record.last_review_date is not None:
        data["lastReviewDate"] = format_datetime(record.last_review_date)
    if record.deleted:
        data["deleted"] = True
    return data


__all__ = [
    "MemoryState",
    "Phase",
    "Rating",
    "StoredCardRecord",
    "ensure_utc",
    "format_datetime",
    "memory_state_from_dict",
    "memory_state_to_dict",
    "parse_datetime",
    "record_from_dict",
    "record_to_dict",
    "utc_now",
]
