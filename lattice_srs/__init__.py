"""Spaced-repetition scheduling for cards written in notes."""

from .card_identity import ensure_card_id, generate_card_id, is_valid_card_id, update_card_content
from .errors import CorruptRecordError, InvalidArgument
from .fsrs_engine import Outcome, SchedulerConfig, load_weights, review, schedule
from .memory_state import MemoryState, Phase, Rating, StoredCardRecord
from .review_state import ReviewStateStore
from .storage import JsonFileBackend, MemoryBackend, PersistResult, default_state_path

__all__ = [
    "CorruptRecordError",
    "InvalidArgument",
    "JsonFileBackend",
    "MemoryBackend",
    "MemoryState",
    "Outcome",
    "PersistResult",
    "Phase",
    "Rating",
    "ReviewStateStore",
    "SchedulerConfig",
    "StoredCardRecord",
    "default_state_path",
    "ensure_card_id",
    "generate_card_id",
    "is_valid_card_id",
    "load_weights",
    "review",
    "schedule",
    "update_card_content",
]
