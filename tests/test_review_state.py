import asyncio
import logging
from datetime import datetime, timedelta, timezone

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lattice_srs.errors import InvalidArgument
from lattice_srs.fsrs_engine import review
from lattice_srs.memory_state import Phase, Rating
from lattice_srs.review_state import ReviewStateStore
from lattice_srs.storage import JsonFileBackend, MemoryBackend

T = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


def make_store(backend=None, **kwargs):
    return ReviewStateStore(backend or MemoryBackend(), clock=lambda: T, **kwargs)


def test_new_card_is_created_due_now():
    backend = MemoryBackend()
    store = make_store(backend)

    state = store.get_or_create("abc")

    assert state.phase == Phase.NEW
    assert state.due_at <= T
    assert "abc" in store
    assert backend.saves == 1
    assert backend.payload[0]["cardId"] == "abc"
    assert store.get_due_card_ids(T) == {"abc"}


def test_get_or_create_returns_existing_without_writing():
    backend = MemoryBackend()
    store = make_store(backend)
    first = store.get_or_create("abc")

    assert store.get_or_create("abc") == first
    assert backend.saves == 1


def test_rating_new_card_good_schedules_first_learning_step():
    store = make_store()
    store.get_or_create("abc")

    outcome = store.rate("abc", Rating.GOOD, T)

    record = store.get("abc")
    assert record.memory_state.due_at == T + timedelta(minutes=1)
    assert record.memory_state.phase == Phase.LEARNING
    assert record.last_review_date == T
    assert outcome.next_state == record.memory_state


def test_invalid_rating_does_not_touch_store():
    backend = MemoryBackend()
    store = make_store(backend)

    with pytest.raises(InvalidArgument):
        store.rate("abc", "maybe")

    assert "abc" not in store
    assert backend.saves == 0


def test_update_replaces_state_and_stamps_review_date():
    store = make_store()
    state = store.get_or_create("abc")
    later = T + timedelta(hours=2)
    outcome = review(state, "easy", later)

    store.update("abc", outcome.next_state)

    record = store.get("abc")
    assert record.memory_state == outcome.next_state
    assert record.last_review_date == later
    assert store.get_due_card_ids(later) == set()


def test_update_unknown_card_is_a_noop(caplog):
    backend = MemoryBackend()
    store = make_store(backend)

    with caplog.at_level(logging.INFO, logger="lattice_srs.review_state"):
        store.update("ghost", review(store.get_or_create("abc"), "good", T).next_state)

    assert "ghost" not in store
    assert backend.saves == 1
    assert "unknown card ghost" in caplog.text


def test_mark_deleted_then_restore_preserves_history():
    store = make_store()
    store.get_or_create("abc")
    store.rate("abc", Rating.EASY, T)
    before = store.get("abc").memory_state

    store.mark_deleted("abc")
    assert store.is_deleted("abc")
    assert "abc" not in store.get_due_card_ids(T + timedelta(days=365))

    restored = store.get_or_create("abc")
    assert restored == before
    assert not store.is_deleted("abc")


def test_mark_deleted_is_idempotent():
    backend = MemoryBackend()
    store = make_store(backend)
    store.get_or_create("abc")

    store.mark_deleted("abc")
    store.mark_deleted("abc")

    assert backend.saves == 2
    assert backend.payload[0]["deleted"] is True


def test_mark_deleted_unknown_card_is_a_noop():
    backend = MemoryBackend()
    store = make_store(backend)

    store.mark_deleted("x")

    assert not store.is_deleted("x")
    assert "x" not in store.get_due_card_ids(T)
    assert backend.saves == 0


def test_due_cards_exclude_future_and_deleted():
    store = make_store()
    for card_id in ("due", "later", "gone"):
        store.get_or_create(card_id)
    store.rate("later", Rating.EASY, T)
    store.mark_deleted("gone")

    assert store.get_due_card_ids(T) == {"due"}
    assert store.card_ids() == ["due", "later"]
    assert store.card_ids(include_deleted=True) == ["due", "later", "gone"]


def test_blank_card_id_is_rejected():
    with pytest.raises(InvalidArgument):
        make_store().get_or_create("  ")


def test_failed_save_keeps_memory_and_warns():
    warnings = []
    store = make_store(MemoryBackend(fail_with=OSError("disk full")), on_warning=warnings.append)

    store.get_or_create("abc")
    store.rate("abc", Rating.GOOD, T)

    assert store.get("abc").memory_state.phase == Phase.LEARNING
    assert store.last_persist is not None and not store.last_persist.ok
    assert warnings and "disk full" in warnings[-1]


def test_corrupt_records_on_load_are_skipped_with_warning():
    payload = [
        {"cardId": "ok", "fsrsCard": {"due": "2024-06-01T00:00:00Z", "stability": 0, "difficulty": 0}},
        {"cardId": "broken", "fsrsCard": {"due": "soon", "stability": 0, "difficulty": 0}},
    ]
    warnings = []
    store = make_store(MemoryBackend(payload), on_warning=warnings.append)

    assert store.card_ids() == ["ok"]
    assert len(store.load_result.skipped) == 1
    assert any("Skipped 1" in message for message in warnings)


def test_unreadable_file_starts_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{oops", encoding="utf-8")
    warnings = []

    store = make_store(JsonFileBackend(path), on_warning=warnings.append)

    assert len(store) == 0
    assert warnings


def test_records_survive_reload(tmp_path):
    backend = JsonFileBackend(tmp_path / ".vscode" / "lattice.cards.json")
    store = make_store(backend)
    store.get_or_create("a")
    store.get_or_create("b")
    store.rate("a", Rating.GOOD, T)
    store.rate("a", Rating.GOOD, T + timedelta(minutes=1))
    store.rate("b", Rating.EASY, T)
    store.mark_deleted("b")

    reloaded = make_store(JsonFileBackend(backend.path))

    assert {r.card_id: r for r in reloaded} == {r.card_id: r for r in store}


def test_autosave_disabled_defers_writes():
    backend = MemoryBackend()
    store = make_store(backend, autosave=False)
    store.get_or_create("abc")
    assert backend.saves == 0

    assert store.flush().ok
    assert backend.saves == 1


def test_sync_cards_marks_missing_and_restores_returning():
    backend = MemoryBackend()
    store = make_store(backend)
    store.get_or_create("keep")
    store.get_or_create("drop")
    store.rate("drop", Rating.EASY, T)
    history = store.get("drop").memory_state
    saves = backend.saves

    touched, removed = store.sync_cards(["keep", "fresh"])
    assert touched == {"fresh"}
    assert removed == {"drop"}
    assert store.is_deleted("drop")
    assert backend.saves == saves + 1

    touched, removed = store.sync_cards(["keep", "fresh", "drop"])
    assert touched == {"drop"}
    assert removed == set()
    assert store.get("drop").memory_state == history


def test_sync_cards_without_changes_does_not_write():
    backend = MemoryBackend()
    store = make_store(backend)
    store.sync_cards(["a"])
    saves = backend.saves

    assert store.sync_cards(["a"]) == (set(), set())
    assert backend.saves == saves


def test_update_clamps_stability_and_difficulty():
    store = make_store()
    state = store.get_or_create("abc")
    reviewed = state.replace(phase=Phase.REVIEW, stability=-4.0, difficulty=55.0, last_reviewed_at=T)

    store.update("abc", reviewed)

    stored = store.get("abc").memory_state
    assert stored.stability == pytest.approx(0.01)
    assert stored.difficulty == pytest.approx(10.0)


def test_update_with_nan_stability_survives_reload(tmp_path):
    backend = JsonFileBackend(tmp_path / "state.json")
    store = make_store(backend)
    state = store.get_or_create("abc")

    store.update("abc", state.replace(phase=Phase.REVIEW, stability=float("nan"), difficulty=float("inf")))

    assert store.last_persist.ok
    reloaded = make_store(JsonFileBackend(backend.path))
    assert reloaded.load_result.skipped == []
    assert reloaded.get("abc").memory_state == store.get("abc").memory_state
    assert 1.0 <= reloaded.get("abc").memory_state.difficulty <= 10.0


def test_new_card_keeps_unset_sentinels_on_update():
    store = make_store()
    state = store.get_or_create("abc")

    store.update("abc", state.replace(stability=float("nan"), difficulty=-1.0))

    stored = store.get("abc").memory_state
    assert (stored.stability, stored.difficulty) == (0.0, 0.0)


def test_unreadable_file_is_kept_until_explicit_flush(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{oops", encoding="utf-8")
    store = make_store(JsonFileBackend(path))

    store.get_or_create("abc")
    store.rate("abc", Rating.GOOD, T)

    assert store.autosave_held
    assert path.read_text(encoding="utf-8") == "{oops"

    assert store.flush().ok
    assert not store.autosave_held
    store.mark_deleted("abc")
    assert make_store(JsonFileBackend(path)).is_deleted("abc")


def test_flushes_from_worker_threads_all_succeed(tmp_path):
    store = make_store(JsonFileBackend(tmp_path / "state.json"), autosave=False)
    store.sync_cards(f"card-{i}" for i in range(300))

    async def flush_many():
        return await asyncio.gather(*(store.flush_async() for _ in range(12)))

    results = asyncio.run(flush_many())

    assert all(result.ok for result in results)
    assert len(make_store(JsonFileBackend(tmp_path / "state.json"))) == 300
