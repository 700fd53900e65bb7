"""Review state store: the card id -> memory state mapping behind a review loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from lattice_srs.errors import InvalidArgument
from lattice_srs.fsrs_engine import Outcome, SchedulerConfig, constrain_state, load_weights, review
from lattice_srs.memory_state import MemoryState, Rating, StoredCardRecord, ensure_utc, utc_now
from lattice_srs.storage import LoadResult, PersistResult, StateBackend

logger = logging.getLogger(__name__)

WarningHandler = Callable[[str], None]


def _check_card_id(card_id: Any) -> str:
    if not isinstance(card_id, str) or not card_id.strip():
        raise InvalidArgument(f"card id must be a non-empty string, got {card_id!r}")
    return card_id


class ReviewStateStore:
    """Own the review records of one workspace and keep them persisted.

    The in-memory map is authoritative once loaded. Every mutation writes the
    whole snapshot through *backend*; a failed write is reported through the
    logger and *on_warning* but never undoes the in-memory change.

    Parameters
    ----------
    backend:
        Persistence port, see :mod:`lattice_srs.storage`.
    clock:
        Callable returning the current time; defaults to UTC now.
    autosave:
        When ``False`` mutations are only written by :meth:`flush`.
    on_warning:
        Called with a human readable message when loading or saving degrades.
    config:
        Scheduler configuration used by :meth:`rate` and for the bounds
        enforced by :meth:`update`; defaults to the bundled preset.

    When the backend fails to load, autosave is held back so the unreadable
    file is not replaced by a near-empty snapshot; an explicit :meth:`flush`
    overwrites it and resumes autosaving.
    """

    def __init__(
        self,
        backend: StateBackend,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        autosave: bool = True,
        on_warning: Optional[WarningHandler] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self.backend = backend
        self.clock = clock or utc_now
        self.autosave = autosave
        self.on_warning = on_warning
        self.config = config
        self.last_persist: Optional[PersistResult] = None
        self._records: Dict[str, StoredCardRecord] = {}
        self.load_result = self._load()
        self._autosave_held = self.load_result.error is not None

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------
    def _load(self) -> LoadResult:
        result = self.backend.load()
        for record in result.records:
            self._records[record.card_id] = record
        if result.error is not None:
            self._warn(f"Failed to load card states: {result.error}")
        if result.skipped:
            self._warn(f"Skipped {len(result.skipped)} corrupt card record(s) while loading")
        logger.debug("Loaded %d card record(s) from %r", len(self._records), self.backend)
        return result

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self.on_warning is not None:
            self.on_warning(message)

    @property
    def autosave_held(self) -> bool:
        """``True`` while writes wait for an explicit flush after a failed load."""

        return self._autosave_held

    def _config(self) -> SchedulerConfig:
        return self.config or load_weights()

    def _changed(self) -> None:
        if not self.autosave:
            return
        if self._autosave_held:
            logger.warning("Not saving over unreadable state file; call flush() to overwrite it")
            return
        self.flush()

    def flush(self) -> PersistResult:
        """Write the full record set through the backend."""

        result = self.backend.save(list(self._records.values()))
        self.last_persist = result
        if result.ok:
            self._autosave_held = False
        else:
            self._warn(f"Failed to save card states: {result.error}")
        return result

    async def flush_async(self) -> PersistResult:
        """Run :meth:`flush` in a worker thread so callers may await or detach it."""

        return await asyncio.to_thread(self.flush)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def __contains__(self, card_id: object) -> bool:
        return card_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[StoredCardRecord]:
        return iter(list(self._records.values()))

    def get(self, card_id: str) -> Optional[StoredCardRecord]:
        return self._records.get(card_id)

    def card_ids(self, *, include_deleted: bool = False) -> List[str]:
        return [
            card_id
            for card_id, record in self._records.items()
            if include_deleted or not record.deleted
        ]

    def is_deleted(self, card_id: str) -> bool:
        record = self._records.get(card_id)
        return record.deleted if record is not None else False

    def get_due_card_ids(self, now: Optional[datetime] = None) -> Set[str]:
        """Return the ids of non-deleted cards due at or before *now*."""

        now_dt = ensure_utc(now) if now is not None else self._now()
        return {
            card_id
            for card_id, record in self._records.items()
            if not record.deleted and record.memory_state.due_at <= now_dt
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def get_or_create(self, card_id: str) -> MemoryState:
        """Return the state for *card_id*, creating or restoring the record.

        A soft-deleted record is un-deleted with its history intact.
        """

        _check_card_id(card_id)
        record = self._records.get(card_id)
        if record is None:
            record = StoredCardRecord(card_id=card_id, memory_state=MemoryState.new(self._now()))
            self._records[card_id] = record
            logger.debug("Created review record for card %s", card_id)
            self._changed()
        elif record.deleted:
            record = record.replace(deleted=False)
            self._records[card_id] = record
            logger.debug("Restored deleted card %s", card_id)
            self._changed()
        return record.memory_state

    def update(self, card_id: str, new_state: MemoryState) -> None:
        """Replace the memory state of a known card; unknown ids are ignored.

        Stability and difficulty are brought inside the configured bounds
        before the state is stored.
        """

        record = self._records.get(card_id)
        if record is None:
            logger.info("Ignoring update for unknown card %s", card_id)
            return
        new_state = constrain_state(new_state, self._config())
        reviewed_at = new_state.last_reviewed_at or self._now()
        self._records[card_id] = record.replace(memory_state=new_state, last_review_date=reviewed_at)
        self._changed()

    def mark_deleted(self, card_id: str) -> None:
        record = self._records.get(card_id)
        if record is None:
            logger.debug("Ignoring delete for unknown card %s", card_id)
            return
        if record.deleted:
            return
        self._records[card_id] = record.replace(deleted=True)
        self._changed()

    def rate(
        self,
        card_id: str,
        rating: Any,
        now: Optional[datetime] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> Outcome:
        """Schedule *card_id* with *rating* and store the chosen outcome."""

        rating = Rating.parse(rating)
        state = self.get_or_create(card_id)
        outcome = review(state, rating, now if now is not None else self._now(), config or self._config())
        self.update(card_id, outcome.next_state)
        return outcome

    def sync_cards(self, active_ids: Iterable[str]) -> Tuple[Set[str], Set[str]]:
        """Reconcile the store with the cards currently present in the notes.

        Cards missing from *active_ids* are soft-deleted; listed cards are
        created or restored. Returns ``(restored_or_created, deleted)`` and
        persists once for the whole batch.
        """

        active = {_check_card_id(card_id) for card_id in active_ids}
        touched: Set[str] = set()
        removed: Set[str] = set()
        now = self._now()

        for card_id in active:
            record = self._records.get(card_id)
            if record is None:
                self._records[card_id] = StoredCardRecord(card_id=card_id, memory_state=MemoryState.new(now))
                touched.add(card_id)
            elif record.deleted:
                self._records[card_id] = record.replace(deleted=False)
                touched.add(card_id)

        for card_id, record in list(self._records.items()):
            if card_id not in active and not record.deleted:
                self._records[card_id] = record.replace(deleted=True)
                removed.add(card_id)

        if touched or removed:
            logger.info("Synced cards: %d added or restored, %d deleted", len(touched), len(removed))
            self._changed()
        return touched, removed


__all__ = ["ReviewStateStore"]
