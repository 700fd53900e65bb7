"""High level helpers that drive a review session on top of the state store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from lattice_srs.fsrs_engine import Outcome, SchedulerConfig, load_weights, retrievability, schedule
from lattice_srs.memory_state import MemoryState, Rating, ensure_utc, format_datetime, utc_now
from lattice_srs.review_state import ReviewStateStore

logger = logging.getLogger(__name__)


async def submit_rating(
    store: ReviewStateStore,
    card_id: str,
    rating: Any,
    *,
    now: Optional[datetime] = None,
    config: Optional[SchedulerConfig] = None,
) -> Tuple[Outcome, Dict[str, object]]:
    """Record a review *rating* for *card_id* and persist the updated state.

    The state change is applied synchronously; only the write to storage runs
    in a worker thread.
    """

    event_dt = ensure_utc(now) if now is not None else utc_now()
    cfg = config or load_weights()
    parsed = Rating.parse(rating)

    autosave = store.autosave
    store.autosave = False
    try:
        before = store.get_or_create(card_id)
        outcome = schedule(before, event_dt, cfg)[parsed]
        store.update(card_id, outcome.next_state)
    finally:
        store.autosave = autosave
    if store.autosave_held:
        logger.warning("Rating for %s kept in memory only; state file could not be loaded", card_id)
        persisted = None
    else:
        persisted = await store.flush_async()

    diagnostics: Dict[str, object] = {
        "card_id": card_id,
        "rating": parsed.name.lower(),
        "event_time": format_datetime(event_dt),
        "retrievability": retrievability(before, event_dt, cfg),
        "interval_days": outcome.interval_days,
        "due_at": format_datetime(outcome.next_state.due_at),
        "previous_phase": before.phase.name.lower(),
        "phase": outcome.next_state.phase.name.lower(),
        "before_state": before,
        "after_state": outcome.next_state,
        "persisted": persisted is not None and persisted.ok,
    }
    return outcome, diagnostics


def submit_rating_sync(
    store: ReviewStateStore,
    card_id: str,
    rating: Any,
    *,
    now: Optional[datetime] = None,
    config: Optional[SchedulerConfig] = None,
) -> Tuple[Outcome, Dict[str, object]]:
    """Synchronous wrapper around :func:`submit_rating`."""

    return asyncio.run(submit_rating(store, card_id, rating, now=now, config=config))


def due_queue(store: ReviewStateStore, now: Optional[datetime] = None) -> List[str]:
    """Due card ids, earliest due first (ties broken by id)."""

    due_ids = store.get_due_card_ids(now)
    records = [store.get(card_id) for card_id in due_ids]
    records.sort(key=lambda record: (record.memory_state.due_at, record.card_id))
    return [record.card_id for record in records]


def format_interval(delta: timedelta) -> str:
    """Render *delta* as a short label such as ``10m``, ``3h``, ``4d``, ``2mo`` or ``1y``."""

    seconds = delta.total_seconds()
    minutes = round(seconds / 60)
    hours = round(seconds / 3600)
    days = round(seconds / 86400)
    months = round(seconds / (86400 * 30))
    years = round(seconds / (86400 * 365))
    if minutes < 60:
        return f"{minutes}m"
    if hours < 24:
        return f"{hours}h"
    if days < 30:
        return f"{days}d"
    if months < 12:
        return f"{months}mo"
    return f"{years}y"


def preview_intervals(
    state: MemoryState,
    now: Optional[datetime] = None,
    config: Optional[SchedulerConfig] = None,
) -> Dict[Rating, str]:
    """Label the wait before the next review for each possible rating."""

    now_dt = ensure_utc(now) if now is not None else utc_now()
    outcomes = schedule(state, now_dt, config)
    return {
        rating: format_interval(outcome.next_state.due_at - now_dt)
        for rating, outcome in outcomes.items()
    }


__all__ = [
    "due_queue",
    "format_interval",
    "preview_intervals",
    "submit_rating",
    "submit_rating_sync",
]
