"""Persistence backends for the review state store.

The store talks to storage through :class:`StateBackend`, a two-method port
returning explicit result objects instead of raising, so a failing disk never
takes the in-memory review session down with it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Sequence

from lattice_srs.errors import CorruptRecordError
from lattice_srs.memory_state import StoredCardRecord, record_from_dict, record_to_dict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Paths and constants
# ---------------------------------------------------------------------------
STATE_DIRNAME = ".vscode"
STATE_FILENAME = "lattice.cards.json"


def default_state_path(workspace_root: Path) -> Path:
    """Location of the state file for the notes workspace at *workspace_root*."""

    return Path(workspace_root) / STATE_DIRNAME / STATE_FILENAME


@dataclass
class LoadResult:
    records: List[StoredCardRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PersistResult:
    ok: bool
    count: int = 0
    error: Optional[Exception] = None


class StateBackend(Protocol):
    def load(self) -> LoadResult:
        ...

    def save(self, records: Sequence[StoredCardRecord]) -> PersistResult:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def decode_records(payload: Any) -> LoadResult:
    """Decode a parsed state document, skipping entries that fail validation."""

    result = LoadResult()
    if not isinstance(payload, list):
        result.error = CorruptRecordError(
            f"state document must be a JSON array, got {type(payload).__name__}"
        )
        return result

    seen = set()
    for index, entry in enumerate(payload):
        try:
            record = record_from_dict(entry)
        except CorruptRecordError as exc:
            reason = f"record {index}: {exc}"
            logger.warning("Skipping corrupt card record %s", reason)
            result.skipped.append(reason)
            continue
        if record.card_id in seen:
            reason = f"record {index}: duplicate cardId '{record.card_id}'"
            logger.warning("Skipping corrupt card record %s", reason)
            result.skipped.append(reason)
            continue
        seen.add(record.card_id)
        result.records.append(record)
    return result


def encode_records(records: Iterable[StoredCardRecord]) -> List[Mapping[str, Any]]:
    return [record_to_dict(record) for record in records]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class JsonFileBackend:
    """Store card records as a JSON array in a single file.

    Saves are serialised by a lock and share one temp file beside *path*.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"JsonFileBackend({str(self.path)!r})"

    def load(self) -> LoadResult:
        if not self.path.exists():
            logger.debug("No state file at %s, starting empty", self.path)
            return LoadResult()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load card states from %s: %s", self.path, exc)
            return LoadResult(error=exc)
        result = decode_records(payload)
        if result.error is not None:
            logger.warning("Failed to load card states from %s: %s", self.path, result.error)
        return result

    def save(self, records: Sequence[StoredCardRecord]) -> PersistResult:
        payload = encode_records(records)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        with self._lock:
            try:
                _ensure_parent(self.path)
                with temp_path.open("w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2, ensure_ascii=False, allow_nan=False)
                os.replace(temp_path, self.path)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to save card states to %s: %s", self.path, exc)
                if isinstance(exc, ValueError):
                    temp_path.unlink(missing_ok=True)
                return PersistResult(ok=False, error=exc)
        return PersistResult(ok=True, count=len(payload))


class MemoryBackend:
    """Keep the serialised snapshot in memory.

    ``fail_with`` makes every :meth:`save` report that exception, which is how
    tests exercise degraded persistence.
    """

    def __init__(self, payload: Optional[List[Any]] = None, *, fail_with: Optional[Exception] = None) -> None:
        self.payload: List[Any] = list(payload or [])
        self.fail_with = fail_with
        self.saves = 0

    def load(self) -> LoadResult:
        return decode_records(json.loads(json.dumps(self.payload)))

    def save(self, records: Sequence[StoredCardRecord]) -> PersistResult:
        if self.fail_with is not None:
            return PersistResult(ok=False, error=self.fail_with)
        try:
            self.payload = json.loads(json.dumps(encode_records(records), allow_nan=False))
        except ValueError as exc:
            return PersistResult(ok=False, error=exc)
        self.saves += 1
        return PersistResult(ok=True, count=len(self.payload))


__all__ = [
    "JsonFileBackend",
    "LoadResult",
    "MemoryBackend",
    "PersistResult",
    "STATE_FILENAME",
    "StateBackend",
    "decode_records",
    "default_state_path",
    "encode_records",
]
