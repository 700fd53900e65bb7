"""Command line access to a workspace's card review state."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from lattice_srs.errors import InvalidArgument
from lattice_srs.fsrs_engine import SchedulerConfig, load_config_file, load_weights
from lattice_srs.memory_state import Rating, format_datetime, parse_datetime, record_to_dict
from lattice_srs.review_service import due_queue, preview_intervals
from lattice_srs.review_state import ReviewStateStore
from lattice_srs.storage import JsonFileBackend, default_state_path

logger = logging.getLogger(__name__)


def _timestamp(value: str):
    parsed = parse_datetime(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}")
    return parsed


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lattice-srs",
        description="Inspect and update spaced-repetition state for note cards.",
    )
    location = parser.add_mutually_exclusive_group()
    location.add_argument("--state", type=Path, help="Path to the card state JSON file.")
    location.add_argument(
        "--workspace",
        type=Path,
        default=Path("."),
        help="Notes workspace root (state file lives in .vscode/lattice.cards.json).",
    )
    parser.add_argument(
        "--weights",
        help="Weight preset version or path to a preset JSON file (defaults to the bundled preset).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    commands = parser.add_subparsers(dest="command", required=True)

    due = commands.add_parser("due", help="List cards due for review, earliest first.")
    due.add_argument("--now", type=_timestamp, help="Evaluate at this time instead of now.")

    show = commands.add_parser("show", help="Print the stored record of a card.")
    show.add_argument("card_id")

    preview = commands.add_parser("preview", help="Show the next interval for each rating.")
    preview.add_argument("card_id")
    preview.add_argument("--now", type=_timestamp)

    rate = commands.add_parser("rate", help="Rate a card and store the new schedule.")
    rate.add_argument("card_id")
    rate.add_argument("rating", help="again, hard, good, easy or 1-4.")
    rate.add_argument("--now", type=_timestamp)

    delete = commands.add_parser("delete", help="Mark a card as deleted (history is kept).")
    delete.add_argument("card_id")

    commands.add_parser("check", help="Validate the state file and report skipped records.")
    return parser.parse_args(argv)


def _resolve_config(value: Optional[str]) -> SchedulerConfig:
    if value and Path(value).is_file():
        return load_config_file(Path(value))
    return load_weights(value)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    state_path = args.state or default_state_path(args.workspace)
    logger.debug("Using state file %s", state_path)
    try:
        config = _resolve_config(args.weights)
    except (FileNotFoundError, InvalidArgument) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    store = ReviewStateStore(JsonFileBackend(state_path), config=config)

    try:
        return _dispatch(args, store, config, state_path)
    except InvalidArgument as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


def _dispatch(args: argparse.Namespace, store: ReviewStateStore, config: SchedulerConfig, state_path: Path) -> int:
    if args.command == "check":
        result = store.load_result
        print(f"{state_path}: {len(result.records)} record(s) loaded, {len(result.skipped)} skipped")
        for reason in result.skipped:
            print(f" - {reason}")
        if result.error is not None:
            print(f"error: {result.error}", file=sys.stderr)
            return 1
        return 0

    if args.command == "due":
        for card_id in due_queue(store, args.now):
            print(card_id)
        return 0

    if args.command == "show":
        record = store.get(args.card_id)
        if record is None:
            print(f"Unknown card: {args.card_id}", file=sys.stderr)
            return 1
        print(json.dumps(record_to_dict(record), indent=2))
        return 0

    if args.command == "preview":
        record = store.get(args.card_id)
        if record is None:
            print(f"Unknown card: {args.card_id}", file=sys.stderr)
            return 1
        labels = preview_intervals(record.memory_state, args.now, config)
        for rating, label in labels.items():
            print(f"{rating.name.lower():>5}: {label}")
        return 0

    if args.command == "rate":
        rating = Rating.parse(args.rating)
        outcome = store.rate(args.card_id, rating, args.now, config)
        print(f"{args.card_id} due {format_datetime(outcome.next_state.due_at)}")
        if store.last_persist is None or not store.last_persist.ok:
            print(f"error: could not save {state_path}", file=sys.stderr)
            return 1
        return 0

    if args.command == "delete":
        store.mark_deleted(args.card_id)
        return 0

    raise AssertionError(f"unhandled command {args.command}")


if __name__ == "__main__":
    sys.exit(main())
