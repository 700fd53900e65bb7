"""Python implementation of the FSRS scheduling equations."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional, Sequence, Tuple

from lattice_srs.errors import InvalidArgument
from lattice_srs.memory_state import MemoryState, Phase, Rating, ensure_utc, utc_now

WEIGHTS_DIR = Path(__file__).resolve().parent / "weights"
DEFAULT_VERSION = "fsrs_6"
BASE_RETENTION = 0.9
WEIGHT_COUNT = 21

DEFAULT_WEIGHTS: Tuple[float, ...] = (
    0.212, 1.2931, 2.3065, 8.2956, 6.4133, 0.8334, 3.0194, 0.001, 1.8722,
    0.1666, 0.796, 1.4835, 0.0614, 0.2629, 1.6483, 0.6014, 1.8729, 0.5425,
    0.0912, 0.0658, 0.1542,
)


def _minutes(values: Iterable[float]) -> Tuple[timedelta, ...]:
    return tuple(timedelta(minutes=float(value)) for value in values)


@dataclass(frozen=True)
class SchedulerConfig:
    version: str = DEFAULT_VERSION
    weights: Tuple[float, ...] = DEFAULT_WEIGHTS
    request_retention: float = BASE_RETENTION
    maximum_interval: int = 36500
    minimum_interval: int = 1
    learning_steps: Tuple[timedelta, ...] = field(default_factory=lambda: _minutes((1, 10)))
    relearning_steps: Tuple[timedelta, ...] = field(default_factory=lambda: _minutes((10,)))
    difficulty_bounds: Tuple[float, float] = (1.0, 10.0)
    minimum_stability: float = 0.01

    @property
    def decay(self) -> float:
        return -self.weights[20]

    @property
    def base_factor(self) -> float:
        return math.pow(BASE_RETENTION, 1 / self.decay) - 1

    @property
    def target_factor(self) -> float:
        return math.pow(self.request_retention, 1 / self.decay) - 1

    def validate(self) -> "SchedulerConfig":
        """Raise :class:`InvalidArgument` unless the configuration is usable."""

        if len(self.weights) != WEIGHT_COUNT:
            raise InvalidArgument(
                f"expected {WEIGHT_COUNT} weights, got {len(self.weights)}"
            )
        if not all(math.isfinite(w) for w in self.weights):
            raise InvalidArgument("weights must be finite numbers")
        if self.weights[20] <= 0:
            raise InvalidArgument("decay weight w[20] must be positive")
        if not 0 < self.request_retention < 1:
            raise InvalidArgument("request_retention must lie strictly between 0 and 1")
        if self.minimum_interval < 1 or self.maximum_interval < self.minimum_interval:
            raise InvalidArgument("interval bounds must satisfy 1 <= minimum <= maximum")
        low, high = self.difficulty_bounds
        if not 0 < low < high:
            raise InvalidArgument("difficulty bounds must satisfy 0 < min < max")
        if self.minimum_stability <= 0:
            raise InvalidArgument("minimum_stability must be positive")
        for step in (*self.learning_steps, *self.relearning_steps):
            if step <= timedelta(0):
                raise InvalidArgument("learning steps must be positive durations")
        return self

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, default_version: str = DEFAULT_VERSION) -> "SchedulerConfig":
        """Build a configuration from a weight preset dictionary."""

        defaults = cls()
        try:
            weights = tuple(float(x) for x in payload.get("weights", defaults.weights))
            config = cls(
                version=str(payload.get("w_version") or default_version),
                weights=weights,
                request_retention=float(payload.get("request_retention", BASE_RETENTION)),
                maximum_interval=int(payload.get("maximum_interval", defaults.maximum_interval)),
                minimum_interval=int(payload.get("minimum_interval", defaults.minimum_interval)),
                learning_steps=_minutes(payload["learning_steps_minutes"])
                if "learning_steps_minutes" in payload
                else defaults.learning_steps,
                relearning_steps=_minutes(payload["relearning_steps_minutes"])
                if "relearning_steps_minutes" in payload
                else defaults.relearning_steps,
            )
        except (TypeError, ValueError) as exc:
            raise InvalidArgument(f"invalid scheduler preset: {exc}") from exc
        return config.validate()


_WEIGHTS_CACHE: Dict[str, SchedulerConfig] = {}


def load_config_file(path: Path) -> SchedulerConfig:
    with Path(path).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return SchedulerConfig.from_mapping(payload, default_version=Path(path).stem)


def _iter_weight_files(directory: Path) -> Iterable[Path]:
    if not directory.exists():
        return []
    return sorted(directory.glob("*.json"))


def load_weights(version: Optional[str] = None, directory: Path = WEIGHTS_DIR) -> SchedulerConfig:
    """Load the scheduler configuration for *version* from *directory*."""

    version = version or DEFAULT_VERSION
    if version in _WEIGHTS_CACHE:
        return _WEIGHTS_CACHE[version]

    for path in _iter_weight_files(directory):
        config = load_config_file(path)
        _WEIGHTS_CACHE.setdefault(config.version, config)
        if config.version == version:
            return config
    raise FileNotFoundError(f"No weights found for version '{version}' in {directory}")


# ---------------------------------------------------------------------------
# Core FSRS equations
# ---------------------------------------------------------------------------

def constrain_difficulty(value: float, cfg: SchedulerConfig) -> float:
    low, high = cfg.difficulty_bounds
    return min(max(round(value, 2), low), high)


def constrain_stability(value: float, cfg: SchedulerConfig) -> float:
    return max(round(value, 2), cfg.minimum_stability)


def predict_R(stability: float, elapsed_days: float, cfg: SchedulerConfig) -> float:
    stability = max(stability, cfg.minimum_stability)
    elapsed_days = max(elapsed_days, 0.0)
    return math.pow(1 + cfg.base_factor * elapsed_days / stability, cfg.decay)


def next_interval(stability: float, cfg: SchedulerConfig) -> int:
    stability = max(stability, cfg.minimum_stability)
    raw_interval = stability / cfg.base_factor * cfg.target_factor
    interval = max(int(round(raw_interval)), cfg.minimum_interval)
    return min(interval, cfg.maximum_interval)


def linear_damping(delta_d: float, old_d: float) -> float:
    return delta_d * (10 - old_d) / 9


def init_difficulty(rating: Rating, cfg: SchedulerConfig) -> float:
    w = cfg.weights
    return constrain_difficulty(w[4] - math.exp(w[5] * (rating - 1)) + 1, cfg)


def init_stability(rating: Rating, cfg: SchedulerConfig) -> float:
    return constrain_stability(cfg.weights[rating - 1], cfg)


def mean_reversion(initial: float, current: float, cfg: SchedulerConfig) -> float:
    return cfg.weights[7] * initial + (1 - cfg.weights[7]) * current


def next_difficulty(difficulty: float, rating: Rating, cfg: SchedulerConfig) -> float:
    delta = -cfg.weights[6] * (rating - 3)
    next_d = difficulty + linear_damping(delta, difficulty)
    return constrain_difficulty(mean_reversion(init_difficulty(Rating.EASY, cfg), next_d, cfg), cfg)


def next_recall_stability(
    difficulty: float, stability: float, retrievability: float, rating: Rating, cfg: SchedulerConfig
) -> float:
    w = cfg.weights
    hard_penalty = w[15] if rating == Rating.HARD else 1.0
    easy_bonus = w[16] if rating == Rating.EASY else 1.0
    value = stability * (
        1
        + math.exp(w[8])
        * (11 - difficulty)
        * math.pow(stability, -w[9])
        * (math.exp((1 - retrievability) * w[10]) - 1)
        * hard_penalty
        * easy_bonus
    )
    return constrain_stability(value, cfg)


def next_forget_stability(difficulty: float, stability: float, retrievability: float, cfg: SchedulerConfig) -> float:
    w = cfg.weights
    s_min = stability / math.exp(w[17] * w[18])
    value = (
        w[11]
        * math.pow(difficulty, -w[12])
        * (math.pow(stability + 1, w[13]) - 1)
        * math.exp((1 - retrievability) * w[14])
    )
    return constrain_stability(min(value, s_min), cfg)


def next_short_term_stability(stability: float, rating: Rating, cfg: SchedulerConfig) -> float:
    w = cfg.weights
    stability = max(stability, cfg.minimum_stability)
    sinc = math.exp(w[17] * (rating - 3 + w[18])) * math.pow(stability, -w[19])
    if rating >= Rating.GOOD:
        sinc = max(sinc, 1.0)
    return constrain_stability(stability * sinc, cfg)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class Outcome(NamedTuple):
    next_state: MemoryState
    interval_days: float


def _elapsed_days(state: MemoryState, now: datetime) -> float:
    if state.last_reviewed_at is None:
        return 0.0
    delta = now - ensure_utc(state.last_reviewed_at)
    return max(delta.total_seconds() / 86400.0, 0.0)


def _finite(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def constrain_state(state: MemoryState, cfg: SchedulerConfig) -> MemoryState:
    """Return *state* with stability and difficulty inside the configured bounds.

    A new card keeps its unset ``0.0`` sentinels; non-finite or non-positive
    values on it are reset to them. Reviewed cards get a stability of at least
    ``minimum_stability`` and a difficulty within ``difficulty_bounds``, with
    non-finite difficulty replaced by the initial Good difficulty.
    """

    stability = _finite(state.stability)
    difficulty = _finite(state.difficulty)
    if state.phase == Phase.NEW:
        return state.replace(
            stability=constrain_stability(stability, cfg) if stability is not None and stability > 0 else 0.0,
            difficulty=constrain_difficulty(difficulty, cfg) if difficulty is not None and difficulty > 0 else 0.0,
        )
    if difficulty is None:
        difficulty = init_difficulty(Rating.GOOD, cfg)
    return state.replace(
        stability=constrain_stability(stability if stability is not None else 0.0, cfg),
        difficulty=constrain_difficulty(difficulty, cfg),
    )


def _step_delay(
    rating: Rating, steps: Sequence[timedelta], taken: int
) -> Optional[Tuple[timedelta, int]]:
    """Return ``(delay, steps_taken)`` for a short-term step, ``None`` to graduate."""

    if not steps:
        return None
    if rating == Rating.AGAIN:
        return steps[0], 1
    if rating == Rating.HARD:
        index = min(max(taken - 1, 0), len(steps) - 1)
        return steps[index], max(taken, 1)
    if rating == Rating.GOOD and 0 <= taken < len(steps):
        return steps[taken], taken + 1
    return None


def _order_intervals(intervals: Dict[Rating, int], cfg: SchedulerConfig) -> Dict[Rating, int]:
    """Force graduated intervals to be non-decreasing from Again to Easy."""

    ordered = dict(intervals)
    hard, good = ordered.get(Rating.HARD), ordered.get(Rating.GOOD)
    if hard is not None and good is not None:
        hard = min(hard, good)
        good = max(good, hard + 1)
        ordered[Rating.HARD], ordered[Rating.GOOD] = hard, good
    easy = ordered.get(Rating.EASY)
    floor = good if good is not None else hard
    if easy is not None and floor is not None:
        ordered[Rating.EASY] = max(easy, floor + 1)
    again = ordered.get(Rating.AGAIN)
    if again is not None:
        successors = [ordered[r] for r in (Rating.HARD, Rating.GOOD, Rating.EASY) if r in ordered]
        if successors:
            ordered[Rating.AGAIN] = min(again, min(successors))
    return {rating: min(value, cfg.maximum_interval) for rating, value in ordered.items()}


def schedule(
    state: MemoryState,
    now: Optional[datetime] = None,
    config: Optional[SchedulerConfig] = None,
) -> Dict[Rating, Outcome]:
    """Compute the four possible outcomes of reviewing *state* at *now*.

    The result maps every :class:`Rating` to an :class:`Outcome` holding the
    next memory state and the interval in (possibly fractional) days. The
    function has no side effects and never fails on the state itself:
    malformed values are clamped or treated as a never-rated card.
    """

    cfg = (config or load_weights()).validate()
    now_dt = ensure_utc(now) if now is not None else utc_now()
    elapsed = _elapsed_days(state, now_dt)

    stability = _finite(state.stability)
    difficulty = _finite(state.difficulty)
    try:
        phase = Phase(state.phase)
    except ValueError:
        phase = Phase.NEW
    first_rating = phase == Phase.NEW or stability is None or stability <= 0
    if not first_rating and (difficulty is None or difficulty <= 0):
        difficulty = init_difficulty(Rating.GOOD, cfg)
    elif difficulty is not None:
        difficulty = constrain_difficulty(difficulty, cfg)

    if first_rating:
        steps, taken = cfg.learning_steps, 0
    elif phase == Phase.LEARNING:
        steps, taken = cfg.learning_steps, max(state.learning_step, 0)
    elif phase == Phase.RELEARNING:
        steps, taken = cfg.relearning_steps, max(state.learning_step, 0)
    else:
        steps, taken = (), 0

    recall = 1.0 if first_rating else predict_R(stability, elapsed, cfg)

    memory: Dict[Rating, Tuple[float, float]] = {}
    delays: Dict[Rating, Tuple[timedelta, int, Phase]] = {}
    intervals: Dict[Rating, int] = {}

    for rating in Rating:
        if first_rating:
            new_s = init_stability(rating, cfg)
            new_d = init_difficulty(rating, cfg)
        elif phase == Phase.REVIEW:
            new_d = next_difficulty(difficulty, rating, cfg)
            if rating == Rating.AGAIN:
                new_s = next_forget_stability(difficulty, stability, recall, cfg)
            else:
                new_s = next_recall_stability(difficulty, stability, recall, rating, cfg)
        else:
            new_d = next_difficulty(difficulty, rating, cfg)
            new_s = next_short_term_stability(stability, rating, cfg)
        memory[rating] = (new_s, new_d)

        if phase == Phase.REVIEW and not first_rating:
            step = _step_delay(rating, cfg.relearning_steps, 0) if rating == Rating.AGAIN else None
            if step is not None:
                delays[rating] = (step[0], step[1], Phase.RELEARNING)
                continue
        else:
            step = _step_delay(rating, steps, taken)
            if step is not None:
                short_phase = Phase.RELEARNING if phase == Phase.RELEARNING and not first_rating else Phase.LEARNING
                delays[rating] = (step[0], step[1], short_phase)
                continue
        intervals[rating] = next_interval(new_s, cfg)

    intervals = _order_intervals(intervals, cfg)

    outcomes: Dict[Rating, Outcome] = {}
    for rating in Rating:
        new_s, new_d = memory[rating]
        lapsed = rating == Rating.AGAIN and phase == Phase.REVIEW and not first_rating
        if rating in delays:
            delay, learning_step, next_phase = delays[rating]
            interval_days = delay.total_seconds() / 86400.0
            due_at = now_dt + delay
        else:
            learning_step, next_phase = 0, Phase.REVIEW
            interval_days = float(intervals[rating])
            due_at = now_dt + timedelta(days=intervals[rating])
        next_state = MemoryState(
            due_at=due_at,
            stability=new_s,
            difficulty=new_d,
            elapsed_days=round(elapsed, 6),
            scheduled_days=interval_days,
            review_count=max(state.review_count, 0) + 1,
            lapse_count=max(state.lapse_count, 0) + (1 if lapsed else 0),
            learning_step=learning_step,
            last_reviewed_at=now_dt,
            phase=next_phase,
        )
        outcomes[rating] = Outcome(next_state, interval_days)
    return outcomes


def review(
    state: MemoryState,
    rating: Any,
    now: Optional[datetime] = None,
    config: Optional[SchedulerConfig] = None,
) -> Outcome:
    """Apply a single *rating* to *state*; see :func:`schedule`."""

    return schedule(state, now, config)[Rating.parse(rating)]


def retrievability(state: MemoryState, now: Optional[datetime] = None, config: Optional[SchedulerConfig] = None) -> float:
    """Estimated probability of recalling the card at *now* (``0.0`` for new cards)."""

    cfg = config or load_weights()
    stability = _finite(state.stability)
    if state.phase == Phase.NEW or stability is None or stability <= 0:
        return 0.0
    now_dt = ensure_utc(now) if now is not None else utc_now()
    return predict_R(stability, _elapsed_days(state, now_dt), cfg)


__all__ = [
    "DEFAULT_WEIGHTS",
    "InvalidArgument",
    "Outcome",
    "SchedulerConfig",
    "constrain_difficulty",
    "constrain_stability",
    "constrain_state",
    "load_config_file",
    "load_weights",
    "mean_reversion",
    "next_difficulty",
    "next_forget_stability",
    "next_interval",
    "next_recall_stability",
    "next_short_term_stability",
    "predict_R",
    "retrievability",
    "review",
    "schedule",
]
