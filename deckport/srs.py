"""
Spaced repetition scheduling (SM-2 family).

Every algorithm is a pure transform::

    ScheduleState x Outcome x response time x now -> ScheduleState

Card states are derived, never stored:

- ``new``       repetitions == 0
- ``learning``  repetitions > 0 and interval < 1 day
- ``review``    repetitions > 0 and interval >= 1 day

Three variants share the same shape: ``sm2`` and ``sm17`` use fixed
constants, ``custom`` reads its intervals from :class:`SchedulerSettings`.
The module also maps a state onto the scheduling columns of an Anki
``cards`` row (``type``, ``queue``, ``due``, ``ivl``, ``factor``).
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Iterable

from deckport.errors import MissingConfigurationError, UnknownAlgorithmError

logger = logging.getLogger(__name__)

MIN_EASE_FACTOR = 1.3
DEFAULT_EASE_FACTOR = 2.5
EASE_PENALTY = 0.2

# Fixed-constant variants
INITIAL_INTERVAL = 1
EASY_INTERVAL = 6
MIN_INTERVAL = 1

# Response latency treated as "normal", and the cap on its multiplier
IDEAL_RESPONSE_MS = 10000
MAX_TIME_FACTOR = 2


class Outcome(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"


class CardState(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"


class AnkiCardType(IntEnum):
    """Values of the ``type`` and ``queue`` columns of Anki's cards table."""

    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3  # never emitted


@dataclass(frozen=True)
class ScheduleState:
    """Scheduling fields of a single card.

    :param interval: Days until the next review.
    :param repetitions: Consecutive successful reviews.
    :param ease_factor: Interval multiplier, never below 1.3.
    :param due_date: When the card is next due.
    :param last_reviewed: Time of the last review, if any.
    """

    interval: int
    repetitions: int
    ease_factor: float
    due_date: datetime
    last_reviewed: datetime | None = None


@dataclass
class SchedulerSettings:
    """User settings consumed by the scheduler.

    :param srs_algorithm: One of ``sm2``, ``sm17``, ``custom``.
    :param initial_interval: Interval after the first correct answer (custom).
    :param easy_interval: Interval after the second correct answer (custom).
    :param min_interval: Lower interval bound, also the reset interval (custom).
    :param max_interval: Upper interval bound (custom).
    """

    srs_algorithm: str = "sm2"
    initial_interval: int = 1
    easy_interval: int = 4
    min_interval: int = 1
    max_interval: int = 36500

    # Keys used by the settings store of the surrounding application
    _ALIASES = {
        "srsAlgorithm": "srs_algorithm",
        "sm2InitialInterval": "initial_interval",
        "sm2EasyInterval": "easy_interval",
        "sm2MinInterval": "min_interval",
        "sm2MaxInterval": "max_interval",
    }

    @classmethod
    def from_dict(cls, data: dict | None) -> "SchedulerSettings":
        """Build settings from a mapping, falling back to defaults.

        Accepts snake_case keys or the camelCase keys of the settings store.
        Missing keys and values of the wrong type keep their defaults.
        """
        settings = cls()
        if not isinstance(data, dict):
            return settings

        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name == "srs_algorithm":
                if isinstance(value, str) and value:
                    settings.srs_algorithm = value
                continue
            if name not in ("initial_interval", "easy_interval", "min_interval", "max_interval"):
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                logger.warning("Ignoring invalid setting %s=%r", key, value)
                continue
            if value < 1:
                logger.warning("Ignoring non-positive setting %s=%r", key, value)
                continue
            setattr(settings, name, int(value))

        if settings.max_interval < settings.min_interval:
            logger.warning(
                "max_interval %d below min_interval %d, using min_interval",
                settings.max_interval,
                settings.min_interval,
            )
            settings.max_interval = settings.min_interval
        return settings


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware datetimes are returned unchanged."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def time_factor(response_time_ms: float) -> float:
    """Response latency relative to the ideal, capped at 2.

    :raises ValueError: If the response time is negative.
    """
    if response_time_ms < 0:
        raise ValueError(f"Response time must not be negative: {response_time_ms}")
    return min(response_time_ms / IDEAL_RESPONSE_MS, MAX_TIME_FACTOR)


class SM2Algorithm:
    """SM-2 with a latency-sensitive ease update."""

    name = "SM-2"

    def initial_state(self, now: datetime | None = None) -> ScheduleState:
        """State of a card that has never been reviewed."""
        now = now or _utcnow()
        return ScheduleState(
            interval=INITIAL_INTERVAL,
            repetitions=0,
            ease_factor=DEFAULT_EASE_FACTOR,
            due_date=now,
            last_reviewed=None,
        )

    def next_review(
        self,
        state: ScheduleState,
        outcome: Outcome | str,
        response_time_ms: float,
        now: datetime | None = None,
    ) -> ScheduleState:
        """Apply one review outcome and return the new state."""
        now = now or _utcnow()
        outcome = Outcome(outcome)

        if outcome is Outcome.INCORRECT:
            interval = self._reset_interval()
            return ScheduleState(
                interval=interval,
                repetitions=0,
                ease_factor=max(MIN_EASE_FACTOR, state.ease_factor - EASE_PENALTY),
                due_date=now + timedelta(days=interval),
                last_reviewed=now,
            )

        repetitions = state.repetitions + 1
        interval = self._interval(repetitions, state)
        return ScheduleState(
            interval=interval,
            repetitions=repetitions,
            ease_factor=self._adjust_ease(state.ease_factor, response_time_ms),
            due_date=now + timedelta(days=interval),
            last_reviewed=now,
        )

    def _reset_interval(self) -> int:
        return MIN_INTERVAL

    def _interval(self, repetitions: int, state: ScheduleState) -> int:
        if repetitions == 1:
            return INITIAL_INTERVAL
        if repetitions == 2:
            return EASY_INTERVAL
        return _round_half_up(state.interval * state.ease_factor)

    def _adjust_ease(self, ease_factor: float, response_time_ms: float) -> float:
        tf = time_factor(response_time_ms)
        return max(
            MIN_EASE_FACTOR,
            ease_factor + (0.1 - (5 - tf) * (0.08 + (5 - tf) * 0.02)),
        )


class SM17Algorithm(SM2Algorithm):
    """Simplified SM-17: SM-2 intervals, ease driven by a difficulty term."""

    name = "SM-17"

    def _adjust_ease(self, ease_factor: float, response_time_ms: float) -> float:
        difficulty = max(0.0, 5 - time_factor(response_time_ms))
        return max(
            MIN_EASE_FACTOR,
            ease_factor + (0.1 - difficulty * (0.08 + difficulty * 0.02)),
        )


class CustomAlgorithm(SM2Algorithm):
    """SM-2 with intervals and bounds taken from user settings."""

    name = "Custom"

    def __init__(self, settings: SchedulerSettings | None) -> None:
        if settings is None:
            raise MissingConfigurationError(
                "Settings required for custom algorithm"
            )
        self.settings = settings

    def _reset_interval(self) -> int:
        return self.settings.min_interval

    def _interval(self, repetitions: int, state: ScheduleState) -> int:
        if repetitions == 1:
            return self.settings.initial_interval
        if repetitions == 2:
            return self.settings.easy_interval
        interval = _round_half_up(state.interval * state.ease_factor)
        return max(self.settings.min_interval, min(interval, self.settings.max_interval))


ALGORITHMS = {
    "sm2": SM2Algorithm,
    "sm17": SM17Algorithm,
    "custom": CustomAlgorithm,
}


def create_algorithm(
    name: str, settings: SchedulerSettings | None = None
) -> SM2Algorithm:
    """Create a scheduling algorithm by name.

    :param name: One of ``sm2``, ``sm17``, ``custom``.
    :param settings: Required for ``custom``, ignored otherwise.
    :raises UnknownAlgorithmError: If the name is not recognised.
    :raises MissingConfigurationError: If ``custom`` is requested without settings.
    """
    if name not in ALGORITHMS:
        raise UnknownAlgorithmError(
            f"Unknown algorithm: {name}. Supported: {', '.join(ALGORITHMS)}"
        )
    if name == "custom":
        return CustomAlgorithm(settings)
    return ALGORITHMS[name]()


def algorithm_from_settings(settings: SchedulerSettings) -> SM2Algorithm:
    """Create the algorithm selected by ``settings.srs_algorithm``."""
    return create_algorithm(settings.srs_algorithm, settings)


def simulate(
    algorithm: SM2Algorithm,
    outcomes: Iterable[Outcome | str],
    *,
    response_time_ms: float = 5000,
    start: datetime | None = None,
) -> list[ScheduleState]:
    """Replay a sequence of outcomes, each answered on its due date.

    :returns: The state after each outcome.
    """
    now = start or _utcnow()
    state = algorithm.initial_state(now)
    history = []
    for outcome in outcomes:
        state = algorithm.next_review(state, outcome, response_time_ms, now)
        history.append(state)
        now = state.due_date
    return history


# =============================================================================
# Mapping onto Anki's cards table
# =============================================================================


def card_state(state: ScheduleState) -> CardState:
    if state.repetitions == 0:
        return CardState.NEW
    if state.interval < 1:
        return CardState.LEARNING
    return CardState.REVIEW


def anki_type(state: ScheduleState) -> int:
    """Value of the ``type`` column (0 new, 1 learning, 2 review)."""
    return {
        CardState.NEW: AnkiCardType.NEW,
        CardState.LEARNING: AnkiCardType.LEARNING,
        CardState.REVIEW: AnkiCardType.REVIEW,
    }[card_state(state)].value


def anki_queue(state: ScheduleState) -> int:
    """Value of the ``queue`` column, same three-way rule as ``type``."""
    return anki_type(state)


def anki_due(
    state: ScheduleState,
    now: datetime | None = None,
    reviewed_at: datetime | None = None,
) -> int:
    """Value of the ``due`` column.

    0 for new cards, otherwise days since the last review plus the interval,
    never negative.

    Naive datetimes are taken as UTC.

    :param reviewed_at: Used when the state has no ``last_reviewed``.
    """
    if state.repetitions == 0:
        return 0
    now = as_utc(now or _utcnow())
    last = as_utc(state.last_reviewed or reviewed_at or now)
    days_since = math.floor((now - last) / timedelta(days=1))
    return max(0, days_since + state.interval)


def anki_interval(state: ScheduleState) -> int:
    return max(1, state.interval)


def anki_factor(ease_factor: float) -> int:
    """Ease factor in permille, the unit of the ``factor`` column."""
    return _round_half_up(ease_factor * 1000)
