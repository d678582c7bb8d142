"""
Cards and decks as the surrounding application stores them.

Only :class:`Card` and :class:`Deck` outlive a codec call. Their ids are
integers in the same millisecond-epoch shape Anki uses, so they can be
written straight into ``INTEGER PRIMARY KEY`` columns on export.
"""

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from deckport.srs import ScheduleState

PLACEHOLDER_DECK_ID = 0

_id_lock = threading.Lock()
_last_id = 0


def next_id() -> int:
    """Issue an id strictly greater than every id issued before in this process.

    Ids follow the current epoch millisecond, so they keep Anki's shape, and
    step past the last issued id when several are needed within one
    millisecond.
    """
    global _last_id
    with _id_lock:
        _last_id = max(_last_id + 1, int(time.time() * 1000))
        return _last_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Card:
    """A front/back flashcard with its scheduling state.

    :param id: Unique card id.
    :param deck_id: Id of the owning deck.
    :param front: Question text.
    :param back: Answer text.
    :param interval: Days until the next review.
    :param repetitions: Consecutive successful reviews (0 for new cards).
    :param ease_factor: Interval multiplier, at least 1.3.
    :param due_date: When the card is next due.
    :param last_reviewed: Time of the last review, if any.
    """

    id: int
    deck_id: int
    front: str
    back: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    interval: int = 1
    repetitions: int = 0
    ease_factor: float = 2.5
    due_date: datetime = field(default_factory=_utcnow)
    last_reviewed: datetime | None = None

    @property
    def schedule(self) -> ScheduleState:
        return ScheduleState(
            interval=self.interval,
            repetitions=self.repetitions,
            ease_factor=self.ease_factor,
            due_date=self.due_date,
            last_reviewed=self.last_reviewed,
        )

    def with_schedule(self, state: ScheduleState) -> "Card":
        """Return a copy of this card carrying ``state``."""
        return replace(
            self,
            interval=state.interval,
            repetitions=state.repetitions,
            ease_factor=state.ease_factor,
            due_date=state.due_date,
            last_reviewed=state.last_reviewed,
        )


@dataclass
class Deck:
    """A named collection of cards.

    ``card_count`` is a cache; use :func:`recount_decks` after mutating cards.
    """

    id: int
    name: str
    description: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    card_count: int = 0

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Deck name must not be empty")


@dataclass
class ImportResult:
    """Decks and cards recovered from a package."""

    decks: list[Deck]
    cards: list[Card]
    settings: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"decks": self.decks, "cards": self.cards, "settings": self.settings}


def recount_decks(decks: list[Deck], cards: list[Card]) -> list[Deck]:
    """Return copies of ``decks`` whose ``card_count`` matches ``cards``."""
    counts: dict[int, int] = {}
    for card in cards:
        counts[card.deck_id] = counts.get(card.deck_id, 0) + 1
    return [replace(deck, card_count=counts.get(deck.id, 0)) for deck in decks]


def select_for_export(
    decks: list[Deck], cards: list[Card], deck_ids: list[int] | None = None
) -> tuple[list[Deck], list[Card]]:
    """Pick the decks to export and the cards they own.

    :param deck_ids: Ids to keep; all decks when None.
    :raises ValueError: If no deck is selected.
    """
    if deck_ids is None:
        selected = list(decks)
    else:
        wanted = set(deck_ids)
        selected = [deck for deck in decks if deck.id in wanted]

    if not selected:
        raise ValueError("No decks selected for export")

    selected_ids = {deck.id for deck in selected}
    return selected, [card for card in cards if card.deck_id in selected_ids]
