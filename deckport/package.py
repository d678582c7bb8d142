#!/usr/bin/env python3
"""
Translate between Anki packages (.apkg) and deckport cards and decks.

Import
------
``read_apkg`` unpacks the archive, opens the embedded collection and turns
every note with at least two fields into one :class:`~deckport.models.Card`:

1. The target deck name is the name of the first deck entry in the
   collection, or ``"Imported Deck"`` when that entry is missing or unnamed.
2. Each ``notes.flds`` blob is decoded and its first two fields are
   reduced to plain text.
3. Cards start with the scheduler's initial state and a placeholder deck
   id, then are stamped with the id of the single deck created for them.

A package that yields no cards raises :class:`EmptyImportError`.

Export
------
``write_apkg`` writes one legacy-layout collection:

- one ``Basic`` note type (Front/Back) regardless of the source layouts
- one ``decks`` row per deck, with default review limits
- per card, a note row and a card row that both reuse the card id
- scheduling columns derived from the card's state (see :mod:`deckport.srs`)

The collection is stored under ``collection.anki21b`` without compression
unless ``compress=True``.
"""

import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import genanki

from deckport.container import pack_collection, read_collection
from deckport.errors import ContainerError, EmptyImportError
from deckport.fields import decode_fields, encode_fields
from deckport.models import (
    PLACEHOLDER_DECK_ID,
    Card,
    Deck,
    ImportResult,
    next_id,
)
from deckport.sanitize import clean
from deckport.snapshot import (
    SCHEMA_VERSION,
    CardRow,
    CollectionRow,
    DeckRow,
    NoteRow,
    SnapshotReader,
    SnapshotWriter,
)
from deckport.srs import (
    SM2Algorithm,
    anki_due,
    anki_factor,
    anki_interval,
    anki_queue,
    anki_type,
    as_utc,
)

logger = logging.getLogger(__name__)

DEFAULT_DECK_NAME = "Imported Deck"
IMPORTED_DESCRIPTION = "Imported from APKG file"
MISSING_FRONT = "No front content"
MISSING_BACK = "No back content"

MODEL_ID = 1607392319
MODEL_NAME = "Basic"
MODEL_CSS = """.card {
 font-family: arial;
 font-size: 20px;
 text-align: center;
 color: black;
 background-color: white;
}
"""
DECK_CONFIG_ID = 1

DEFAULT_DECK_CONFIG = {
    "new": {"perDay": 20, "delays": [1, 10]},
    "rev": {
        "perDay": 200,
        "fuzz": 0.1,
        "ivlFct": 1,
        "maxIvl": 36500,
        "ease4": 1.3,
        "bury": True,
    },
    "lapse": {"leechFails": 8, "delays": [10], "leechAction": 0},
    "dyn": False,
    "autoplay": True,
    "timer": 0,
    "replayq": True,
    "mod": 0,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _seconds(moment: datetime) -> int:
    return int(as_utc(moment).timestamp())


# =============================================================================
# Import
# =============================================================================


def _source_deck_name(snapshot: SnapshotReader, prefer_populated: bool = False) -> str:
    """
    Name of the deck the imported cards should land in.

    The first deck entry names the import. With ``prefer_populated``, the
    first named deck that owns cards wins instead.
    """
    decks = snapshot.deck_infos()

    if prefer_populated:
        counts = snapshot.card_counts_by_deck()
        for deck in decks:
            if counts.get(deck.id) and deck.name.strip():
                return deck.name

    if decks and decks[0].name.strip():
        return decks[0].name
    return DEFAULT_DECK_NAME


def _card_from_note(
    flds: str, card_id: int, now: datetime, algorithm: SM2Algorithm
) -> Card | None:
    fields = decode_fields(flds)
    if len(fields) < 2:
        return None

    card = Card(
        id=card_id,
        deck_id=PLACEHOLDER_DECK_ID,
        front=clean(fields[0]) or MISSING_FRONT,
        back=clean(fields[1]) or MISSING_BACK,
        created_at=now,
        updated_at=now,
    )
    return card.with_schedule(algorithm.initial_state(now))


def read_apkg(
    data: bytes,
    *,
    algorithm: SM2Algorithm | None = None,
    now: datetime | None = None,
    prefer_populated_deck: bool = False,
) -> ImportResult:
    """
    Recover one deck and its cards from ``.apkg`` bytes.

    Ids come from :func:`~deckport.models.next_id`, so they never collide
    with ids from earlier imports in the same process.

    :param data: Raw package bytes.
    :param algorithm: Supplies the initial scheduling state (SM-2 if None).
    :param now: Creation time stamped on the new entities (naive means UTC).
    :param prefer_populated_deck: If True, name the deck after the first
        source deck that owns cards rather than the first deck entry.
    :returns: :class:`ImportResult` with exactly one deck.
    :raises ContainerError: If the archive or its collection entry is missing.
    :raises SnapshotError: If the collection database is unreadable.
    :raises EmptyImportError: If no note has two fields.
    """
    algorithm = algorithm or SM2Algorithm()
    now = as_utc(now or _utcnow())

    entry, payload = read_collection(data)
    with SnapshotReader(payload) as snapshot:
        deck_name = _source_deck_name(snapshot, prefer_populated_deck)
        notes = snapshot.notes()

    logger.info("Found %d notes in %s, deck name: %s", len(notes), entry, deck_name)

    cards = []
    skipped = 0
    for note in notes:
        card = _card_from_note(note.flds, next_id(), now, algorithm)
        if card is None:
            skipped += 1
            continue
        cards.append(card)

    if skipped:
        logger.info("Skipped %d notes with fewer than two fields", skipped)

    if not cards:
        raise EmptyImportError("No cards found in the APKG file")

    deck = Deck(
        id=next_id(),
        name=deck_name,
        description=IMPORTED_DESCRIPTION,
        created_at=now,
        updated_at=now,
        card_count=len(cards),
    )
    cards = [replace(card, deck_id=deck.id) for card in cards]

    logger.info("Imported %d cards into deck %r", len(cards), deck.name)
    return ImportResult(decks=[deck], cards=cards, settings={})


def load_apkg(
    apkg_path: str | Path,
    *,
    algorithm: SM2Algorithm | None = None,
    now: datetime | None = None,
    name_from_file: bool = True,
    prefer_populated_deck: bool = False,
) -> ImportResult:
    """
    Read an ``.apkg`` file.

    :param apkg_path: Path to the package.
    :param name_from_file: If the collection names no deck, use the file
        name (without extension) instead of ``"Imported Deck"``.
    :param prefer_populated_deck: Passed to :func:`read_apkg`.
    :raises ContainerError: If the file is empty or not a package.
    """
    apkg_path = Path(apkg_path)
    data = apkg_path.read_bytes()
    if not data:
        raise ContainerError(f"File is empty: {apkg_path}")

    result = read_apkg(
        data,
        algorithm=algorithm,
        now=now,
        prefer_populated_deck=prefer_populated_deck,
    )
    deck = result.decks[0]
    if name_from_file and deck.name == DEFAULT_DECK_NAME and apkg_path.stem:
        result.decks[0] = replace(deck, name=apkg_path.stem)
    return result


# =============================================================================
# Export
# =============================================================================


def sort_field_checksum(text: str) -> int:
    """
    Checksum stored in ``notes.csum``.

    32-bit rolling hash (``h * 31 + c``) over the UTF-16 code units of the
    text, wrapped to a signed 32-bit value and made non-negative.
    """
    encoded = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + code_unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def basic_model() -> genanki.Model:
    """The single Front/Back note type written on export."""
    return genanki.Model(
        MODEL_ID,
        MODEL_NAME,
        fields=[{"name": "Front"}, {"name": "Back"}],
        templates=[
            {
                "name": "Card 1",
                "qfmt": "{{Front}}",
                "afmt": "{{FrontSide}}\n\n<hr id=answer>\n\n{{Back}}",
            }
        ],
        css=MODEL_CSS,
    )


def _deck_json(deck: Deck, timestamp: int) -> dict:
    data = genanki.Deck(deck.id, deck.name, deck.description or "").to_json()
    data["mod"] = timestamp
    data["conf"] = DECK_CONFIG_ID
    return data


def _collection_config(decks: list[Deck]) -> dict:
    first = decks[0].id
    return {
        "nextPos": 1,
        "estTimes": True,
        "activeDecks": [first],
        "curDeck": first,
        "newBury": True,
        "timeLim": 0,
        "newSpread": 0,
        "dueCounts": True,
        "curModel": MODEL_ID,
        "collapseTime": 1200,
        "addToCur": True,
        "dayLearnFirst": False,
        "newMix": 0,
        "learnCutoff": 20,
        "leechFails": 8,
        "disp": 0,
        "maxTaken": 60,
        "newSort": 0,
        "newPerDayMinimum": 0,
    }


def _collection_row(
    decks: list[Deck], timestamp: int, include_settings: bool
) -> CollectionRow:
    model_json = basic_model().to_json(timestamp, decks[0].id)
    dconf = dict(DEFAULT_DECK_CONFIG, id=DECK_CONFIG_ID, name="Default")
    return CollectionRow(
        id=1,
        crt=timestamp,
        mod=timestamp,
        scm=timestamp,
        ver=SCHEMA_VERSION,
        conf=json.dumps(_collection_config(decks)) if include_settings else "{}",
        models=json.dumps({str(MODEL_ID): model_json}),
        decks=json.dumps({str(deck.id): _deck_json(deck, timestamp) for deck in decks}),
        dconf=json.dumps({str(DECK_CONFIG_ID): dconf}),
        tags="{}",
    )


def _note_row(card: Card, stable_guids: bool) -> NoteRow:
    if stable_guids:
        guid = genanki.guid_for(card.id)
    else:
        guid = genanki.guid_for(card.id, uuid.uuid4().hex)
    return NoteRow(
        id=card.id,
        guid=guid,
        mid=MODEL_ID,
        mod=_seconds(card.updated_at),
        flds=encode_fields(card.front, card.back),
        sfld=card.front,
        csum=sort_field_checksum(card.front),
    )


def _card_row(card: Card, now: datetime) -> CardRow:
    state = card.schedule
    return CardRow(
        id=card.id,
        nid=card.id,
        did=card.deck_id,
        ord=0,
        mod=_seconds(card.updated_at),
        type=anki_type(state),
        queue=anki_queue(state),
        due=anki_due(state, now, reviewed_at=card.updated_at),
        ivl=anki_interval(state),
        factor=anki_factor(state.ease_factor),
        reps=state.repetitions,
    )


def write_apkg(
    decks: list[Deck],
    cards: list[Card],
    *,
    now: datetime | None = None,
    include_settings: bool = True,
    compress: bool = False,
    stable_guids: bool = False,
) -> bytes:
    """
    Build ``.apkg`` bytes holding ``decks`` and their ``cards``.

    :param decks: Decks to write; at least one.
    :param cards: Cards to write; cards of other decks are skipped.
    :param now: Collection timestamps and the reference for ``due``. Naive
        datetimes, here and on cards, are taken as UTC.
    :param include_settings: If True, write default global config to ``col.conf``.
    :param compress: If True, zstd-compress the collection entry.
    :param stable_guids: If True, derive note GUIDs from card ids only, so
        re-exporting a card yields the same GUID.
    :returns: Package bytes.
    :raises ValueError: If no decks are given.
    :raises SnapshotError: If a row cannot be written (e.g. duplicate ids).
    """
    if not decks:
        raise ValueError("No decks to export")

    now = as_utc(now or _utcnow())
    timestamp = _seconds(now)
    deck_ids = {deck.id for deck in decks}
    deck_config = json.dumps(DEFAULT_DECK_CONFIG)

    written = 0
    with SnapshotWriter() as writer:
        writer.write_collection(_collection_row(decks, timestamp, include_settings))

        for deck in decks:
            writer.write_deck(
                DeckRow(
                    id=deck.id,
                    name=deck.name,
                    mtime_secs=_seconds(deck.updated_at),
                    config=deck_config,
                    desc=deck.description or "",
                )
            )

        for card in cards:
            if card.deck_id not in deck_ids:
                logger.warning(
                    "Skipping card %s: deck %s is not being exported",
                    card.id,
                    card.deck_id,
                )
                continue
            writer.write_note(_note_row(card, stable_guids))
            writer.write_card(_card_row(card, now))
            written += 1

        payload = writer.to_bytes()

    logger.info("Exported %d decks and %d cards", len(decks), written)
    return pack_collection(payload, compress_payload=compress)


def save_apkg(
    output_path: str | Path,
    decks: list[Deck],
    cards: list[Card],
    **options,
) -> None:
    """
    Write ``decks`` and ``cards`` to an ``.apkg`` file.

    :param output_path: Destination path.
    :param options: Passed to :func:`write_apkg`.
    """
    data = write_apkg(decks, cards, **options)
    Path(output_path).write_bytes(data)
