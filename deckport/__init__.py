"""
deckport - convert Anki packages (.apkg) to and from plain flashcards.

Core functions:
    read_apkg / load_apkg  - Import a package as one deck of front/back cards
    write_apkg / save_apkg - Export decks and cards as a package

Modules:
    package   - Import and export between packages and cards
    container - ZIP container and zstd collection payloads
    snapshot  - SQLite collection reader and writer
    fields    - notes.flds encoding
    sanitize  - HTML to plain text
    srs       - SM-2 family scheduling and Anki column mapping
    models    - Card and Deck records
    cli       - Command-line interface
"""

from deckport.errors import (
    ContainerError,
    DeckportError,
    EmptyImportError,
    MissingConfigurationError,
    SchedulingError,
    SnapshotError,
    UnknownAlgorithmError,
)
from deckport.fields import decode_fields, encode_fields
from deckport.models import Card, Deck, ImportResult, recount_decks, select_for_export
from deckport.package import (
    load_apkg,
    read_apkg,
    save_apkg,
    sort_field_checksum,
    write_apkg,
)
from deckport.sanitize import clean
from deckport.srs import (
    CustomAlgorithm,
    Outcome,
    ScheduleState,
    SchedulerSettings,
    SM2Algorithm,
    SM17Algorithm,
    create_algorithm,
    simulate,
)

__all__ = [
    "read_apkg",
    "load_apkg",
    "write_apkg",
    "save_apkg",
    "sort_field_checksum",
    "Card",
    "Deck",
    "ImportResult",
    "recount_decks",
    "select_for_export",
    "decode_fields",
    "encode_fields",
    "clean",
    "Outcome",
    "ScheduleState",
    "SchedulerSettings",
    "SM2Algorithm",
    "SM17Algorithm",
    "CustomAlgorithm",
    "create_algorithm",
    "simulate",
    "DeckportError",
    "ContainerError",
    "SnapshotError",
    "EmptyImportError",
    "SchedulingError",
    "UnknownAlgorithmError",
    "MissingConfigurationError",
]
