"""
CLI tools for converting Anki package (.apkg) files.

Commands:
    inspect  - Diagnostic tools to inspect .apkg files
    repack   - Import a package and export it again in the current layout
    simulate - Preview how a scheduling algorithm spaces out reviews
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import cyclopts

from deckport.container import read_collection
from deckport.errors import DeckportError
from deckport.fields import decode_fields
from deckport.models import select_for_export
from deckport.package import load_apkg, save_apkg
from deckport.sanitize import clean
from deckport.snapshot import SnapshotReader
from deckport.srs import (
    Outcome,
    SchedulerSettings,
    algorithm_from_settings,
    card_state,
    simulate as simulate_reviews,
)

app = cyclopts.App(help="Convert Anki package (.apkg) files")

_OUTCOME_ALIASES = {"c": Outcome.CORRECT, "i": Outcome.INCORRECT}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _open_snapshot(apkg_path: Path) -> SnapshotReader:
    _, payload = read_collection(apkg_path.read_bytes())
    return SnapshotReader(payload)


def _load_settings(settings_path: Path | None, algorithm: str | None) -> SchedulerSettings:
    data = {}
    if settings_path:
        data = json.loads(settings_path.read_text(encoding="utf-8"))
    settings = SchedulerSettings.from_dict(data)
    if algorithm:
        settings.srs_algorithm = algorithm
    return settings


def _parse_outcome(token: str) -> Outcome:
    token = token.strip().lower()
    if token in _OUTCOME_ALIASES:
        return _OUTCOME_ALIASES[token]
    return Outcome(token)


# =============================================================================
# Inspect commands - diagnostic tools for .apkg files
# =============================================================================

inspect_app = cyclopts.App(name="inspect", help="Inspect Anki package (.apkg) files")
app.command(inspect_app)


@inspect_app.command
def decks(apkg_path: Path):
    """List all decks in the package.

    :param apkg_path: Path to .apkg file.
    """
    with _open_snapshot(apkg_path) as snapshot:
        deck_infos = snapshot.deck_infos()
        counts = snapshot.card_counts_by_deck()

    print(f"Decks ({len(deck_infos)}):\n")

    for deck in deck_infos:
        print(f"  {deck.name}")
        print(f"    ID: {deck.id}")
        print(f"    Cards: {counts.get(deck.id, 0)}")
        print()


@inspect_app.command
def cards(
    apkg_path: Path,
    *,
    limit: int = 10,
    search: str | None = None,
):
    """List notes as they would be imported (front and back as plain text).

    :param apkg_path: Path to .apkg file.
    :param limit: Maximum notes to show (0 for all).
    :param search: Filter notes containing this text.
    """
    with _open_snapshot(apkg_path) as snapshot:
        notes = snapshot.notes()

    print(f"Total notes: {len(notes)}\n")

    shown = 0
    for i, note in enumerate(notes):
        fields = [clean(f) for f in decode_fields(note.flds)]
        if search:
            text = " ".join(fields)
            if search.lower() not in text.lower():
                continue

        print(f"Note {i}:")
        if len(fields) < 2:
            print(f"  (skipped on import, {len(fields)} field)")
        else:
            print(f"  Front: {fields[0]}")
            print(f"  Back: {fields[1]}")
        print()

        shown += 1
        if limit and shown >= limit:
            remaining = len(notes) - i - 1
            if remaining > 0:
                print(f"... and {remaining} more notes")
            break


@inspect_app.command
def models(apkg_path: Path):
    """List note types (models) and their fields.

    :param apkg_path: Path to .apkg file.
    """
    with _open_snapshot(apkg_path) as snapshot:
        col = snapshot.collection()
    model_infos = col.model_infos() if col else []

    print(f"Note Types ({len(model_infos)}):\n")

    for model in model_infos:
        print(f"  {model.name}")
        print(f"    ID: {model.id}")
        print(f"    Fields: {', '.join(model.field_names)}")
        print(f"    Templates: {', '.join(t.name for t in model.templates)}")
        print()


@inspect_app.command
def stats(apkg_path: Path):
    """Show overall statistics for the package.

    :param apkg_path: Path to .apkg file.
    """
    entry, payload = read_collection(apkg_path.read_bytes())
    with SnapshotReader(payload) as snapshot:
        col = snapshot.collection()
        notes = snapshot.notes()
        card_rows = snapshot.cards()
        deck_infos = snapshot.deck_infos()
        counts = snapshot.card_counts_by_deck()

    importable = sum(1 for note in notes if len(decode_fields(note.flds)) >= 2)

    print(f"File: {apkg_path.name}")
    print(f"Size: {apkg_path.stat().st_size / 1024:.1f} KB")
    print(f"Collection: {entry}")
    if col:
        print(f"Schema version: {col.ver}")
    print()
    print("Counts:")
    print(f"  Notes: {len(notes)}")
    print(f"  Importable notes: {importable}")
    print(f"  Cards: {len(card_rows)}")
    print(f"  Decks: {len(deck_infos)}")
    print(f"  Note Types: {len(col.model_infos()) if col else 0}")
    print()

    print("Decks:")
    for deck in deck_infos:
        print(f"  {deck.name}: {counts.get(deck.id, 0)} cards")


# =============================================================================
# Conversion
# =============================================================================


@app.command
def repack(
    apkg_path: Path,
    output: Path,
    *,
    algorithm: str | None = None,
    settings: Path | None = None,
    compress: bool = False,
    stable_guids: bool = False,
    prefer_populated_deck: bool = False,
    verbose: bool = False,
):
    """Import a package and write it back out as a single Basic deck.

    Useful for turning legacy ``collection.anki2`` packages into the current
    container, or for flattening arbitrary note types to Front/Back.

    :param apkg_path: Source .apkg file.
    :param output: Destination .apkg file.
    :param algorithm: Scheduling algorithm for new cards (sm2, sm17, custom).
    :param settings: JSON file with scheduler settings.
    :param compress: If True, zstd-compress the collection.
    :param stable_guids: If True, derive note GUIDs from card ids only.
    :param prefer_populated_deck: If True, name the deck after the first
        source deck that owns cards.
    :param verbose: If True, log progress.
    """
    _configure_logging(verbose)
    scheduler = algorithm_from_settings(_load_settings(settings, algorithm))

    result = load_apkg(
        apkg_path, algorithm=scheduler, prefer_populated_deck=prefer_populated_deck
    )
    selected_decks, selected_cards = select_for_export(result.decks, result.cards)
    save_apkg(
        output,
        selected_decks,
        selected_cards,
        compress=compress,
        stable_guids=stable_guids,
    )

    for deck in selected_decks:
        print(f"  {deck.name}: {deck.card_count} cards")
    print(f"Saved: {output}")


@app.command
def simulate(
    outcomes: list[str],
    *,
    algorithm: str | None = None,
    settings: Path | None = None,
    response_time: int = 5000,
):
    """Replay review outcomes and print the schedule after each one.

    Every review happens on the day the previous one made the card due.

    :param outcomes: Outcomes in order: correct/incorrect, or c/i.
    :param algorithm: Scheduling algorithm (sm2, sm17, custom).
    :param settings: JSON file with scheduler settings.
    :param response_time: Response time per review in milliseconds.
    """
    scheduler_settings = _load_settings(settings, algorithm)
    scheduler = algorithm_from_settings(scheduler_settings)
    parsed = [_parse_outcome(token) for token in outcomes]

    start = datetime.now(timezone.utc)
    history = simulate_reviews(
        scheduler, parsed, response_time_ms=response_time, start=start
    )

    print(f"Algorithm: {scheduler.name}\n")
    print(f"{'#':>3}  {'outcome':<9}  {'interval':>8}  {'reps':>4}  {'ease':>5}  state")
    for i, (outcome, state) in enumerate(zip(parsed, history), start=1):
        print(
            f"{i:>3}  {outcome.value:<9}  {state.interval:>8}  "
            f"{state.repetitions:>4}  {state.ease_factor:>5.2f}  "
            f"{card_state(state).value}"
        )

    if history:
        total_days = (history[-1].due_date - start).days
        print(f"\nNext review after {total_days} days")


def main() -> None:
    """Main entry point. Invokes the cyclopts app."""
    try:
        app()
    except (DeckportError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
