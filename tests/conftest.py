"""
Shared pytest fixtures for all tests.

Packages are built in memory from small SQLite collections, so no .apkg
files need to be checked in.
"""

import io
import itertools
import json
import sqlite3
import zipfile
from datetime import datetime, timezone

import pytest
import zstandard

LEGACY_SCHEMA = """
CREATE TABLE col (
    id integer primary key, crt integer, mod integer, scm integer,
    ver integer, dty integer, usn integer, ls integer, conf text,
    models text, decks text, dconf text, tags text
);
CREATE TABLE notes (
    id integer primary key, guid text, mid integer, mod integer,
    usn integer, tags text, flds text, sfld text, csum integer,
    flags integer, data text
);
CREATE TABLE cards (
    id integer primary key, nid integer, did integer, ord integer,
    mod integer, usn integer, type integer, queue integer, due integer,
    ivl integer, factor integer, reps integer, lapses integer,
    left integer, odue integer, odid integer, flags integer, data text
);
"""

# anki21b collections keep decks in their own table, without a desc column
DECKS_TABLE = """
CREATE TABLE decks (
    id integer primary key, name text, mtime_secs integer, usn integer,
    common blob, kind blob
);
"""


@pytest.fixture
def now():
    """A fixed reference time."""
    return datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_collection(tmp_path):
    """Factory building a collection database and returning its bytes.

    :param flds: One ``notes.flds`` value per note.
    :param decks: ``col.decks`` JSON object.
    :param deck_rows: (id, name) pairs for a ``decks`` table.
    :param card_decks: Deck id of each note's card (default 1).
    """
    counter = itertools.count()

    def _make(flds, *, decks=None, deck_rows=None, card_decks=None):
        db_path = tmp_path / f"collection-{next(counter)}.db"
        conn = sqlite3.connect(db_path)
        conn.executescript(LEGACY_SCHEMA)
        conn.execute(
            "INSERT INTO col VALUES (1, 0, 0, 0, 11, 0, 0, 0, '{}', '{}', ?, '{}', '{}')",
            (json.dumps(decks or {}),),
        )
        for i, value in enumerate(flds):
            note_id = 1000 + i
            did = card_decks[i] if card_decks else 1
            conn.execute(
                "INSERT INTO notes VALUES (?, ?, 1, 0, 0, '', ?, '', 0, 0, '')",
                (note_id, f"guid{i}", value),
            )
            conn.execute(
                "INSERT INTO cards VALUES "
                "(?, ?, ?, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, '')",
                (note_id, note_id, did),
            )
        if deck_rows is not None:
            conn.executescript(DECKS_TABLE)
            for deck_id, name in deck_rows:
                conn.execute(
                    "INSERT INTO decks (id, name, mtime_secs, usn) VALUES (?, ?, 0, 0)",
                    (deck_id, name),
                )
        conn.commit()
        conn.close()
        return db_path.read_bytes()

    return _make


def zip_entries(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zip_ref:
        for name, payload in entries.items():
            zip_ref.writestr(name, payload)
    return buffer.getvalue()


@pytest.fixture
def make_apkg():
    """Factory wrapping collection bytes in a package.

    ``compress=True`` zstd-compresses the payload without recording the
    content size, as Anki's streaming writer does.
    """

    def _make(payload, entry="collection.anki2", *, compress=False, extra=None):
        if compress:
            payload = zstandard.ZstdCompressor(write_content_size=False).compress(payload)
        entries = {entry: payload, "media": b"{}"}
        entries.update(extra or {})
        return zip_entries(entries)

    return _make


@pytest.fixture
def spanish_apkg(make_collection, make_apkg):
    """Legacy package with a 'Spanish' deck holding three notes and an empty deck."""
    payload = make_collection(
        ["Hola\x1fHello", "<b>Gato</b>|Cat", "only one field"],
        decks={
            "1": {"id": 1, "name": "Spanish"},
            "1700000000000": {"id": 1700000000000, "name": "Archive"},
        },
    )
    return make_apkg(payload)
