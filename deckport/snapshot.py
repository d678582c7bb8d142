"""
Read and write the SQLite collection embedded in an Anki package.

Tables
------
The writer creates a fixed subset of the legacy (schema 11) layout, enough
for Anki's importer to open it:

- ``col``: singleton metadata row; models, decks and deck options as JSON
- ``decks``: one row per deck (also present in anki21b collections)
- ``notes``: field blobs, ``\\x1f`` separated
- ``cards``: one row per card with its scheduling columns

The reader accepts any collection that has at least ``col`` and ``notes``.
Rows are returned as dataclasses; columns absent from an older schema take
the dataclass default. JSON metadata is parsed into :class:`ModelInfo`,
:class:`DeckInfo` and :class:`DeckConfigInfo`, skipping malformed entries.

Both :class:`SnapshotReader` and :class:`SnapshotWriter` work on a private
temporary directory and must be used as context managers so the connection
and the directory are released on every exit path.
"""

import json
import logging
import os
import shutil
import sqlite3
import tempfile
from dataclasses import dataclass, field, fields

from deckport.errors import SnapshotError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 11
SQLITE_HEADER = b"SQLite format 3\x00"
REQUIRED_TABLES = ("col", "notes")
DB_FILENAME = "collection.db"

SCHEMA = """
CREATE TABLE col (
    id INTEGER PRIMARY KEY,
    crt INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    scm INTEGER NOT NULL,
    ver INTEGER NOT NULL,
    dty INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    ls INTEGER NOT NULL,
    conf TEXT NOT NULL,
    models TEXT NOT NULL,
    decks TEXT NOT NULL,
    dconf TEXT NOT NULL,
    tags TEXT NOT NULL
);

CREATE TABLE decks (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    mtime_secs INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    config TEXT,
    desc TEXT
);

CREATE TABLE notes (
    id INTEGER PRIMARY KEY,
    guid TEXT NOT NULL UNIQUE,
    mid INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    tags TEXT NOT NULL,
    flds TEXT NOT NULL,
    sfld INTEGER NOT NULL,
    csum INTEGER NOT NULL,
    flags INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE cards (
    id INTEGER PRIMARY KEY,
    nid INTEGER NOT NULL,
    did INTEGER NOT NULL,
    ord INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    type INTEGER NOT NULL,
    queue INTEGER NOT NULL,
    due INTEGER NOT NULL,
    ivl INTEGER NOT NULL,
    factor INTEGER NOT NULL,
    reps INTEGER NOT NULL,
    lapses INTEGER NOT NULL,
    left INTEGER NOT NULL,
    odue INTEGER NOT NULL,
    odid INTEGER NOT NULL,
    flags INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX ix_notes_usn ON notes (usn);
CREATE INDEX ix_notes_csum ON notes (csum);
CREATE INDEX ix_cards_usn ON cards (usn);
CREATE INDEX ix_cards_nid ON cards (nid);
CREATE INDEX ix_cards_sched ON cards (did, queue, due);
"""


# =============================================================================
# Row records
# =============================================================================


@dataclass
class CollectionRow:
    """The singleton ``col`` row. Timestamps are in seconds."""

    id: int = 1
    crt: int = 0
    mod: int = 0
    scm: int = 0
    ver: int = SCHEMA_VERSION
    dty: int = 0
    usn: int = 0
    ls: int = 0
    conf: str = "{}"
    models: str = "{}"
    decks: str = "{}"
    dconf: str = "{}"
    tags: str = "{}"

    def model_infos(self) -> list["ModelInfo"]:
        return [
            model
            for key, value in _json_entries(self.models, "models")
            if (model := ModelInfo.from_json(key, value)) is not None
        ]

    def deck_infos(self) -> list["DeckInfo"]:
        return [
            deck
            for key, value in _json_entries(self.decks, "decks")
            if (deck := DeckInfo.from_json(key, value)) is not None
        ]

    def deck_configs(self) -> list["DeckConfigInfo"]:
        return [
            conf
            for key, value in _json_entries(self.dconf, "dconf")
            if (conf := DeckConfigInfo.from_json(key, value)) is not None
        ]


@dataclass
class DeckRow:
    id: int
    name: str = ""
    mtime_secs: int = 0
    usn: int = 0
    config: str = ""
    desc: str = ""


@dataclass
class NoteRow:
    """A ``notes`` row. ``sfld`` is the sort field, ``csum`` its checksum."""

    id: int
    guid: str = ""
    mid: int = 0
    mod: int = 0
    usn: int = 0
    tags: str = ""
    flds: str = ""
    sfld: str = ""
    csum: int = 0
    flags: int = 0
    data: str = ""


@dataclass
class CardRow:
    """A ``cards`` row. ``factor`` is the ease in permille."""

    id: int
    nid: int = 0
    did: int = 0
    ord: int = 0
    mod: int = 0
    usn: int = 0
    type: int = 0
    queue: int = 0
    due: int = 0
    ivl: int = 0
    factor: int = 0
    reps: int = 0
    lapses: int = 0
    left: int = 0
    odue: int = 0
    odid: int = 0
    flags: int = 0
    data: str = ""


# =============================================================================
# Collection metadata JSON
# =============================================================================


@dataclass
class TemplateInfo:
    name: str
    qfmt: str = ""
    afmt: str = ""


@dataclass
class ModelInfo:
    """A note type from ``col.models``.

    :param field_names: Field names in position order.
    """

    id: int
    name: str
    field_names: list[str] = field(default_factory=list)
    templates: list[TemplateInfo] = field(default_factory=list)
    css: str = ""

    @classmethod
    def from_json(cls, key: str, value) -> "ModelInfo | None":
        model_id = _entry_id(key, value)
        if model_id is None:
            return None

        flds = value.get("flds")
        field_names = []
        if isinstance(flds, list):
            field_names = [
                f["name"]
                for f in flds
                if isinstance(f, dict) and isinstance(f.get("name"), str)
            ]

        tmpls = value.get("tmpls")
        templates = []
        if isinstance(tmpls, list):
            for i, tmpl in enumerate(tmpls):
                if not isinstance(tmpl, dict):
                    continue
                templates.append(
                    TemplateInfo(
                        name=_str(tmpl.get("name"), f"Card {i + 1}"),
                        qfmt=_str(tmpl.get("qfmt")),
                        afmt=_str(tmpl.get("afmt")),
                    )
                )

        return cls(
            id=model_id,
            name=_str(value.get("name"), "Unknown"),
            field_names=field_names,
            templates=templates,
            css=_str(value.get("css")),
        )


@dataclass
class DeckInfo:
    """A deck from ``col.decks`` or the ``decks`` table.

    ``name`` is empty when the entry carries no usable name.
    """

    id: int
    name: str
    description: str = ""

    @classmethod
    def from_json(cls, key: str, value) -> "DeckInfo | None":
        deck_id = _entry_id(key, value)
        if deck_id is None:
            return None
        return cls(
            id=deck_id,
            name=_str(value.get("name")),
            description=_str(value.get("desc")),
        )


@dataclass
class DeckConfigInfo:
    """Review limits from ``col.dconf``."""

    id: int
    name: str = "Default"
    new_per_day: int = 20
    reviews_per_day: int = 200

    @classmethod
    def from_json(cls, key: str, value) -> "DeckConfigInfo | None":
        conf_id = _entry_id(key, value)
        if conf_id is None:
            return None
        new = value.get("new") if isinstance(value.get("new"), dict) else {}
        rev = value.get("rev") if isinstance(value.get("rev"), dict) else {}
        return cls(
            id=conf_id,
            name=_str(value.get("name"), "Default"),
            new_per_day=_int(new.get("perDay"), 20),
            reviews_per_day=_int(rev.get("perDay"), 200),
        )


def _str(value, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _int(value, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _entry_id(key: str, value) -> int | None:
    if not isinstance(value, dict):
        return None
    for candidate in (value.get("id"), key):
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def _json_entries(text, column: str) -> list[tuple[str, object]]:
    """
    Parse a JSON object column into (key, value) pairs.

    Keys are ordered numerically where possible, the order a JavaScript
    reader would see. Unparsable or non-object JSON yields no entries.
    """
    if not text:
        return []
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        logger.warning("Could not parse col.%s JSON: %s", column, e)
        return []
    if not isinstance(data, dict):
        logger.warning("col.%s is not a JSON object", column)
        return []

    def order(key: str) -> tuple[int, int, str]:
        if key.isdigit():
            return (0, int(key), "")
        return (1, 0, key)

    return [(key, data[key]) for key in sorted(data, key=order)]


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _from_row(cls, row: sqlite3.Row):
    """Build a row dataclass from the columns ``row`` actually has."""
    keys = set(row.keys())
    values = {}
    for f in fields(cls):
        if f.name in keys and row[f.name] is not None:
            values[f.name] = row[f.name]
    return cls(**values)


# =============================================================================
# Reader
# =============================================================================


class SnapshotReader:
    """
    Read-only view of a collection database held in memory as bytes.

    ::

        with SnapshotReader(payload) as snapshot:
            deck_names = snapshot.deck_names()
            notes = snapshot.notes()

    :raises SnapshotError: On enter, if the payload is not an SQLite
        database or lacks a required table.
    """

    def __init__(self, payload: bytes) -> None:
        self.payload = payload
        self.temp_dir: str | None = None
        self.conn: sqlite3.Connection | None = None
        self._tables: set[str] = set()

    def __enter__(self) -> "SnapshotReader":
        if not self.payload.startswith(SQLITE_HEADER):
            raise SnapshotError("Collection is not an SQLite database")

        self.temp_dir = tempfile.mkdtemp()
        try:
            db_path = os.path.join(self.temp_dir, DB_FILENAME)
            with open(db_path, "wb") as f:
                f.write(self.payload)

            self.conn = sqlite3.connect(db_path)
            self.conn.row_factory = sqlite3.Row
            self._tables = self._load_tables()
        except BaseException:
            self.close()
            raise

        missing = [t for t in REQUIRED_TABLES if t not in self._tables]
        if missing:
            self.close()
            raise SnapshotError(
                f"Collection is missing required table(s): {', '.join(missing)}"
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None

    def _load_tables(self) -> set[str]:
        rows = self._query("SELECT name FROM sqlite_master WHERE type = 'table'")
        return {row["name"] for row in rows}

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        if self.conn is None:
            raise SnapshotError("Snapshot is not open")
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.DatabaseError as e:
            raise SnapshotError(f"Could not read collection: {e}") from e

    def _columns(self, table: str) -> list[str]:
        return [row["name"] for row in self._query(f"PRAGMA table_info({_quote(table)})")]

    def has_table(self, name: str) -> bool:
        return name in self._tables

    def _require(self, table: str, column: str | None = None) -> None:
        if table not in self._tables:
            raise SnapshotError(f"Collection has no {table} table")
        if column is not None and column not in self._columns(table):
            raise SnapshotError(f"Table {table} has no {column} column")

    def first_value(self, table: str, column: str):
        """
        First value of ``column`` in ``table``, or None for an empty table.

        :raises SnapshotError: If the table or column does not exist.
        """
        self._require(table, column)
        rows = self._query(f"SELECT {_quote(column)} FROM {_quote(table)} LIMIT 1")
        return rows[0][0] if rows else None

    def column_values(self, table: str, column: str) -> list:
        """
        ``column`` for every row of ``table``, in rowid order.

        :raises SnapshotError: If the table or column does not exist.
        """
        self._require(table, column)
        rows = self._query(f"SELECT {_quote(column)} FROM {_quote(table)}")
        return [row[0] for row in rows]

    def collection(self) -> CollectionRow | None:
        rows = self._query("SELECT * FROM col LIMIT 1")
        if not rows:
            return None
        return _from_row(CollectionRow, rows[0])

    def deck_infos(self) -> list[DeckInfo]:
        """
        Decks listed in the collection, in id order.

        Legacy collections keep them as JSON in ``col.decks``; anki21b
        collections leave that empty and use the ``decks`` table, whose
        names separate subdecks with ``\\x1f``.
        """
        col = self.collection()
        decks = col.deck_infos() if col else []
        if decks or not self.has_table("decks"):
            return decks

        for row in self._query("SELECT * FROM decks ORDER BY id"):
            name = _str(row["name"])
            desc = row["desc"] if "desc" in row.keys() else ""
            decks.append(
                DeckInfo(
                    id=row["id"],
                    name=name.replace("\x1f", "::"),
                    description=_str(desc),
                )
            )
        return decks

    def deck_names(self) -> list[str]:
        return [deck.name for deck in self.deck_infos()]

    def card_counts_by_deck(self) -> dict[int, int]:
        if not self.has_table("cards"):
            return {}
        rows = self._query("SELECT did, COUNT(*) AS n FROM cards GROUP BY did")
        return {row["did"]: row["n"] for row in rows}

    def notes(self) -> list[NoteRow]:
        rows = self._query("SELECT * FROM notes ORDER BY rowid")
        return [_from_row(NoteRow, row) for row in rows]

    def cards(self) -> list[CardRow]:
        if not self.has_table("cards"):
            return []
        rows = self._query("SELECT * FROM cards ORDER BY rowid")
        return [_from_row(CardRow, row) for row in rows]


# =============================================================================
# Writer
# =============================================================================


class SnapshotWriter:
    """
    Build a new collection database and return it as bytes.

    ::

        with SnapshotWriter() as writer:
            writer.write_collection(CollectionRow(...))
            writer.write_deck(DeckRow(...))
            payload = writer.to_bytes()

    Each row type maps to one INSERT; NOT NULL columns are filled from the
    dataclass defaults.
    """

    def __init__(self) -> None:
        self.temp_dir: str | None = None
        self.conn: sqlite3.Connection | None = None
        self._db_path: str | None = None

    def __enter__(self) -> "SnapshotWriter":
        self.temp_dir = tempfile.mkdtemp()
        try:
            self._db_path = os.path.join(self.temp_dir, DB_FILENAME)
            self.conn = sqlite3.connect(self._db_path)
            self.conn.executescript(SCHEMA)
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None

    def _insert(self, table: str, row) -> None:
        if self.conn is None:
            raise SnapshotError("Snapshot writer is closed")
        names = [f.name for f in fields(row)]
        columns = ", ".join(_quote(name) for name in names)
        placeholders = ", ".join("?" * len(names))
        values = tuple(getattr(row, name) for name in names)
        try:
            self.conn.execute(
                f"INSERT INTO {_quote(table)} ({columns}) VALUES ({placeholders})",
                values,
            )
        except sqlite3.DatabaseError as e:
            raise SnapshotError(f"Could not write {table} row {values[0]}: {e}") from e

    def write_collection(self, row: CollectionRow) -> None:
        self._insert("col", row)

    def write_deck(self, row: DeckRow) -> None:
        self._insert("decks", row)

    def write_note(self, row: NoteRow) -> None:
        self._insert("notes", row)

    def write_card(self, row: CardRow) -> None:
        self._insert("cards", row)

    def to_bytes(self) -> bytes:
        """
        Commit, close the database and return the file contents.

        The writer accepts no further rows afterwards.
        """
        if self.conn is None:
            raise SnapshotError("Snapshot writer is closed")
        self.conn.commit()
        self.conn.close()
        self.conn = None

        with open(self._db_path, "rb") as f:
            return f.read()
