"""
Tests for SnapshotReader and SnapshotWriter.
"""

import json
import sqlite3

import pytest

from deckport.errors import SnapshotError
from deckport.snapshot import (
    CardRow,
    CollectionRow,
    DeckRow,
    NoteRow,
    SnapshotReader,
    SnapshotWriter,
)


def _write(rows) -> bytes:
    with SnapshotWriter() as writer:
        for write, row in rows:
            getattr(writer, write)(row)
        return writer.to_bytes()


class TestSnapshotReader:
    """Tests for reading collection databases."""

    def test_rejects_non_sqlite(self):
        """Test that a payload without the SQLite header is rejected."""
        with pytest.raises(SnapshotError):
            with SnapshotReader(b"not a database"):
                pass

    def test_missing_notes_table(self, tmp_path):
        """Test that a collection without notes is rejected."""
        db_path = tmp_path / "partial.db"
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE col (id integer primary key, decks text)")
        conn.commit()
        conn.close()

        with pytest.raises(SnapshotError, match="notes"):
            with SnapshotReader(db_path.read_bytes()):
                pass

    def test_cleans_up_temp_dir(self, make_collection):
        """Test that the temporary directory is removed on exit."""
        snapshot = SnapshotReader(make_collection(["a\x1fb"]))
        with snapshot:
            temp_dir = snapshot.temp_dir
            assert temp_dir is not None
        assert snapshot.temp_dir is None
        assert snapshot.conn is None

    def test_notes(self, make_collection):
        """Test that notes are returned in insertion order."""
        with SnapshotReader(make_collection(["a\x1fb", "c\x1fd"])) as snapshot:
            notes = snapshot.notes()
        assert [note.flds for note in notes] == ["a\x1fb", "c\x1fd"]
        assert notes[0].id == 1000

    def test_null_flds_takes_default(self, make_collection):
        """Test that a NULL column falls back to the dataclass default."""
        with SnapshotReader(make_collection([None])) as snapshot:
            assert snapshot.notes()[0].flds == ""

    def test_first_value_and_column_values(self, make_collection):
        """Test the single-column accessors."""
        with SnapshotReader(make_collection(["a\x1fb", "c\x1fd"])) as snapshot:
            assert snapshot.first_value("notes", "flds") == "a\x1fb"
            assert snapshot.column_values("cards", "nid") == [1000, 1001]

    def test_unknown_table(self, make_collection):
        """Test that reading a missing table raises SnapshotError."""
        with SnapshotReader(make_collection([])) as snapshot:
            with pytest.raises(SnapshotError):
                snapshot.column_values("revlog", "id")

    def test_unknown_column(self, make_collection):
        """Test that reading a missing column raises SnapshotError."""
        with SnapshotReader(make_collection([])) as snapshot:
            with pytest.raises(SnapshotError):
                snapshot.first_value("notes", "nope")

    def test_deck_infos_numeric_order(self, make_collection):
        """Test that col.decks entries are ordered by numeric id, nameless ones included."""
        payload = make_collection(
            [],
            decks={
                "20": {"id": 20, "name": "Later"},
                "3": {"id": 3, "name": "Earlier"},
                "5": {"id": 5, "name": ""},
            },
        )
        with SnapshotReader(payload) as snapshot:
            assert snapshot.deck_names() == ["Earlier", "", "Later"]

    def test_deck_infos_from_decks_table(self, make_collection):
        """Test the fallback to the decks table with subdeck separators."""
        payload = make_collection([], deck_rows=[(1, "Default"), (7, "Lang\x1fSpanish")])
        with SnapshotReader(payload) as snapshot:
            assert snapshot.deck_names() == ["Default", "Lang::Spanish"]

    def test_malformed_decks_json(self, tmp_path):
        """Test that unparsable col.decks yields no decks."""
        db_path = tmp_path / "broken.db"
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE col (id integer primary key, decks text)")
        conn.execute("CREATE TABLE notes (id integer primary key, flds text)")
        conn.execute("INSERT INTO col VALUES (1, '{not json')")
        conn.commit()
        conn.close()

        with SnapshotReader(db_path.read_bytes()) as snapshot:
            assert snapshot.deck_infos() == []
            assert snapshot.cards() == []
            assert snapshot.card_counts_by_deck() == {}

    def test_card_counts_by_deck(self, make_collection):
        """Test that cards are counted per deck id."""
        payload = make_collection(["a\x1fb", "c\x1fd", "e\x1ff"], card_decks=[1, 2, 2])
        with SnapshotReader(payload) as snapshot:
            assert snapshot.card_counts_by_deck() == {1: 1, 2: 2}


class TestSnapshotWriter:
    """Tests for building collection databases."""

    def test_round_trip(self):
        """Test that written rows can be read back."""
        payload = _write(
            [
                ("write_collection", CollectionRow(crt=100, decks=json.dumps({}))),
                ("write_deck", DeckRow(id=7, name="Spanish", desc="Words")),
                ("write_note", NoteRow(id=11, guid="g", mid=1, flds="Hola\x1fHello")),
                ("write_card", CardRow(id=11, nid=11, did=7, factor=2500)),
            ]
        )

        with SnapshotReader(payload) as snapshot:
            assert snapshot.collection().crt == 100
            assert snapshot.collection().ver == 11
            assert snapshot.notes()[0].flds == "Hola\x1fHello"
            assert snapshot.cards()[0].factor == 2500
            deck = snapshot.deck_infos()[0]
            assert (deck.id, deck.name, deck.description) == (7, "Spanish", "Words")

    def test_schema_tables(self):
        """Test that exactly the four collection tables are created."""
        payload = _write([("write_collection", CollectionRow())])
        with SnapshotReader(payload) as snapshot:
            for table in ("col", "decks", "notes", "cards"):
                assert snapshot.has_table(table)
            assert not snapshot.has_table("revlog")

    def test_duplicate_id(self):
        """Test that a duplicate primary key raises SnapshotError."""
        with pytest.raises(SnapshotError):
            _write(
                [
                    ("write_note", NoteRow(id=1, guid="a")),
                    ("write_note", NoteRow(id=1, guid="b")),
                ]
            )

    def test_closed_writer(self):
        """Test that writing after to_bytes() fails."""
        with SnapshotWriter() as writer:
            writer.to_bytes()
            with pytest.raises(SnapshotError):
                writer.write_deck(DeckRow(id=1, name="x"))
