"""
Tests for the deckport command-line interface.
"""

import json

import pytest

from deckport import cli
from deckport.package import load_apkg


@pytest.fixture
def apkg_file(spanish_apkg, tmp_path):
    path = tmp_path / "spanish.apkg"
    path.write_bytes(spanish_apkg)
    return path


class TestInspect:
    """Tests for the inspect subcommands."""

    def test_decks(self, apkg_file, capsys):
        """Test that decks are listed with their card counts."""
        cli.decks(apkg_file)
        out = capsys.readouterr().out
        assert "Decks (2):" in out
        assert "Spanish" in out
        assert "Cards: 3" in out

    def test_cards(self, apkg_file, capsys):
        """Test that notes are shown as plain text."""
        cli.cards(apkg_file, limit=0)
        out = capsys.readouterr().out
        assert "Total notes: 3" in out
        assert "Front: Gato" in out
        assert "skipped on import" in out

    def test_cards_search(self, apkg_file, capsys):
        """Test that search filters notes."""
        cli.cards(apkg_file, search="hola")
        out = capsys.readouterr().out
        assert "Front: Hola" in out
        assert "Gato" not in out

    def test_cards_limit(self, apkg_file, capsys):
        """Test that the limit truncates the listing."""
        cli.cards(apkg_file, limit=1)
        assert "... and 2 more notes" in capsys.readouterr().out

    def test_stats(self, apkg_file, capsys):
        """Test the package summary."""
        cli.stats(apkg_file)
        out = capsys.readouterr().out
        assert "Collection: collection.anki2" in out
        assert "Importable notes: 2" in out
        assert "Spanish: 3 cards" in out

    def test_models_after_repack(self, apkg_file, tmp_path, capsys):
        """Test that a repacked package has a single Basic note type."""
        output = tmp_path / "out.apkg"
        cli.repack(apkg_file, output)
        capsys.readouterr()

        cli.models(output)
        out = capsys.readouterr().out
        assert "Note Types (1):" in out
        assert "Fields: Front, Back" in out


class TestRepack:
    """Tests for the repack command."""

    def test_repack(self, apkg_file, tmp_path, capsys):
        """Test that repacking writes an importable package."""
        output = tmp_path / "out.apkg"
        cli.repack(apkg_file, output, compress=True)
        assert "Spanish: 2 cards" in capsys.readouterr().out

        result = load_apkg(output)
        assert result.decks[0].name == "Spanish"
        assert len(result.cards) == 2

    def test_repack_with_settings(self, apkg_file, tmp_path):
        """Test that a settings file selects the algorithm."""
        settings = tmp_path / "settings.json"
        settings.write_text(json.dumps({"srsAlgorithm": "custom", "sm2MinInterval": 2}))
        output = tmp_path / "out.apkg"
        cli.repack(apkg_file, output, settings=settings)
        assert output.exists()

    def test_repack_prefer_populated_deck(self, make_collection, make_apkg, tmp_path, capsys):
        """Test that the flag names the output after the deck holding the cards."""
        payload = make_collection(
            ["a\x1fb"],
            decks={"1": {"id": 1, "name": "Default"}, "5": {"id": 5, "name": "Verbs"}},
            card_decks=[5],
        )
        source = tmp_path / "source.apkg"
        source.write_bytes(make_apkg(payload))

        cli.repack(source, tmp_path / "first.apkg")
        cli.repack(source, tmp_path / "populated.apkg", prefer_populated_deck=True)
        out = capsys.readouterr().out
        assert "Default: 1 cards" in out
        assert "Verbs: 1 cards" in out


class TestSimulate:
    """Tests for the simulate command."""

    def test_simulate(self, capsys):
        """Test the printed schedule."""
        cli.simulate(["c", "c", "correct", "i"])
        out = capsys.readouterr().out
        assert "Algorithm: SM-2" in out
        lines = [line.split() for line in out.splitlines() if line[:3].strip().isdigit()]
        assert [line[2] for line in lines] == ["1", "6", "8", "1"]
        assert lines[-1][-1] == "new"

    def test_simulate_custom(self, capsys):
        """Test that --algorithm custom uses default settings."""
        cli.simulate(["correct", "correct"], algorithm="custom")
        out = capsys.readouterr().out
        assert "Algorithm: Custom" in out

    def test_bad_outcome(self):
        """Test that an unknown outcome is rejected."""
        with pytest.raises(ValueError):
            cli.simulate(["maybe"])


class TestMain:
    """Tests for error reporting in main()."""

    def test_error_exit_code(self, tmp_path, monkeypatch, capsys):
        """Test that library errors print a message and exit with status 1."""
        bad = tmp_path / "bad.apkg"
        bad.write_bytes(b"not a zip")
        monkeypatch.setattr("sys.argv", ["deckport", "inspect", "decks", str(bad)])

        with pytest.raises(SystemExit) as excinfo:
            cli.main()
        assert excinfo.value.code == 1
        assert "Error:" in capsys.readouterr().err
