import json
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from srscore.cli.main import app
from srscore.db import SRSDatabase
from srscore.exceptions import CardOperationError

runner = CliRunner()
USER = "diver-1"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


def _invoke(db_path: Path, *args: str):
    return runner.invoke(app, [*args, "--db", str(db_path)])


@pytest.fixture
def seeded(db_path: Path):
    """A deck with one tag and two cards, created through the CLI."""
    result = _invoke(db_path, "deck", "create", "Rigging", "-d", "Lift plans")
    assert result.exit_code == 0, result.stdout
    result = _invoke(db_path, "tag", "create", "knots")
    assert result.exit_code == 0, result.stdout

    with SRSDatabase(db_path) as db:
        deck = db.list_decks()[0]
        tag = db.list_tags()[0]

    for front in ("Bowline use?", "Sheet bend use?"):
        result = _invoke(
            db_path, "card", "add", deck.id, front, "Answer", "--tag", tag.id
        )
        assert result.exit_code == 0, result.stdout

    with SRSDatabase(db_path) as db:
        cards = db.list_deck_cards(deck.id)
    return deck, tag, cards


def test_deck_create_and_list(db_path: Path):
    result = _invoke(db_path, "deck", "create", "Rigging")
    assert result.exit_code == 0, result.stdout
    assert "Created deck" in result.stdout

    result = _invoke(db_path, "deck", "list")
    assert result.exit_code == 0
    assert "Rigging" in result.stdout


def test_deck_list_empty(db_path: Path):
    result = _invoke(db_path, "deck", "list")
    assert result.exit_code == 0
    assert "No decks found" in result.stdout


def test_set_options_partial_update(db_path: Path, seeded):
    deck, _, _ = seeded
    result = _invoke(
        db_path,
        "deck",
        "set-options",
        deck.id,
        "--new-per-day",
        "3",
        "--learning-steps",
        "1,10",
        "--no-bury-siblings",
    )
    assert result.exit_code == 0, result.stdout

    with SRSDatabase(db_path) as db:
        options = db.get_deck_options(deck.id)
    assert options.new_per_day == 3
    assert options.learning_steps_minutes == [1, 10]
    assert options.bury_siblings is False
    assert options.leech_threshold == 8


def test_set_options_rejects_invalid_values(db_path: Path, seeded):
    deck, _, _ = seeded
    result = _invoke(
        db_path, "deck", "set-options", deck.id, "--leech-threshold", "0"
    )
    assert result.exit_code == 1
    assert "Invalid input" in result.stdout


def test_set_options_rejects_malformed_steps(db_path: Path, seeded):
    deck, _, _ = seeded
    result = _invoke(
        db_path, "deck", "set-options", deck.id, "--relearn-steps", "ten"
    )
    assert result.exit_code == 1
    assert "invalid step list" in result.stdout


def test_options_command_shows_defaults(db_path: Path, seeded):
    deck, _, _ = seeded
    result = _invoke(db_path, "deck", "options", deck.id)
    assert result.exit_code == 0
    assert "Leech threshold" in result.stdout
    assert "10, 1440" in result.stdout


def test_duplicate_tag_exits_with_error(db_path: Path, seeded):
    result = _invoke(db_path, "tag", "create", "knots")
    assert result.exit_code == 1
    assert "database error" in result.stdout


def test_card_list_and_due_queue(db_path: Path, seeded):
    deck, _, _ = seeded
    result = _invoke(db_path, "card", "list", deck.id)
    assert result.exit_code == 0
    assert "Bowline use?" in result.stdout

    result = _invoke(db_path, "due", USER, deck.id)
    assert result.exit_code == 0, result.stdout
    assert "Due queue (2 cards)" in result.stdout


def test_filtered_queue_by_tag(db_path: Path, seeded):
    deck, tag, _ = seeded
    result = _invoke(db_path, "filtered", USER, deck.id, "--tag", tag.id)
    assert result.exit_code == 0, result.stdout
    assert "Filtered queue (2 cards)" in result.stdout

    result = _invoke(db_path, "filtered", USER, deck.id, "--tag", "missing")
    assert result.exit_code == 0
    assert "No matching cards" in result.stdout


def test_review_then_sync_json(db_path: Path, seeded):
    deck, _, cards = seeded
    result = _invoke(db_path, "review", USER, deck.id, cards[0].id, "2")
    assert result.exit_code == 0, result.stdout
    assert "review" in result.stdout

    result = _invoke(db_path, "sync", USER)
    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["since"] == 0
    assert [e["card_id"] for e in payload["events"]] == [cards[0].id]
    assert payload["states"][0]["state"] == "review"
    assert payload["next_cursor"] > 0


def test_review_of_suspended_card_is_a_conflict(db_path: Path, seeded):
    deck, _, cards = seeded
    _invoke(db_path, "deck", "set-options", deck.id, "--leech-threshold", "1")

    result = _invoke(db_path, "review", USER, deck.id, cards[0].id, "0")
    assert result.exit_code == 0, result.stdout
    assert "suspended as a leech" in result.stdout

    result = _invoke(db_path, "review", USER, deck.id, cards[0].id, "2")
    assert result.exit_code == 2
    assert "Conflict" in result.stdout


def test_stats_lists_decks(db_path: Path, seeded):
    deck, _, cards = seeded
    _invoke(db_path, "review", USER, deck.id, cards[0].id, "3")

    result = _invoke(db_path, "stats", USER)
    assert result.exit_code == 0, result.stdout
    assert "Rigging" in result.stdout
    assert "Recent Reviews" in result.stdout


def test_database_error_exits_with_code_1(db_path: Path, seeded):
    deck, _, _ = seeded
    with patch.object(
        SRSDatabase,
        "list_deck_cards",
        side_effect=CardOperationError("disk full"),
    ):
        result = _invoke(db_path, "card", "list", deck.id)
    assert result.exit_code == 1
    assert "disk full" in result.stdout
