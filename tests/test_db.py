import threading

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from pydantic import ValidationError

from srscore.db import SRSDatabase
from srscore.db import db_utils
from srscore.exceptions import (
    DatabaseConnectionError,
    ReviewEventError,
    SchemaInitializationError,
    StaleCardStateError,
    TagOperationError,
)
from srscore.models import (
    CardState,
    DeckOptions,
    DeckOptionsUpdate,
    ReviewEvent,
    UserCardState,
)

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
USER = "diver-1"


# --- Marshalling helpers ---


def test_epoch_ms_round_trip_truncates_to_milliseconds():
    ts = T0 + timedelta(microseconds=123_456)
    ms = db_utils.to_epoch_ms(ts)
    assert ms == 1704103200123
    assert db_utils.from_epoch_ms(ms) == T0 + timedelta(milliseconds=123)


def test_epoch_ms_handles_none():
    assert db_utils.to_epoch_ms(None) is None
    assert db_utils.from_epoch_ms(None) is None


# --- Schema ---


def test_initialize_schema_is_idempotent(initialized_db_manager: SRSDatabase):
    initialized_db_manager.initialize_schema()
    tables = {
        row[0]
        for row in initialized_db_manager.get_connection()
        .execute("SELECT table_name FROM information_schema.tables")
        .fetchall()
    }
    assert {
        "decks",
        "deck_options",
        "cards",
        "tags",
        "card_tags",
        "card_states",
        "review_events",
    } <= tables


def test_force_recreate_refuses_to_drop_history(
    db_path_file: Path, monkeypatch
):
    from srscore.config import settings

    with SRSDatabase(db_path_file) as db:
        db.initialize_schema()
        prev = db.get_card_state(USER, "card-1", now=T0)
        db.save_card_state(prev, prev.model_copy(update={"updated_at": T0}))

        monkeypatch.setattr(settings, "testing_mode", False)
        with pytest.raises(SchemaInitializationError, match="existing data"):
            db.initialize_schema(force_recreate_tables=True)

        assert db.get_card_state(USER, "card-1").version == 1


def test_force_recreate_clears_tables_in_testing_mode(
    initialized_db_manager: SRSDatabase,
):
    initialized_db_manager.create_deck("Temp")
    initialized_db_manager.initialize_schema(force_recreate_tables=True)
    assert initialized_db_manager.list_decks() == []


# --- Decks & options ---


def test_create_deck_materializes_default_options(
    initialized_db_manager: SRSDatabase,
):
    deck = initialized_db_manager.create_deck("Decompression", created_at=T0)

    fetched = initialized_db_manager.get_deck(deck.id)
    assert fetched == deck
    row = (
        initialized_db_manager.get_connection()
        .execute(
            "SELECT COUNT(*) FROM deck_options WHERE deck_id = $1", (deck.id,)
        )
        .fetchone()
    )
    assert row[0] == 1
    assert initialized_db_manager.get_deck_options(deck.id) == DeckOptions()


def test_list_decks_newest_first(initialized_db_manager: SRSDatabase):
    older = initialized_db_manager.create_deck("Older", created_at=T0)
    newer = initialized_db_manager.create_deck(
        "Newer", created_at=T0 + timedelta(hours=1)
    )
    assert [d.id for d in initialized_db_manager.list_decks()] == [
        newer.id,
        older.id,
    ]


def test_get_unknown_deck_returns_none(initialized_db_manager: SRSDatabase):
    assert initialized_db_manager.get_deck("missing") is None


def test_get_options_creates_defaults_for_unknown_deck(
    initialized_db_manager: SRSDatabase,
):
    first = initialized_db_manager.get_deck_options("no-such-deck")
    second = initialized_db_manager.get_deck_options("no-such-deck")

    assert first == second == DeckOptions()
    count = (
        initialized_db_manager.get_connection()
        .execute(
            "SELECT COUNT(*) FROM deck_options WHERE deck_id = 'no-such-deck'"
        )
        .fetchone()[0]
    )
    assert count == 1


def test_concurrent_reads_each_see_their_own_rows(
    initialized_db_manager: SRSDatabase,
):
    decks = [
        initialized_db_manager.create_deck(f"Deck {i}") for i in range(8)
    ]
    for i, deck in enumerate(decks):
        initialized_db_manager.update_deck_options(
            deck.id, {"new_per_day": i + 1}
        )
    barrier = threading.Barrier(len(decks), timeout=30)
    errors = []

    def read(index, deck_id):
        try:
            barrier.wait()
            for _ in range(20):
                options = initialized_db_manager.get_deck_options(deck_id)
                assert options.new_per_day == index + 1
                assert initialized_db_manager.get_deck(deck_id).id == deck_id
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [
        threading.Thread(target=read, args=(i, d.id))
        for i, d in enumerate(decks)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []


def test_update_options_merges_and_persists(
    initialized_db_manager: SRSDatabase, deck
):
    merged = initialized_db_manager.update_deck_options(
        deck.id,
        DeckOptionsUpdate(new_per_day=3, learning_steps_minutes=[1, 10, 60]),
    )
    assert merged.new_per_day == 3
    assert merged.learning_steps_minutes == [1, 10, 60]
    assert merged.leech_threshold == 8

    again = initialized_db_manager.update_deck_options(
        deck.id, {"bury_siblings": False}
    )
    assert again.new_per_day == 3
    assert again.bury_siblings is False
    assert initialized_db_manager.get_deck_options(deck.id) == again


def test_invalid_options_update_is_not_persisted(
    initialized_db_manager: SRSDatabase, deck
):
    with pytest.raises(ValidationError):
        initialized_db_manager.update_deck_options(
            deck.id, {"leech_threshold": 0}
        )
    assert initialized_db_manager.get_deck_options(deck.id).leech_threshold == 8


# --- Tags & cards ---


def test_tags_are_unique_and_listed_by_name(
    initialized_db_manager: SRSDatabase,
):
    initialized_db_manager.create_tag("tables")
    initialized_db_manager.create_tag(" chamber ")

    with pytest.raises(TagOperationError, match="already exists"):
        initialized_db_manager.create_tag("tables")

    assert [t.name for t in initialized_db_manager.list_tags()] == [
        "chamber",
        "tables",
    ]
    assert initialized_db_manager.get_tag_by_name("chamber ").name == "chamber"
    assert initialized_db_manager.get_tag_by_name("rigging") is None


def test_add_card_links_tags_once(initialized_db_manager: SRSDatabase, deck):
    tag = initialized_db_manager.create_tag("gas")
    card = initialized_db_manager.add_card(
        deck.id,
        "Max PO2 for working dive?",
        "1.4 ata",
        source_type="lesson",
        source_id="lesson-7",
        tag_ids=[tag.id, tag.id],
        created_at=T0,
    )

    assert initialized_db_manager.get_card(card.id) == card
    assert initialized_db_manager.get_card_tag_ids(card.id) == [tag.id]
    assert card.source_type == "lesson"
    assert card.created_at == card.updated_at == T0


def test_list_deck_cards_newest_first(
    initialized_db_manager: SRSDatabase, deck, make_cards
):
    cards = make_cards(deck.id, 3)
    listed = initialized_db_manager.list_deck_cards(deck.id)
    assert [c.id for c in listed] == [c.id for c in reversed(cards)]
    assert initialized_db_manager.list_deck_cards("other-deck") == []


def test_add_card_rejects_empty_front(
    initialized_db_manager: SRSDatabase, deck
):
    with pytest.raises(ValidationError):
        initialized_db_manager.add_card(deck.id, "", "back")


# --- Card state store ---


def test_missing_state_reads_as_new(initialized_db_manager: SRSDatabase):
    state = initialized_db_manager.get_card_state(USER, "card-x", now=T0)
    assert state == UserCardState.new(USER, "card-x", T0)
    assert not state.is_persisted


def test_save_card_state_increments_version(
    initialized_db_manager: SRSDatabase,
):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    nxt = prev.model_copy(
        update={
            "state": CardState.Review,
            "due_at": T0 + timedelta(days=1),
            "interval_days": 1.0,
            "reps": 1,
            "updated_at": T0,
        }
    )
    stored = initialized_db_manager.save_card_state(prev, nxt)
    assert stored.version == 1

    fetched = initialized_db_manager.get_card_state(USER, "card-1")
    assert fetched == stored

    later = fetched.model_copy(update={"reps": 2, "updated_at": T0})
    assert initialized_db_manager.save_card_state(fetched, later).version == 2


def test_concurrent_first_write_is_rejected(
    initialized_db_manager: SRSDatabase,
):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    nxt = prev.model_copy(update={"reps": 1, "updated_at": T0})
    initialized_db_manager.save_card_state(prev, nxt)

    with pytest.raises(StaleCardStateError):
        initialized_db_manager.save_card_state(prev, nxt)


def test_stale_version_update_is_rejected(initialized_db_manager: SRSDatabase):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    v1 = initialized_db_manager.save_card_state(
        prev, prev.model_copy(update={"reps": 1, "updated_at": T0})
    )
    initialized_db_manager.save_card_state(
        v1, v1.model_copy(update={"reps": 2})
    )

    with pytest.raises(StaleCardStateError):
        initialized_db_manager.save_card_state(
            v1, v1.model_copy(update={"lapses": 1})
        )
    current = initialized_db_manager.get_card_state(USER, "card-1")
    assert current.version == 2
    assert current.reps == 2
    assert current.lapses == 0


# --- Review event log ---


def _transition(prev: UserCardState):
    nxt = prev.model_copy(
        update={
            "state": CardState.Review,
            "due_at": T0 + timedelta(days=1),
            "interval_days": 1.0,
            "reps": prev.reps + 1,
            "last_reviewed_at": T0,
            "updated_at": T0,
        }
    )
    event = ReviewEvent.from_transition(
        deck_id="deck-1",
        grade=2,
        confidence=2,
        prev=prev,
        next_state=nxt,
        reviewed_at=T0,
    )
    return nxt, event


def test_record_review_appends_event(initialized_db_manager: SRSDatabase):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    nxt, _ = _transition(prev)

    event_id = initialized_db_manager.record_review(
        USER, "deck-1", "card-1", 7, 9, prev, nxt, reviewed_at=T0
    )

    events = initialized_db_manager.get_review_events(USER)
    assert [e.id for e in events] == [event_id]
    assert events[0].grade == 3
    assert events[0].confidence == 3
    assert events[0].prev_state == CardState.New
    assert events[0].next_state == CardState.Review
    assert events[0].next_due_at == T0 + timedelta(days=1)


def test_record_review_rejects_mismatched_snapshots(
    initialized_db_manager: SRSDatabase,
):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    nxt, _ = _transition(prev)
    with pytest.raises(ValueError):
        initialized_db_manager.record_review(
            "someone-else", "deck-1", "card-1", 2, None, prev, nxt
        )


def test_save_review_outcome_writes_state_and_event(
    initialized_db_manager: SRSDatabase,
):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    nxt, event = _transition(prev)

    stored = initialized_db_manager.save_review_outcome(prev, nxt, event)

    assert stored.version == 1
    assert initialized_db_manager.get_card_state(USER, "card-1") == stored
    assert initialized_db_manager.get_review_events(USER, card_id="card-1") == [
        event
    ]


def test_failed_event_append_rolls_back_state(
    initialized_db_manager: SRSDatabase,
):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    nxt, event = _transition(prev)
    stored = initialized_db_manager.save_review_outcome(prev, nxt, event)

    # Reusing the event id violates the log's primary key after the state
    # update has already run inside the transaction.
    nxt2, _ = _transition(stored)
    with pytest.raises(ReviewEventError):
        initialized_db_manager.save_review_outcome(stored, nxt2, event)

    assert initialized_db_manager.get_card_state(USER, "card-1") == stored
    assert len(initialized_db_manager.get_review_events(USER)) == 1


def test_failed_event_append_leaves_no_first_state(
    initialized_db_manager: SRSDatabase,
):
    prev = initialized_db_manager.get_card_state(USER, "card-1", now=T0)
    nxt, event = _transition(prev)

    with patch.object(
        SRSDatabase, "_insert_review_event", side_effect=RuntimeError("disk")
    ):
        with pytest.raises(ReviewEventError, match="disk"):
            initialized_db_manager.save_review_outcome(prev, nxt, event)

    assert not initialized_db_manager.get_card_state(USER, "card-1").is_persisted
    assert initialized_db_manager.get_review_events(USER) == []


def test_review_events_are_scoped_and_ordered(
    initialized_db_manager: SRSDatabase,
):
    for offset, card_id in [(2, "c2"), (0, "c0"), (1, "c1")]:
        prev = initialized_db_manager.get_card_state(USER, card_id, now=T0)
        nxt, _ = _transition(prev)
        initialized_db_manager.record_review(
            USER,
            "deck-1",
            card_id,
            2,
            None,
            prev,
            nxt,
            reviewed_at=T0 + timedelta(minutes=offset),
        )
    other = initialized_db_manager.get_card_state("other", "c9", now=T0)
    nxt, _ = _transition(other)
    initialized_db_manager.record_review(
        "other", "deck-1", "c9", 2, None, other, nxt
    )

    events = initialized_db_manager.get_review_events(USER)
    assert [e.card_id for e in events] == ["c0", "c1", "c2"]
    assert len(initialized_db_manager.get_review_events(USER, limit=2)) == 2


# --- Read-only mode ---


def test_read_only_database_rejects_writes(db_path_file: Path):
    with SRSDatabase(db_path_file) as db:
        deck = db.create_deck("Existing")

    with SRSDatabase(db_path_file, read_only=True) as ro_db:
        assert [d.id for d in ro_db.list_decks()] == [deck.id]
        # Defaults are returned without being written.
        assert ro_db.get_deck_options("unknown") == DeckOptions()
        with pytest.raises(DatabaseConnectionError, match="read-only"):
            ro_db.create_deck("Another")
        with pytest.raises(DatabaseConnectionError):
            ro_db.initialize_schema(force_recreate_tables=True)


def test_read_only_open_of_missing_file_fails(tmp_path: Path):
    db = SRSDatabase(tmp_path / "absent.db", read_only=True)
    with pytest.raises(DatabaseConnectionError, match="missing database"):
        db.get_connection()
    assert not (tmp_path / "absent.db").exists()
