import pytest
from pathlib import Path
from typing import Callable, Generator, List
from datetime import datetime, timedelta, timezone

from srscore.config import settings
from srscore.db import SRSDatabase
from srscore.models import Card, CardState, Deck, UserCardState

UTC = timezone.utc
T0 = datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
USER = "diver-1"


@pytest.fixture(autouse=True)
def testing_mode(monkeypatch):
    """Run every test with the data-loss guard on schema recreation disabled."""
    monkeypatch.setattr(settings, "testing_mode", True)


# --- Database Fixtures ---
@pytest.fixture
def db_path_memory() -> str:
    return ":memory:"


@pytest.fixture
def db_path_file(tmp_path: Path) -> Path:
    """
    Provide the filesystem path for a temporary test database file.

    Returns:
        Path: Path to the file named "test_srs.db" inside `tmp_path`.
    """
    return tmp_path / "test_srs.db"


@pytest.fixture(params=["memory", "file"])
def db_manager(
    request, db_path_memory: str, db_path_file: Path
) -> Generator[SRSDatabase, None, None]:
    """
    Provide an SRSDatabase instance, either in-memory or file-backed, and
    close it on teardown.
    """
    if request.param == "memory":
        db_man = SRSDatabase(db_path_memory)
    else:
        db_man = SRSDatabase(db_path_file)
    try:
        yield db_man
    finally:
        db_man.close_connection()


@pytest.fixture
def initialized_db_manager(db_manager: SRSDatabase) -> SRSDatabase:
    """Ensure the database has its schema created and return it."""
    db_manager.initialize_schema()
    return db_manager


@pytest.fixture
def now() -> datetime:
    return T0


@pytest.fixture
def deck(initialized_db_manager: SRSDatabase) -> Deck:
    """A deck created a day before T0 with default options."""
    return initialized_db_manager.create_deck(
        title="Surface-Supplied Diving",
        description="Air diving procedures",
        created_at=T0 - timedelta(days=1),
    )


@pytest.fixture
def make_cards(
    initialized_db_manager: SRSDatabase,
) -> Callable[..., List[Card]]:
    """
    Factory adding `count` cards to a deck with strictly increasing
    creation times, one minute apart, starting `start` (default T0 - 1h).
    """

    def _make(
        deck_id: str,
        count: int,
        prefix: str = "Q",
        start: datetime = T0 - timedelta(hours=1),
        tag_ids=None,
    ) -> List[Card]:
        return [
            initialized_db_manager.add_card(
                deck_id=deck_id,
                front=f"{prefix}{i}",
                back=f"A{i}",
                tag_ids=tag_ids,
                created_at=start + timedelta(minutes=i),
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture
def persist_state(
    initialized_db_manager: SRSDatabase,
) -> Callable[..., UserCardState]:
    """
    Factory writing a card state directly, bypassing the scheduler.

    Defaults to a review-state card due at `due_at`.
    """

    def _persist(
        user_id: str,
        card_id: str,
        due_at: datetime,
        **fields,
    ) -> UserCardState:
        prev = initialized_db_manager.get_card_state(user_id, card_id, now=T0)
        values = {
            "state": CardState.Review,
            "due_at": due_at,
            "interval_days": 3.0,
            "reps": 3,
            "updated_at": T0,
        }
        values.update(fields)
        next_state = prev.model_copy(update=values)
        return initialized_db_manager.save_card_state(prev, next_state)

    return _persist
