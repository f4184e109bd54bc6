"""
DuckDB database interactions for srscore.
Implements the SRSDatabase facade over decks, deck options, cards, tags,
per-user card states and the append-only review event log.
"""

import duckdb
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Type,
    TypeVar,
    Union,
)

from ..config import settings
from ..constants import (
    ANALYTICS_WINDOW_DAYS,
    DEFAULT_CARD_SOURCE_TYPE,
    RECENT_REVIEWS_LIMIT,
)
from ..exceptions import (
    CardOperationError,
    CardStateOperationError,
    DatabaseConnectionError,
    DatabaseError,
    DeckOperationError,
    MarshallingError,
    ReviewEventError,
    StaleCardStateError,
    SyncError,
    TagOperationError,
)
from ..models import (
    Card,
    Deck,
    DeckOptions,
    DeckOptionsUpdate,
    Grade,
    QueueItem,
    ReviewEvent,
    SyncPage,
    Tag,
    UserCardState,
    clamp_confidence,
    ensure_utc,
    utc_now,
)
from . import db_utils
from .connection import ConnectionHandler
from .schema_manager import SchemaManager

# --- Logging Setup ---
logger = logging.getLogger(__name__)

T = TypeVar("T")

# --- Helper Functions ---


def _rows_to_dicts(cursor: duckdb.DuckDBPyConnection) -> List[Dict[str, Any]]:
    """Convert cursor results to list of dictionaries using column names."""
    rows = cursor.fetchall()
    if not rows:
        return []
    description = cursor.description
    if description is None:
        return []
    columns = [desc[0] for desc in description]
    return [dict(zip(columns, row, strict=True)) for row in rows]


class SRSDatabase:
    """
    Acts as a Facade for the database subsystem, providing a simple, high-level
    interface for all scheduling data operations.

    It coordinates the ConnectionHandler, SchemaManager, and data marshalling
    utilities. Intended for use as a context manager.
    """

    def __init__(self, db_path: Union[str, Path], read_only: bool = False):
        """
        Create an SRSDatabase backed by the given DuckDB path.

        Args:
            db_path (str | Path): Path to the database file. Use ':memory:' for an in-memory database.
            read_only (bool): If True, open the database in read-only mode.
        """
        self._handler = ConnectionHandler(db_path=db_path, read_only=read_only)
        self._schema_manager = SchemaManager(self._handler)
        logger.info(
            f"SRSDatabase initialized for DB at: {self._handler.db_path_resolved}"  # noqa: E501
        )

    @property
    def db_path_resolved(self) -> Path:
        return self._handler.db_path_resolved

    @property
    def read_only(self) -> bool:
        return self._handler.read_only

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        return self._handler.get_connection()

    def close_connection(self) -> None:
        self._handler.close_connection()

    def __enter__(self) -> "SRSDatabase":
        """
        Open the database connection and initialize the schema if a new writable database was created.
        """
        self.get_connection()
        if self._handler.is_new_db and not self._handler.read_only:
            self.initialize_schema()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Ensures the connection is closed on exiting the context."""
        self.close_connection()

    def initialize_schema(self, force_recreate_tables: bool = False) -> None:
        """
        Ensure the database schema is created; optionally recreate tables.
        """
        self._schema_manager.initialize_schema(
            force_recreate_tables=force_recreate_tables
        )

    # --- Transaction & query helpers ---

    def _execute_write_transaction(
        self,
        work: Callable[[duckdb.DuckDBPyConnection], T],
        error_cls: Type[DatabaseError],
        description: str,
    ) -> T:
        """
        Run `work` inside a single transaction on a dedicated cursor.

        Everything `work` writes is committed together or rolled back
        together. A DatabaseError raised by `work` propagates unchanged; any
        other failure is wrapped in `error_cls`. Write-write conflicts
        reported by DuckDB surface as StaleCardStateError.
        """
        if self.read_only:
            raise DatabaseConnectionError(
                f"Cannot {description} in read-only mode."
            )
        try:
            with self._handler.transaction() as cursor:
                return work(cursor)
        except DatabaseError:
            raise
        except duckdb.TransactionException as e:
            logger.error(f"Write conflict during {description}: {e}")
            raise StaleCardStateError(
                f"Concurrent write conflict during {description}: {e}",
                original_exception=e,
            ) from e
        except Exception as e:
            logger.error(f"Error during {description}: {e}")
            raise error_cls(
                f"Failed to {description}: {e}", original_exception=e
            ) from e

    def _fetch_dicts(
        self,
        sql: str,
        params: Sequence[Any],
        error_cls: Type[DatabaseError],
        description: str,
    ) -> List[Dict[str, Any]]:
        """
        Run a read on its own cursor and return the rows as dicts.

        The shared connection is never executed on directly, so concurrent
        readers cannot pick up each other's result sets.
        """
        try:
            with self.get_connection().cursor() as cursor:
                cursor.execute(sql, list(params))
                return _rows_to_dicts(cursor)
        except duckdb.Error as e:
            logger.error(f"Error fetching {description}: {e}")
            raise error_cls(
                f"Failed to fetch {description}: {e}", original_exception=e
            ) from e

    def _marshal(
        self,
        rows: Iterable[Dict[str, Any]],
        converter: Callable[[Dict[str, Any]], T],
        error_cls: Type[DatabaseError],
        description: str,
    ) -> List[T]:
        try:
            return [converter(row) for row in rows]
        except MarshallingError as e:
            raise error_cls(
                f"Failed to parse {description} from database.",
                original_exception=e,
            ) from e

    # --- Deck Operations ---

    _INSERT_DEFAULT_OPTIONS_SQL = """
        INSERT INTO deck_options (deck_id, new_per_day, reviews_per_day,
                                  learning_steps_minutes, relearn_steps_minutes,
                                  leech_threshold, bury_siblings, updated_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        ON CONFLICT (deck_id) DO NOTHING;
        """

    _UPSERT_OPTIONS_SQL = """
        INSERT INTO deck_options (deck_id, new_per_day, reviews_per_day,
                                  learning_steps_minutes, relearn_steps_minutes,
                                  leech_threshold, bury_siblings, updated_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        ON CONFLICT (deck_id) DO UPDATE SET
            new_per_day = EXCLUDED.new_per_day,
            reviews_per_day = EXCLUDED.reviews_per_day,
            learning_steps_minutes = EXCLUDED.learning_steps_minutes,
            relearn_steps_minutes = EXCLUDED.relearn_steps_minutes,
            leech_threshold = EXCLUDED.leech_threshold,
            bury_siblings = EXCLUDED.bury_siblings,
            updated_at = EXCLUDED.updated_at;
        """

    def create_deck(
        self,
        title: str,
        description: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Deck:
        """
        Create a deck and its default options row in one transaction.

        Raises:
            pydantic.ValidationError: If the title is empty.
            DeckOperationError: If the insert fails.
        """
        deck = Deck(
            title=title,
            description=description,
            created_at=created_at or utc_now(),
        )

        def work(cursor):
            cursor.execute(
                "INSERT INTO decks (id, title, description, created_at) "
                "VALUES ($1, $2, $3, $4);",
                db_utils.deck_to_db_params_tuple(deck),
            )
            cursor.execute(
                self._INSERT_DEFAULT_OPTIONS_SQL,
                db_utils.deck_options_to_db_params_tuple(
                    deck.id, DeckOptions(), deck.created_at
                ),
            )
            return deck

        created = self._execute_write_transaction(
            work, DeckOperationError, "create deck"
        )
        logger.info(f"Created deck {created.id} ('{created.title}').")
        return created

    def get_deck(self, deck_id: str) -> Optional[Deck]:
        rows = self._fetch_dicts(
            "SELECT * FROM decks WHERE id = $1;",
            (deck_id,),
            DeckOperationError,
            f"deck {deck_id}",
        )
        if not rows:
            return None
        return self._marshal(
            rows, db_utils.db_row_to_deck, DeckOperationError, "deck"
        )[0]

    def list_decks(self) -> List[Deck]:
        """Return all decks, newest first."""
        rows = self._fetch_dicts(
            "SELECT * FROM decks ORDER BY created_at DESC, id;",
            (),
            DeckOperationError,
            "decks",
        )
        return self._marshal(
            rows, db_utils.db_row_to_deck, DeckOperationError, "decks"
        )

    # --- Deck Options Operations ---

    def get_deck_options(self, deck_id: str) -> DeckOptions:
        """
        Resolve the scheduling options for a deck, creating the default row
        on first access.

        The insert is an insert-if-absent, so concurrent first reads agree on
        one row. The deck itself is not required to exist. On a read-only
        database the defaults are returned without being stored.

        Raises:
            DeckOperationError: If the options cannot be read or created.
        """
        rows = self._fetch_options_rows(deck_id)
        if not rows and not self.read_only:
            self._insert_default_options(deck_id)
            rows = self._fetch_options_rows(deck_id)

        if not rows:
            return DeckOptions()
        return self._marshal(
            rows,
            db_utils.db_row_to_deck_options,
            DeckOperationError,
            "deck options",
        )[0]

    def _fetch_options_rows(self, deck_id: str) -> List[Dict[str, Any]]:
        return self._fetch_dicts(
            "SELECT * FROM deck_options WHERE deck_id = $1;",
            (deck_id,),
            DeckOperationError,
            f"options for deck {deck_id}",
        )

    def _insert_default_options(self, deck_id: str) -> None:
        params = db_utils.deck_options_to_db_params_tuple(
            deck_id, DeckOptions(), utc_now()
        )
        try:
            with self._handler.transaction() as cursor:
                cursor.execute(self._INSERT_DEFAULT_OPTIONS_SQL, params)
        except (duckdb.ConstraintException, duckdb.TransactionException) as e:
            # Another writer created the row first; the re-read picks it up.
            logger.debug(f"Default options for deck {deck_id} raced: {e}")
        except duckdb.Error as e:
            logger.error(f"Error creating options for deck {deck_id}: {e}")
            raise DeckOperationError(
                f"Failed to resolve deck options: {e}", original_exception=e
            ) from e

    def update_deck_options(
        self,
        deck_id: str,
        update: Union[DeckOptionsUpdate, Dict[str, Any]],
    ) -> DeckOptions:
        """
        Merge `update` over the deck's current options and persist the result.

        Fields absent from `update` keep their current values.

        Returns:
            DeckOptions: The merged options.

        Raises:
            pydantic.ValidationError: If the merged options are invalid.
            DeckOperationError: If the options cannot be stored.
        """
        if not isinstance(update, DeckOptionsUpdate):
            update = DeckOptionsUpdate(**update)

        current = self.get_deck_options(deck_id)
        merged = update.apply_to(current)

        def work(cursor):
            cursor.execute(
                self._UPSERT_OPTIONS_SQL,
                db_utils.deck_options_to_db_params_tuple(
                    deck_id, merged, utc_now()
                ),
            )
            return merged

        result = self._execute_write_transaction(
            work, DeckOperationError, "update deck options"
        )
        logger.info(f"Updated options for deck {deck_id}: {result}")
        return result

    # --- Card Operations ---

    def add_card(
        self,
        deck_id: str,
        front: str,
        back: str,
        source_type: str = DEFAULT_CARD_SOURCE_TYPE,
        source_id: Optional[str] = None,
        tag_ids: Optional[Sequence[str]] = None,
        created_at: Optional[datetime] = None,
    ) -> Card:
        """
        Insert a card and link it to the given tags.

        Tag links are insert-or-ignore; duplicate tag ids are harmless.

        Raises:
            pydantic.ValidationError: If front/back are empty.
            CardOperationError: If the insert fails.
        """
        ts = created_at or utc_now()
        card = Card(
            deck_id=deck_id,
            front=front,
            back=back,
            source_type=source_type,
            source_id=source_id,
            created_at=ts,
            updated_at=ts,
        )
        unique_tag_ids = list(dict.fromkeys(tag_ids or []))

        def work(cursor):
            cursor.execute(
                """
                INSERT INTO cards (id, deck_id, front, back, source_type,
                                   source_id, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8);
                """,
                db_utils.card_to_db_params_tuple(card),
            )
            for tag_id in unique_tag_ids:
                cursor.execute(
                    "INSERT INTO card_tags (card_id, tag_id) VALUES ($1, $2) "
                    "ON CONFLICT DO NOTHING;",
                    (card.id, tag_id),
                )
            return card

        created = self._execute_write_transaction(
            work, CardOperationError, "add card"
        )
        logger.debug(
            f"Added card {created.id} to deck {deck_id} with {len(unique_tag_ids)} tags."  # noqa: E501
        )
        return created

    def get_card(self, card_id: str) -> Optional[Card]:
        rows = self._fetch_dicts(
            "SELECT * FROM cards WHERE id = $1;",
            (card_id,),
            CardOperationError,
            f"card {card_id}",
        )
        if not rows:
            return None
        return self._marshal(
            rows, db_utils.db_row_to_card, CardOperationError, "card"
        )[0]

    def list_deck_cards(self, deck_id: str) -> List[Card]:
        """Return the cards of a deck, newest first."""
        rows = self._fetch_dicts(
            "SELECT * FROM cards WHERE deck_id = $1 "
            "ORDER BY created_at DESC, id;",
            (deck_id,),
            CardOperationError,
            f"cards for deck {deck_id}",
        )
        return self._marshal(
            rows, db_utils.db_row_to_card, CardOperationError, "cards"
        )

    def get_card_tag_ids(self, card_id: str) -> List[str]:
        rows = self._fetch_dicts(
            "SELECT tag_id FROM card_tags WHERE card_id = $1 ORDER BY tag_id;",
            (card_id,),
            CardOperationError,
            f"tags of card {card_id}",
        )
        return [row["tag_id"] for row in rows]

    # --- Tag Operations ---

    def create_tag(self, name: str, created_at: Optional[datetime] = None) -> Tag:
        """
        Create a tag. Names are trimmed and must be unique.

        Raises:
            pydantic.ValidationError: If the name is empty or too long.
            TagOperationError: If the name is taken or the insert fails.
        """
        tag = Tag(name=name, created_at=created_at or utc_now())

        def work(cursor):
            try:
                cursor.execute(
                    "INSERT INTO tags (id, name, created_at) VALUES ($1, $2, $3);",  # noqa: E501
                    (tag.id, tag.name, db_utils.to_epoch_ms(tag.created_at)),
                )
            except duckdb.ConstraintException as e:
                raise TagOperationError(
                    f"Tag '{tag.name}' already exists.", original_exception=e
                ) from e
            return tag

        return self._execute_write_transaction(
            work, TagOperationError, "create tag"
        )

    def list_tags(self) -> List[Tag]:
        rows = self._fetch_dicts(
            "SELECT * FROM tags ORDER BY name ASC;",
            (),
            TagOperationError,
            "tags",
        )
        return self._marshal(
            rows, db_utils.db_row_to_tag, TagOperationError, "tags"
        )

    def get_tag_by_name(self, name: str) -> Optional[Tag]:
        rows = self._fetch_dicts(
            "SELECT * FROM tags WHERE name = $1;",
            (name.strip(),),
            TagOperationError,
            f"tag '{name}'",
        )
        if not rows:
            return None
        return self._marshal(
            rows, db_utils.db_row_to_tag, TagOperationError, "tag"
        )[0]

    # --- Card State Operations ---

    _INSERT_STATE_SQL = """
        INSERT INTO card_states (user_id, card_id, state, due_at, interval_days,
                                 ease, reps, lapses, suspended,
                                 last_reviewed_at, updated_at, version)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12);
        """

    _UPDATE_STATE_SQL = """
        UPDATE card_states
        SET state = $3, due_at = $4, interval_days = $5, ease = $6, reps = $7,
            lapses = $8, suspended = $9, last_reviewed_at = $10,
            updated_at = $11, version = $12
        WHERE user_id = $1 AND card_id = $2 AND version = $13
        RETURNING version;
        """

    def get_card_state(
        self,
        user_id: str,
        card_id: str,
        now: Optional[datetime] = None,
    ) -> UserCardState:
        """
        Fetch the user's scheduling state for a card.

        A card the user has never reviewed has no row; it is returned as
        `UserCardState.new(...)` due at `now`, with `version` 0.

        Raises:
            CardStateOperationError: If the state cannot be read or parsed.
        """
        rows = self._fetch_dicts(
            "SELECT * FROM card_states WHERE user_id = $1 AND card_id = $2;",
            (user_id, card_id),
            CardStateOperationError,
            f"state of card {card_id} for user {user_id}",
        )
        if not rows:
            return UserCardState.new(user_id, card_id, now or utc_now())
        return self._marshal(
            rows,
            db_utils.db_row_to_card_state,
            CardStateOperationError,
            "card state",
        )[0]

    def _write_card_state(
        self, cursor, prev: UserCardState, next_state: UserCardState
    ) -> UserCardState:
        """
        Compare-and-swap the state row from `prev` to `next_state`.

        The write only succeeds if the stored row still has `prev.version`
        (or, for a first write, if no row exists yet).

        Raises:
            StaleCardStateError: If another writer got there first.
        """
        if (prev.user_id, prev.card_id) != (
            next_state.user_id,
            next_state.card_id,
        ):
            raise CardStateOperationError(
                "Previous and next state refer to different (user, card) keys."
            )

        stored = next_state.model_copy(
            update={
                "version": prev.version + 1,
                "updated_at": next_state.updated_at or utc_now(),
            }
        )
        params = db_utils.card_state_to_db_params_tuple(stored)

        if not prev.is_persisted:
            try:
                cursor.execute(self._INSERT_STATE_SQL, params)
            except duckdb.ConstraintException as e:
                raise StaleCardStateError(
                    f"State for card {prev.card_id} and user {prev.user_id} "
                    "was created concurrently.",
                    original_exception=e,
                ) from e
            return stored

        cursor.execute(self._UPDATE_STATE_SQL, params + (prev.version,))
        if cursor.fetchone() is None:
            raise StaleCardStateError(
                f"State for card {prev.card_id} and user {prev.user_id} "
                f"changed since version {prev.version}."
            )
        return stored

    def save_card_state(
        self, prev: UserCardState, next_state: UserCardState
    ) -> UserCardState:
        """
        Persist `next_state` on its own, guarded by `prev.version`.

        Returns:
            UserCardState: The stored state with its new version.
        """
        return self._execute_write_transaction(
            lambda cursor: self._write_card_state(cursor, prev, next_state),
            CardStateOperationError,
            "save card state",
        )

    # --- Review Event Operations ---

    _INSERT_EVENT_SQL = """
        INSERT INTO review_events (id, user_id, deck_id, card_id, grade,
                                   confidence, reviewed_at, prev_state,
                                   next_state, prev_due_at, next_due_at,
                                   prev_interval_days, next_interval_days,
                                   prev_ease, next_ease, created_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                $15, $16);
        """

    def _insert_review_event(self, cursor, event: ReviewEvent) -> str:
        try:
            params = db_utils.review_event_to_db_params_tuple(event)
        except MarshallingError as e:
            raise ReviewEventError(
                "Failed to prepare review event for database operation.",
                original_exception=e,
            ) from e
        cursor.execute(self._INSERT_EVENT_SQL, params)
        return event.id

    def append_review_event(self, event: ReviewEvent) -> str:
        """Append one event to the log. The log is insert-only."""
        return self._execute_write_transaction(
            lambda cursor: self._insert_review_event(cursor, event),
            ReviewEventError,
            "append review event",
        )

    def record_review(
        self,
        user_id: str,
        deck_id: str,
        card_id: str,
        grade: int,
        confidence: Optional[int],
        prev_state: UserCardState,
        next_state: UserCardState,
        reviewed_at: Optional[datetime] = None,
    ) -> str:
        """
        Append an immutable event capturing the before/after of a review.

        Returns:
            str: The new event id.

        Raises:
            ValueError: If the snapshots belong to a different user or card.
            ReviewEventError: If the event cannot be stored.
        """
        if prev_state.user_id != user_id or prev_state.card_id != card_id:
            raise ValueError(
                "State snapshots do not belong to the reviewed user and card."
            )
        event = ReviewEvent.from_transition(
            deck_id=deck_id,
            grade=int(Grade.clamp(grade)),
            confidence=clamp_confidence(confidence),
            prev=prev_state,
            next_state=next_state,
            reviewed_at=reviewed_at
            or next_state.last_reviewed_at
            or utc_now(),
        )
        return self.append_review_event(event)

    def save_review_outcome(
        self,
        prev: UserCardState,
        next_state: UserCardState,
        event: ReviewEvent,
    ) -> UserCardState:
        """
        Atomically write the new card state and append its review event.

        Either both the state update and the event insert are committed, or
        neither is.

        Returns:
            UserCardState: The stored state with its new version.

        Raises:
            StaleCardStateError: If the state changed since `prev` was read.
            DatabaseConnectionError: If the database is read-only.
            ReviewEventError: If the transaction fails for another reason.
        """

        def work(cursor):
            stored = self._write_card_state(cursor, prev, next_state)
            self._insert_review_event(cursor, event)
            return stored

        return self._execute_write_transaction(
            work, ReviewEventError, "save review outcome"
        )

    def get_review_events(
        self,
        user_id: str,
        card_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ReviewEvent]:
        """Return a user's review events oldest first, optionally for one card."""
        sql = "SELECT * FROM review_events WHERE user_id = $1"
        params: List[Any] = [user_id]
        if card_id is not None:
            params.append(card_id)
            sql += f" AND card_id = ${len(params)}"
        sql += " ORDER BY reviewed_at ASC, id ASC"
        if limit is not None:
            params.append(limit)
            sql += f" LIMIT ${len(params)}"
        rows = self._fetch_dicts(
            sql, params, ReviewEventError, f"review events for user {user_id}"
        )
        return self._marshal(
            rows,
            db_utils.db_row_to_review_event,
            ReviewEventError,
            "review events",
        )

    # --- Queue Queries ---

    def get_due_card_items(
        self, user_id: str, deck_id: str, now: datetime, limit: int
    ) -> List[QueueItem]:
        """
        Cards of the deck with a stored, non-suspended state due at or
        before `now`, earliest due first.
        """
        if limit <= 0:
            return []
        sql = """
            SELECT c.id AS card_id, c.deck_id, c.front, c.back,
                   s.state, s.due_at, s.interval_days, s.ease, s.reps,
                   s.lapses, s.suspended
            FROM cards c
            INNER JOIN card_states s ON s.card_id = c.id AND s.user_id = $1
            WHERE c.deck_id = $2
              AND s.suspended = FALSE
              AND s.due_at <= $3
            ORDER BY s.due_at ASC, c.created_at ASC, c.id ASC
            LIMIT $4;
            """
        rows = self._fetch_dicts(
            sql,
            (user_id, deck_id, db_utils.to_epoch_ms(now), limit),
            CardStateOperationError,
            f"due cards for deck {deck_id}",
        )
        return self._marshal(
            rows,
            db_utils.db_row_to_queue_item,
            CardStateOperationError,
            "due cards",
        )

    def get_new_card_items(
        self, user_id: str, deck_id: str, now: datetime, limit: int
    ) -> List[QueueItem]:
        """
        Cards of the deck the user has never reviewed, oldest first.
        """
        if limit <= 0:
            return []
        sql = """
            SELECT c.id AS card_id, c.deck_id, c.front, c.back,
                   'new' AS state, CAST($3 AS BIGINT) AS due_at
            FROM cards c
            LEFT JOIN card_states s ON s.card_id = c.id AND s.user_id = $1
            WHERE c.deck_id = $2
              AND s.card_id IS NULL
            ORDER BY c.created_at ASC, c.id ASC
            LIMIT $4;
            """
        rows = self._fetch_dicts(
            sql,
            (user_id, deck_id, db_utils.to_epoch_ms(now), limit),
            CardStateOperationError,
            f"new cards for deck {deck_id}",
        )
        return self._marshal(
            rows,
            db_utils.db_row_to_queue_item,
            CardStateOperationError,
            "new cards",
        )

    def get_filtered_card_items(
        self,
        user_id: str,
        deck_id: str,
        now: datetime,
        limit: int,
        tag_id: Optional[str] = None,
        due_only: bool = False,
    ) -> List[QueueItem]:
        """
        Non-suspended cards of the deck, seen or unseen, optionally limited
        to one tag and/or to cards due by `now`. Unseen cards sort as if due
        at `now`; ties break on card creation time.
        """
        if limit <= 0:
            return []
        params: List[Any] = [user_id, deck_id, db_utils.to_epoch_ms(now), limit]
        tag_join = ""
        if tag_id is not None:
            params.append(tag_id)
            tag_join = (
                "INNER JOIN card_tags ct "
                f"ON ct.card_id = c.id AND ct.tag_id = ${len(params)}"
            )
        due_clause = "AND COALESCE(s.due_at, $3) <= $3" if due_only else ""
        sql = f"""
            SELECT c.id AS card_id, c.deck_id, c.front, c.back,
                   COALESCE(s.state, 'new') AS state,
                   COALESCE(s.due_at, $3) AS due_at,
                   s.interval_days, s.ease, s.reps, s.lapses,
                   COALESCE(s.suspended, FALSE) AS suspended
            FROM cards c
            LEFT JOIN card_states s ON s.card_id = c.id AND s.user_id = $1
            {tag_join}
            WHERE c.deck_id = $2
              AND COALESCE(s.suspended, FALSE) = FALSE
              {due_clause}
            ORDER BY COALESCE(s.due_at, $3) ASC, c.created_at ASC, c.id ASC
            LIMIT $4;
            """
        rows = self._fetch_dicts(
            sql,
            params,
            CardStateOperationError,
            f"filtered cards for deck {deck_id}",
        )
        return self._marshal(
            rows,
            db_utils.db_row_to_queue_item,
            CardStateOperationError,
            "filtered cards",
        )

    # --- Sync ---

    def sync_pull(
        self,
        user_id: str,
        since: int = 0,
        event_limit: Optional[int] = None,
        state_limit: Optional[int] = None,
    ) -> SyncPage:
        """
        Return the user's review events and card states written after the
        `since` cursor (epoch milliseconds), each capped at a page size.

        `next_cursor` is the largest timestamp seen across both streams, or
        `since` when nothing new exists. Ordering is deterministic so
        repeated pulls with the same cursor return the same page. When one
        stream's page is truncated below the other's latest timestamp, the
        rows it cut off fall behind the returned cursor.

        Raises:
            SyncError: If either query fails.
        """
        since = max(0, int(since))
        event_limit = event_limit or settings.sync_event_page_size
        state_limit = state_limit or settings.sync_state_page_size

        event_rows = self._fetch_dicts(
            """
            SELECT * FROM review_events
            WHERE user_id = $1 AND reviewed_at > $2
            ORDER BY reviewed_at ASC, id ASC
            LIMIT $3;
            """,
            (user_id, since, event_limit),
            SyncError,
            f"sync events for user {user_id}",
        )
        state_rows = self._fetch_dicts(
            """
            SELECT * FROM card_states
            WHERE user_id = $1 AND updated_at > $2
            ORDER BY updated_at ASC, card_id ASC
            LIMIT $3;
            """,
            (user_id, since, state_limit),
            SyncError,
            f"sync states for user {user_id}",
        )

        next_cursor = max(
            [since]
            + [int(row["reviewed_at"]) for row in event_rows]
            + [int(row["updated_at"]) for row in state_rows]
        )
        events = self._marshal(
            event_rows, db_utils.db_row_to_review_event, SyncError, "events"
        )
        states = self._marshal(
            state_rows, db_utils.db_row_to_card_state, SyncError, "states"
        )
        logger.debug(
            f"Sync pull for {user_id} since {since}: {len(events)} events, "
            f"{len(states)} states, next cursor {next_cursor}."
        )
        return SyncPage(
            since=since, next_cursor=next_cursor, events=events, states=states
        )

    # --- Analytics ---

    def get_review_analytics(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Retrieve per-deck scheduling totals and recent review activity for a user.

        Returns:
            dict: A dictionary with the following keys:
                - now (datetime): The reference time used.
                - decks (List[dict]): Per deck, newest first: deck_id, title,
                  total_cards, suspended_cards, due_now.
                - recent_reviews (List[dict]): Latest review events: id,
                  deck_id, deck_title, card_id, grade, reviewed_at.
                - weekly_summary (List[dict]): Per deck over the last 7 days:
                  deck_id, reviews_7d, passes_7d (grade >= Good).
        """
        now = ensure_utc(now or utc_now())
        now_ms = db_utils.to_epoch_ms(now)
        window_start_ms = db_utils.to_epoch_ms(
            now - timedelta(days=ANALYTICS_WINDOW_DAYS)
        )

        deck_rows = self._fetch_dicts(
            """
            SELECT d.id AS deck_id, d.title,
                   COUNT(DISTINCT c.id) AS total_cards,
                   COALESCE(SUM(CASE WHEN s.suspended THEN 1 ELSE 0 END), 0)
                       AS suspended_cards,
                   COALESCE(SUM(CASE WHEN s.suspended = FALSE
                                      AND s.due_at <= $2
                                     THEN 1 ELSE 0 END), 0) AS due_now
            FROM decks d
            LEFT JOIN cards c ON c.deck_id = d.id
            LEFT JOIN card_states s ON s.card_id = c.id AND s.user_id = $1
            GROUP BY d.id, d.title, d.created_at
            ORDER BY d.created_at DESC, d.id;
            """,
            (user_id, now_ms),
            ReviewEventError,
            "deck analytics",
        )
        recent_rows = self._fetch_dicts(
            """
            SELECT e.id, e.deck_id, d.title AS deck_title, e.card_id,
                   e.grade, e.reviewed_at
            FROM review_events e
            LEFT JOIN decks d ON d.id = e.deck_id
            WHERE e.user_id = $1
            ORDER BY e.reviewed_at DESC, e.id DESC
            LIMIT $2;
            """,
            (user_id, RECENT_REVIEWS_LIMIT),
            ReviewEventError,
            "recent reviews",
        )
        window_rows = self._fetch_dicts(
            """
            SELECT deck_id, COUNT(*) AS reviews,
                   SUM(CASE WHEN grade >= $3 THEN 1 ELSE 0 END) AS passes
            FROM review_events
            WHERE user_id = $1 AND reviewed_at >= $2
            GROUP BY deck_id
            ORDER BY deck_id;
            """,
            (user_id, window_start_ms, int(Grade.Good)),
            ReviewEventError,
            "review window stats",
        )

        return {
            "now": now,
            "decks": [
                {
                    "deck_id": row["deck_id"],
                    "title": row["title"],
                    "total_cards": int(row["total_cards"]),
                    "suspended_cards": int(row["suspended_cards"]),
                    "due_now": int(row["due_now"]),
                }
                for row in deck_rows
            ],
            "recent_reviews": [
                {**row, "reviewed_at": db_utils.from_epoch_ms(row["reviewed_at"])}  # noqa: E501
                for row in recent_rows
            ],
            "weekly_summary": [
                {
                    "deck_id": row["deck_id"],
                    "reviews_7d": int(row["reviews"]),
                    "passes_7d": int(row["passes"] or 0),
                }
                for row in window_rows
            ],
        }
