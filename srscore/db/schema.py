"""
Defines the database schema for srscore using a SQL string constant.
This keeps the schema definition separate from the database connection and
operation logic.

All timestamps are stored as epoch milliseconds (BIGINT, UTC).
"""

DB_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS decks (
        id VARCHAR PRIMARY KEY,
        title VARCHAR NOT NULL,
        description VARCHAR,
        created_at BIGINT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS deck_options (
        deck_id VARCHAR PRIMARY KEY,
        new_per_day INTEGER NOT NULL DEFAULT 10,
        reviews_per_day INTEGER NOT NULL DEFAULT 50,
        learning_steps_minutes INTEGER[] NOT NULL,
        relearn_steps_minutes INTEGER[] NOT NULL,
        leech_threshold INTEGER NOT NULL DEFAULT 8,
        bury_siblings BOOLEAN NOT NULL DEFAULT TRUE,
        updated_at BIGINT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS cards (
        id VARCHAR PRIMARY KEY,
        deck_id VARCHAR NOT NULL,
        front VARCHAR NOT NULL,
        back VARCHAR NOT NULL,
        source_type VARCHAR NOT NULL DEFAULT 'manual',
        source_id VARCHAR,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS tags (
        id VARCHAR PRIMARY KEY,
        name VARCHAR NOT NULL UNIQUE,
        created_at BIGINT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS card_tags (
        card_id VARCHAR NOT NULL,
        tag_id VARCHAR NOT NULL,
        PRIMARY KEY (card_id, tag_id)
    );

    CREATE TABLE IF NOT EXISTS card_states (
        user_id VARCHAR NOT NULL,
        card_id VARCHAR NOT NULL,
        state VARCHAR NOT NULL,
        due_at BIGINT NOT NULL,
        interval_days DOUBLE NOT NULL,
        ease DOUBLE NOT NULL,
        reps INTEGER NOT NULL,
        lapses INTEGER NOT NULL,
        suspended BOOLEAN NOT NULL DEFAULT FALSE,
        last_reviewed_at BIGINT,
        updated_at BIGINT NOT NULL,
        version INTEGER NOT NULL,
        PRIMARY KEY (user_id, card_id)
    );

    CREATE TABLE IF NOT EXISTS review_events (
        id VARCHAR PRIMARY KEY,
        user_id VARCHAR NOT NULL,
        deck_id VARCHAR NOT NULL,
        card_id VARCHAR NOT NULL,
        grade INTEGER NOT NULL CHECK (grade >= 0 AND grade <= 3),
        confidence INTEGER CHECK (confidence >= 0 AND confidence <= 3),
        reviewed_at BIGINT NOT NULL,
        prev_state VARCHAR NOT NULL,
        next_state VARCHAR NOT NULL,
        prev_due_at BIGINT NOT NULL,
        next_due_at BIGINT NOT NULL,
        prev_interval_days DOUBLE NOT NULL,
        next_interval_days DOUBLE NOT NULL,
        prev_ease DOUBLE NOT NULL,
        next_ease DOUBLE NOT NULL,
        created_at BIGINT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_cards_deck_id ON cards (deck_id);
    CREATE INDEX IF NOT EXISTS idx_card_tags_tag_id ON card_tags (tag_id);
    CREATE INDEX IF NOT EXISTS idx_review_events_user_time ON review_events (user_id, reviewed_at);
"""

TABLE_NAMES = (
    "review_events",
    "card_states",
    "card_tags",
    "tags",
    "cards",
    "deck_options",
    "decks",
)
