"""
Utility functions for data marshalling between Pydantic models and database formats.
This module helps decouple the core database logic from the specifics of data conversion.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from ..exceptions import MarshallingError
from ..models import (
    Card,
    CardState,
    Deck,
    DeckOptions,
    QueueItem,
    ReviewEvent,
    Tag,
    UserCardState,
    ensure_utc,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(ts: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to integer epoch milliseconds (naive means UTC)."""
    if ts is None:
        return None
    delta = ensure_utc(ts) - EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000  # noqa: E501


def from_epoch_ms(ms: Optional[int]) -> Optional[datetime]:
    """Convert integer epoch milliseconds to an aware UTC datetime."""
    if ms is None:
        return None
    return EPOCH + timedelta(milliseconds=int(ms))


def _convert_ms_fields(row_dict: Dict[str, Any], *fields: str) -> Dict[str, Any]:  # noqa: E501
    data = row_dict.copy()
    for field in fields:
        if field in data:
            data[field] = from_epoch_ms(data[field])
    return data


def _build(model, data: Dict[str, Any], what: str):
    try:
        return model(**data)
    except ValidationError as e:
        raise MarshallingError(
            f"Failed to parse {what} from DB row: {data}. Error: {e}",
            original_exception=e,
        ) from e


# --- Decks ---


def deck_to_db_params_tuple(deck: Deck) -> Tuple:
    """(id, title, description, created_at)"""
    return (
        deck.id,
        deck.title,
        deck.description,
        to_epoch_ms(deck.created_at),
    )


def db_row_to_deck(row_dict: Dict[str, Any]) -> Deck:
    data = _convert_ms_fields(row_dict, "created_at")
    return _build(Deck, data, "deck")


def deck_options_to_db_params_tuple(
    deck_id: str, options: DeckOptions, updated_at: datetime
) -> Tuple:
    """
    Serialize DeckOptions for insertion.

    Returns:
        tuple: (deck_id, new_per_day, reviews_per_day, learning_steps_minutes,
                relearn_steps_minutes, leech_threshold, bury_siblings,
                updated_at)
    """
    return (
        deck_id,
        options.new_per_day,
        options.reviews_per_day,
        list(options.learning_steps_minutes),
        list(options.relearn_steps_minutes),
        options.leech_threshold,
        options.bury_siblings,
        to_epoch_ms(updated_at),
    )


def db_row_to_deck_options(row_dict: Dict[str, Any]) -> DeckOptions:
    data = row_dict.copy()
    data.pop("deck_id", None)
    data.pop("updated_at", None)
    return _build(DeckOptions, data, "deck options")


# --- Cards & tags ---


def card_to_db_params_tuple(card: Card) -> Tuple:
    """
    Returns:
        tuple: (id, deck_id, front, back, source_type, source_id, created_at,
                updated_at)
    """
    return (
        card.id,
        card.deck_id,
        card.front,
        card.back,
        card.source_type,
        card.source_id,
        to_epoch_ms(card.created_at),
        to_epoch_ms(card.updated_at),
    )


def db_row_to_card(row_dict: Dict[str, Any]) -> Card:
    data = _convert_ms_fields(row_dict, "created_at", "updated_at")
    return _build(Card, data, "card")


def db_row_to_tag(row_dict: Dict[str, Any]) -> Tag:
    data = _convert_ms_fields(row_dict, "created_at")
    return _build(Tag, data, "tag")


# --- Card states ---


def card_state_to_db_params_tuple(state: UserCardState) -> Tuple:
    """
    Returns:
        tuple: (user_id, card_id, state, due_at, interval_days, ease, reps,
                lapses, suspended, last_reviewed_at, updated_at, version)
    """
    return (
        state.user_id,
        state.card_id,
        state.state.value,
        to_epoch_ms(state.due_at),
        state.interval_days,
        state.ease,
        state.reps,
        state.lapses,
        state.suspended,
        to_epoch_ms(state.last_reviewed_at),
        to_epoch_ms(state.updated_at),
        state.version,
    )


def db_row_to_card_state(row_dict: Dict[str, Any]) -> UserCardState:
    data = _convert_ms_fields(
        row_dict, "due_at", "last_reviewed_at", "updated_at"
    )
    data["state"] = CardState(data["state"])
    return _build(UserCardState, data, "card state")


# --- Review events ---


def review_event_to_db_params_tuple(event: ReviewEvent) -> Tuple:
    """
    Returns:
        tuple: (id, user_id, deck_id, card_id, grade, confidence, reviewed_at,
                prev_state, next_state, prev_due_at, next_due_at,
                prev_interval_days, next_interval_days, prev_ease, next_ease,
                created_at)
    """
    return (
        event.id,
        event.user_id,
        event.deck_id,
        event.card_id,
        event.grade,
        event.confidence,
        to_epoch_ms(event.reviewed_at),
        event.prev_state.value,
        event.next_state.value,
        to_epoch_ms(event.prev_due_at),
        to_epoch_ms(event.next_due_at),
        event.prev_interval_days,
        event.next_interval_days,
        event.prev_ease,
        event.next_ease,
        to_epoch_ms(event.created_at),
    )


def db_row_to_review_event(row_dict: Dict[str, Any]) -> ReviewEvent:
    data = _convert_ms_fields(
        row_dict,
        "reviewed_at",
        "prev_due_at",
        "next_due_at",
        "created_at",
    )
    return _build(ReviewEvent, data, "review event")


# --- Queue rows ---


def db_row_to_queue_item(row_dict: Dict[str, Any]) -> QueueItem:
    """Build a QueueItem from a card/state join row; NULL state columns
    mean the card has never been reviewed."""
    data = _convert_ms_fields(row_dict, "due_at")
    for field in ("interval_days", "ease", "reps", "lapses", "suspended"):
        if data.get(field) is None:
            data.pop(field, None)
    data["state"] = CardState(data.get("state") or CardState.New.value)
    return _build(QueueItem, data, "queue item")
