"""
Pydantic models for decks, cards, per-user scheduling state and the review
event log.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Annotated, List, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from .constants import (
    DEFAULT_BURY_SIBLINGS,
    DEFAULT_CARD_SOURCE_TYPE,
    DEFAULT_EASE,
    DEFAULT_LEARNING_STEPS_MINUTES,
    DEFAULT_LEECH_THRESHOLD,
    DEFAULT_NEW_PER_DAY,
    DEFAULT_RELEARN_STEPS_MINUTES,
    DEFAULT_REVIEWS_PER_DAY,
    MAX_CONFIDENCE,
    MAX_EASE,
    MIN_CONFIDENCE,
    MIN_EASE,
)


def ensure_utc(ts: datetime) -> datetime:
    """Ensures the given datetime is UTC. Assumes UTC if naive."""
    if ts.tzinfo is None or ts.tzinfo.utcoffset(ts) is None:
        return ts.replace(tzinfo=timezone.utc)
    if ts.tzinfo != timezone.utc:
        return ts.astimezone(timezone.utc)
    return ts


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Random 32-character hex identifier."""
    return uuid.uuid4().hex


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


class CardState(str, Enum):
    """
    Scheduling phase of a card for one user. A card the user has never
    reviewed is `New`.
    """

    New = "new"
    Learning = "learning"
    Review = "review"
    Relearning = "relearning"


class Grade(IntEnum):
    """
    The user's rating of their recall performance.
    """

    Again = 0
    Hard = 1
    Good = 2
    Easy = 3

    @classmethod
    def clamp(cls, value: int) -> "Grade":
        """Map any integer onto a grade: <=0 is Again, >=3 is Easy."""
        value = int(value)
        if value <= cls.Again:
            return cls.Again
        if value >= cls.Easy:
            return cls.Easy
        return cls(value)


def clamp_confidence(value: Optional[int]) -> Optional[int]:
    """Clamp an optional confidence self-report into [0, 3]."""
    if value is None:
        return None
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, int(value)))


class Deck(BaseModel):
    """An identified collection of cards."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    id: str = Field(default_factory=new_id, min_length=1)
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    created_at: UTCDateTime = Field(default_factory=utc_now)


class DeckOptions(BaseModel):
    """
    Per-deck scheduling configuration.

    `reviews_per_day` and `bury_siblings` are stored and returned but not
    enforced by queue construction.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    new_per_day: int = Field(
        default=DEFAULT_NEW_PER_DAY,
        ge=0,
        description="Cap on never-seen cards added to a due queue.",
    )
    reviews_per_day: int = Field(
        default=DEFAULT_REVIEWS_PER_DAY,
        ge=0,
        description="Daily review cap (stored, currently inert).",
    )
    learning_steps_minutes: List[int] = Field(
        default_factory=lambda: list(DEFAULT_LEARNING_STEPS_MINUTES),
        min_length=1,
        description="Learning step ladder in minutes.",
    )
    relearn_steps_minutes: List[int] = Field(
        default_factory=lambda: list(DEFAULT_RELEARN_STEPS_MINUTES),
        min_length=1,
        description="Relearning step ladder in minutes.",
    )
    leech_threshold: int = Field(
        default=DEFAULT_LEECH_THRESHOLD,
        ge=1,
        description="Lapses at which a card is suspended.",
    )
    bury_siblings: bool = Field(
        default=DEFAULT_BURY_SIBLINGS,
        description="Sibling burying flag (stored, currently inert).",
    )

    @field_validator("learning_steps_minutes", "relearn_steps_minutes")
    @classmethod
    def validate_steps_positive(cls, steps: List[int]) -> List[int]:
        """Ensure every step is a positive number of minutes."""
        for step in steps:
            if step <= 0:
                raise ValueError(
                    f"Step '{step}' must be a positive number of minutes."
                )
        return steps


class DeckOptionsUpdate(BaseModel):
    """Partial update for DeckOptions. Unset fields keep their value."""

    model_config = ConfigDict(extra="forbid")

    new_per_day: Optional[int] = None
    reviews_per_day: Optional[int] = None
    learning_steps_minutes: Optional[List[int]] = None
    relearn_steps_minutes: Optional[List[int]] = None
    leech_threshold: Optional[int] = None
    bury_siblings: Optional[bool] = None

    def apply_to(self, current: DeckOptions) -> DeckOptions:
        """Merge this update over `current`, validating the result."""
        merged = current.model_dump()
        merged.update(self.model_dump(exclude_none=True))
        return DeckOptions(**merged)


class Card(BaseModel):
    """
    A front/back content pair belonging to one deck, optionally traced back
    to the content it was generated from.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    id: str = Field(default_factory=new_id, min_length=1)
    deck_id: str = Field(..., min_length=1)
    front: str = Field(..., min_length=1)
    back: str = Field(..., min_length=1)
    source_type: str = Field(
        default=DEFAULT_CARD_SOURCE_TYPE,
        description="Provenance kind, e.g. 'manual' or 'lesson'.",
    )
    source_id: Optional[str] = Field(
        default=None,
        description="Identifier of the originating content, if any.",
    )
    created_at: UTCDateTime = Field(default_factory=utc_now)
    updated_at: UTCDateTime = Field(default_factory=utc_now)


class Tag(BaseModel):
    """A named label attached to cards."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(..., min_length=1, max_length=64)
    created_at: UTCDateTime = Field(default_factory=utc_now)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class UserCardState(BaseModel):
    """
    Scheduling state of one card for one user.

    A card without a stored row is represented by `UserCardState.new(...)`,
    whose `version` is 0. Every persisted write increments `version`.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    user_id: str = Field(..., min_length=1)
    card_id: str = Field(..., min_length=1)
    state: CardState = CardState.New
    due_at: UTCDateTime = Field(
        ..., description="When the card next becomes eligible for review."
    )
    interval_days: float = Field(default=0.0, ge=0)
    ease: float = Field(default=DEFAULT_EASE, ge=MIN_EASE, le=MAX_EASE)
    reps: int = Field(default=0, ge=0)
    lapses: int = Field(default=0, ge=0)
    suspended: bool = False
    last_reviewed_at: Optional[UTCDateTime] = None
    updated_at: Optional[UTCDateTime] = None
    version: int = Field(default=0, ge=0)

    @classmethod
    def new(cls, user_id: str, card_id: str, now: datetime) -> "UserCardState":
        """The implicit state of a card the user has never reviewed."""
        return cls(user_id=user_id, card_id=card_id, due_at=now)

    @property
    def is_persisted(self) -> bool:
        return self.version > 0


class ReviewEvent(BaseModel):
    """
    Immutable record of one review: the grade and a before/after snapshot of
    the card's scheduling state.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id, min_length=1)
    user_id: str
    deck_id: str
    card_id: str
    grade: int = Field(..., ge=0, le=3)
    confidence: Optional[int] = Field(default=None, ge=0, le=3)
    reviewed_at: UTCDateTime
    prev_state: CardState
    next_state: CardState
    prev_due_at: UTCDateTime
    next_due_at: UTCDateTime
    prev_interval_days: float
    next_interval_days: float
    prev_ease: float
    next_ease: float
    created_at: UTCDateTime = Field(default_factory=utc_now)

    @classmethod
    def from_transition(
        cls,
        deck_id: str,
        grade: int,
        confidence: Optional[int],
        prev: UserCardState,
        next_state: UserCardState,
        reviewed_at: datetime,
    ) -> "ReviewEvent":
        return cls(
            user_id=prev.user_id,
            deck_id=deck_id,
            card_id=prev.card_id,
            grade=grade,
            confidence=confidence,
            reviewed_at=reviewed_at,
            prev_state=prev.state,
            next_state=next_state.state,
            prev_due_at=prev.due_at,
            next_due_at=next_state.due_at,
            prev_interval_days=prev.interval_days,
            next_interval_days=next_state.interval_days,
            prev_ease=prev.ease,
            next_ease=next_state.ease,
            created_at=reviewed_at,
        )


class QueueItem(BaseModel):
    """A card in a study queue together with its scheduling snapshot."""

    model_config = ConfigDict(extra="forbid")

    card_id: str
    deck_id: str
    front: str
    back: str
    state: CardState
    due_at: UTCDateTime
    interval_days: float = 0.0
    ease: float = DEFAULT_EASE
    reps: int = 0
    lapses: int = 0
    suspended: bool = False

    @property
    def is_new(self) -> bool:
        return self.state == CardState.New and self.reps == 0


class DueQueue(BaseModel):
    """Result of building the daily due queue for one user and deck."""

    deck_id: str
    now: UTCDateTime
    options: DeckOptions
    items: List[QueueItem] = Field(default_factory=list)


class ReviewResult(BaseModel):
    """Outcome of a review submission."""

    event_id: str
    card_id: str
    grade: Grade
    suspended: bool
    next: UserCardState


class SyncPage(BaseModel):
    """
    One page of incremental sync data. Cursors are epoch milliseconds.
    """

    since: int = Field(..., ge=0)
    next_cursor: int = Field(..., ge=0)
    events: List[ReviewEvent] = Field(default_factory=list)
    states: List[UserCardState] = Field(default_factory=list)
