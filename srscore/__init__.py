"""srscore - spaced repetition scheduling core for study decks."""

from .models import (
    Card,
    CardState,
    Deck,
    DeckOptions,
    DeckOptionsUpdate,
    DueQueue,
    Grade,
    QueueItem,
    ReviewEvent,
    ReviewResult,
    SyncPage,
    Tag,
    UserCardState,
)
from .db import SRSDatabase
from .queue_builder import QueueBuilder
from .review_processor import ReviewProcessor
from .scheduler import BaseScheduler, SM2Scheduler

__all__ = [
    "Card",
    "CardState",
    "Deck",
    "DeckOptions",
    "DeckOptionsUpdate",
    "DueQueue",
    "Grade",
    "QueueItem",
    "ReviewEvent",
    "ReviewResult",
    "SyncPage",
    "Tag",
    "UserCardState",
    "SRSDatabase",
    "QueueBuilder",
    "ReviewProcessor",
    "BaseScheduler",
    "SM2Scheduler",
]
