"""
Review submission for srscore.

The ReviewProcessor runs the full read-modify-write of one review:
1. Read the user's current state for the card
2. Reject suspended cards
3. Resolve deck options and compute the next state
4. Persist the new state and append the review event in one transaction
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from .db.database import SRSDatabase
from .exceptions import SuspendedCardError
from .models import (
    Grade,
    ReviewEvent,
    ReviewResult,
    clamp_confidence,
    ensure_utc,
    utc_now,
)
from .scheduler import BaseScheduler, SM2Scheduler

logger = logging.getLogger(__name__)


class ReviewProcessor:
    """
    Processes review submissions for (user, card) pairs.

    Submissions for the same pair are serialized by an in-process lock; the
    database additionally rejects writes based on a stale state version, so
    separate processes sharing one database cannot lose an update either.
    Different pairs never contend.
    """

    def __init__(
        self,
        db_manager: SRSDatabase,
        scheduler: Optional[BaseScheduler] = None,
    ):
        """
        Args:
            db_manager: Database manager instance for persistence
            scheduler: Scheduler computing next states (defaults to SM2Scheduler)
        """
        self.db_manager = db_manager
        self.scheduler = scheduler or SM2Scheduler()
        self._locks: Dict[Tuple[str, str], List] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, user_id: str, card_id: str) -> Iterator[None]:
        """
        Hold the lock for one (user, card) pair.

        Entries are reference counted and dropped once no thread holds or
        waits on them, so the registry only contains pairs under review.
        """
        key = (user_id, card_id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def submit_review(
        self,
        user_id: str,
        deck_id: str,
        card_id: str,
        grade: int,
        confidence: Optional[int] = None,
        reviewed_at: Optional[datetime] = None,
    ) -> ReviewResult:
        """
        Grade a card for a user and persist the outcome.

        Grade and confidence are clamped into 0..3. The state update and the
        review event are committed together or not at all.

        Args:
            user_id: The reviewing user.
            deck_id: The deck the card is studied in (selects the options).
            card_id: The reviewed card.
            grade: 0=Again, 1=Hard, 2=Good, 3=Easy.
            confidence: Optional self-reported confidence, 0..3.
            reviewed_at: Review timestamp (defaults to current time).

        Returns:
            ReviewResult with the stored next state and its suspended flag.

        Raises:
            SuspendedCardError: If the card is suspended for this user.
            StaleCardStateError: If the state changed underneath this review.
            DatabaseError: If reading or persisting fails.
        """
        ts = ensure_utc(reviewed_at or utc_now())
        clamped_grade = Grade.clamp(grade)
        clamped_confidence = clamp_confidence(confidence)

        logger.debug(
            f"Processing review for card {card_id} (user {user_id}) "
            f"with grade {clamped_grade.name}"
        )

        with self._locked(user_id, card_id):
            prev = self.db_manager.get_card_state(user_id, card_id, now=ts)
            if prev.suspended:
                logger.info(
                    f"Rejected review of suspended card {card_id} for user {user_id}."  # noqa: E501
                )
                raise SuspendedCardError(user_id, card_id)

            options = self.db_manager.get_deck_options(deck_id)
            next_state = self.scheduler.compute_next_state(
                prev, clamped_grade, options, ts
            )
            event = ReviewEvent.from_transition(
                deck_id=deck_id,
                grade=int(clamped_grade),
                confidence=clamped_confidence,
                prev=prev,
                next_state=next_state,
                reviewed_at=ts,
            )
            stored = self.db_manager.save_review_outcome(
                prev, next_state, event
            )

        logger.debug(
            f"Review processed for card {card_id}. State: {stored.state.value}, "
            f"next due: {stored.due_at}, suspended: {stored.suspended}"
        )
        return ReviewResult(
            event_id=event.id,
            card_id=card_id,
            grade=clamped_grade,
            suspended=stored.suspended,
            next=stored,
        )
