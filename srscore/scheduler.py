# srscore/scheduler.py

"""
Defines the BaseScheduler abstract class and the SM2Scheduler, a modified SM-2
scheduler with learning/relearning step ladders and leech suspension.
"""

import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List

from .constants import (
    EASY_BONUS,
    FIRST_INTERVAL_DAYS,
    GRADE_TO_QUALITY,
    HARD_INTERVAL_MULTIPLIER,
    MAX_EASE,
    MIN_EASE,
    SECOND_INTERVAL_DAYS,
)
from .models import CardState, DeckOptions, Grade, UserCardState, ensure_utc

logger = logging.getLogger(__name__)


class BaseScheduler(ABC):
    """
    Abstract base class for all schedulers in srscore.
    """

    @abstractmethod
    def compute_next_state(
        self,
        prev: UserCardState,
        grade: int,
        options: DeckOptions,
        now: datetime,
    ) -> UserCardState:
        """
        Computes the next scheduling state of a card after a review.

        Args:
            prev: The card's current state (or `UserCardState.new(...)`).
            grade: The rating for this review (0=Again .. 3=Easy).
                Out-of-range values are clamped.
            options: The resolved options of the card's deck.
            now: The UTC timestamp of the review.

        Returns:
            The new UserCardState. `prev` is not modified.

        Raises:
            ValueError: If `prev` is suspended.
        """
        pass


def to_quality(grade: Grade) -> int:
    """Maps a grade onto the SM-2 0-5 quality scale."""
    return GRADE_TO_QUALITY[int(grade)]


def update_ease(prev_ease: float, quality: int) -> float:
    """Standard SM-2 ease update, clamped to [MIN_EASE, MAX_EASE]."""
    miss = 5 - quality
    next_ease = prev_ease + (0.1 - miss * (0.08 + miss * 0.02))
    return max(MIN_EASE, min(MAX_EASE, next_ease))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_next_interval_days(
    prev_interval_days: float,
    next_ease: float,
    grade: Grade,
    reps_after: int,
) -> int:
    """
    Interval growth for a card already in review.

    The first two successful reps use fixed 1-day and 6-day intervals; after
    that the previous interval grows by 1.2 (hard), the ease (good) or the
    ease times the easy bonus (easy). The result is never below one day.
    """
    if reps_after <= 1:
        return FIRST_INTERVAL_DAYS
    if reps_after == 2:
        return SECOND_INTERVAL_DAYS

    if grade == Grade.Hard:
        factor = HARD_INTERVAL_MULTIPLIER
    elif grade == Grade.Easy:
        factor = next_ease * EASY_BONUS
    else:
        factor = next_ease
    return max(1, _round_half_up(prev_interval_days * factor))


class SM2Scheduler(BaseScheduler):
    """
    Modified SM-2 scheduler.

    Again always sends the card to relearning and counts a lapse. New cards
    graduate straight to review unless rated Hard on a multi-step ladder.
    Learning and relearning cards graduate on Good or Easy and repeat the
    first step on Hard. Review cards grow their interval with the ease.
    """

    def _first_step(self, steps: List[int]) -> timedelta:
        return timedelta(minutes=steps[0])

    def compute_next_state(
        self,
        prev: UserCardState,
        grade: int,
        options: DeckOptions,
        now: datetime,
    ) -> UserCardState:
        if prev.suspended:
            raise ValueError(
                f"Card {prev.card_id} is suspended and cannot be scheduled."
            )

        grade = Grade.clamp(grade)
        now = ensure_utc(now)
        next_ease = update_ease(prev.ease, to_quality(grade))

        state = prev.state
        interval_days = prev.interval_days
        reps = prev.reps
        lapses = prev.lapses

        if grade == Grade.Again:
            lapses += 1
            reps = 0
            interval_days = 0.0
            state = CardState.Relearning
            due_at = now + self._first_step(options.relearn_steps_minutes)
        elif prev.state == CardState.New:
            reps += 1
            if len(options.learning_steps_minutes) > 1 and grade == Grade.Hard:
                state = CardState.Learning
                due_at = now + self._first_step(options.learning_steps_minutes)
            else:
                state = CardState.Review
                interval_days = float(FIRST_INTERVAL_DAYS)
                due_at = now + timedelta(days=interval_days)
        elif prev.state in (CardState.Learning, CardState.Relearning):
            reps += 1
            if grade >= Grade.Good:
                state = CardState.Review
                interval_days = float(FIRST_INTERVAL_DAYS)
                due_at = now + timedelta(days=interval_days)
            else:
                steps = (
                    options.learning_steps_minutes
                    if prev.state == CardState.Learning
                    else options.relearn_steps_minutes
                )
                due_at = now + self._first_step(steps)
        else:
            reps += 1
            state = CardState.Review
            interval_days = float(
                compute_next_interval_days(
                    prev_interval_days=max(1.0, prev.interval_days or 1.0),
                    next_ease=next_ease,
                    grade=grade,
                    reps_after=reps,
                )
            )
            due_at = now + timedelta(days=interval_days)

        suspended = lapses >= options.leech_threshold
        if suspended:
            logger.info(
                f"Card {prev.card_id} reached {lapses} lapses and is now "
                f"suspended for user {prev.user_id}."
            )

        return prev.model_copy(
            update={
                "state": state,
                "due_at": due_at,
                "interval_days": interval_days,
                "ease": next_ease,
                "reps": reps,
                "lapses": lapses,
                "suspended": suspended,
                "last_reviewed_at": now,
                "updated_at": now,
            }
        )
