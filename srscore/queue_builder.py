"""
Study queue construction: the daily due queue and ad-hoc filtered queues.
"""

import logging
from datetime import datetime
from typing import List, Optional

from .config import settings
from .db.database import SRSDatabase
from .models import DueQueue, QueueItem, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class QueueBuilder:
    """
    Builds study queues for one user and deck from the card/state tables.

    Queue building only reads card states; a card's state row is created on
    its first review, not when it is queued.
    """

    def __init__(self, db_manager: SRSDatabase):
        self.db_manager = db_manager

    def build_queue(
        self,
        user_id: str,
        deck_id: str,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> DueQueue:
        """
        Build the daily driver queue: due cards first, then never-seen cards.

        Due cards are the user's non-suspended cards in the deck with
        `due_at <= now`, earliest first, capped at `limit`. The remaining
        slots are filled with up to `options.new_per_day` never-seen cards,
        oldest first.

        Args:
            user_id: The studying user.
            deck_id: The deck to study.
            now: Reference time (defaults to the current UTC time).
            limit: Maximum queue size (defaults to `settings.default_queue_limit`).

        Returns:
            DueQueue: The resolved options, the `now` used and the ordered items.
        """
        now = ensure_utc(now or utc_now())
        if limit is None:
            limit = settings.default_queue_limit
        limit = max(0, limit)

        options = self.db_manager.get_deck_options(deck_id)

        due_items = self.db_manager.get_due_card_items(
            user_id, deck_id, now, limit
        )
        remaining = max(0, limit - len(due_items))
        new_limit = min(remaining, options.new_per_day)
        new_items = self.db_manager.get_new_card_items(
            user_id, deck_id, now, new_limit
        )

        logger.debug(
            f"Built queue for user {user_id}, deck {deck_id}: "
            f"{len(due_items)} due + {len(new_items)} new (limit {limit})."
        )
        return DueQueue(
            deck_id=deck_id,
            now=now,
            options=options,
            items=due_items + new_items,
        )

    def build_filtered_queue(
        self,
        user_id: str,
        deck_id: str,
        tag_id: Optional[str] = None,
        due_only: bool = False,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[QueueItem]:
        """
        Build an ad-hoc queue of any non-suspended cards in the deck.

        No new-card cap applies. Items are ordered by `due_at`, with unseen
        cards counted as due at `now`, then by card creation time.
        """
        now = ensure_utc(now or utc_now())
        if limit is None:
            limit = settings.filtered_queue_limit
        items = self.db_manager.get_filtered_card_items(
            user_id,
            deck_id,
            now,
            max(0, limit),
            tag_id=tag_id,
            due_only=due_only,
        )
        logger.debug(
            f"Built filtered queue for user {user_id}, deck {deck_id} "
            f"(tag={tag_id}, due_only={due_only}): {len(items)} items."
        )
        return items
