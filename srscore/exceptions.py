from typing import Optional


class DatabaseError(Exception):
    """Base exception for database-related errors."""

    def __init__(
        self, message: str, original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.original_exception = original_exception


class DatabaseConnectionError(DatabaseError):
    """Raised for errors connecting to the database."""

    pass


class SchemaInitializationError(DatabaseError):
    """Raised for errors during schema setup."""

    pass


class DeckOperationError(DatabaseError):
    """Raised for errors during deck or deck options operations."""

    pass


class CardOperationError(DatabaseError):
    """Raised for errors during card operations (CRUD)."""

    pass


class TagOperationError(DatabaseError):
    """Raised for errors during tag operations."""

    pass


class CardStateOperationError(DatabaseError):
    """Indicates an error reading or writing a user's card state."""

    pass


class StaleCardStateError(CardStateOperationError):
    """Raised when a card state changed between read and write.

    The write is rolled back; the caller may re-read and resubmit.
    """

    pass


class ReviewEventError(DatabaseError):
    """Indicates an error appending to or reading the review event log."""

    pass


class MarshallingError(DatabaseError):
    """Indicates an error during data conversion between application models
    and DB format."""

    pass


class SyncError(DatabaseError):
    """Raised when a sync pull cannot be served."""

    pass


class ReviewError(Exception):
    """Base exception for rejected review submissions."""

    pass


class SuspendedCardError(ReviewError):
    """Raised when a review is submitted for a suspended (leech) card."""

    def __init__(self, user_id: str, card_id: str):
        super().__init__(
            f"Card {card_id} is suspended (leech) for user {user_id}."
        )
        self.user_id = user_id
        self.card_id = card_id
