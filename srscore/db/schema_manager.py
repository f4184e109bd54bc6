import duckdb
import logging

from ..config import settings
from ..exceptions import DatabaseConnectionError, SchemaInitializationError
from . import schema
from .connection import ConnectionHandler

logger = logging.getLogger(__name__)


class SchemaManager:
    """Manages the database schema initialization and maintenance."""

    def __init__(self, handler: ConnectionHandler):
        self._handler = handler

    def initialize_schema(self, force_recreate_tables: bool = False) -> None:
        """
        Create any missing tables and indexes in one transaction.

        With `force_recreate_tables`, every srscore table is dropped first.
        Read-only file databases are left untouched.
        """
        if self._handle_read_only_initialization(force_recreate_tables):
            return

        try:
            with self._handler.transaction() as cursor:
                if force_recreate_tables:
                    self._recreate_tables(cursor)
                cursor.execute(schema.DB_SCHEMA_SQL)
            logger.info(
                f"Database schema at {self._handler.db_path_resolved} is ready."
            )
        except duckdb.Error as e:
            logger.error(
                f"Error initializing database schema at {self._handler.db_path_resolved}: {e}"  # noqa: E501
            )
            raise SchemaInitializationError(
                f"Failed to initialize schema: {e}", original_exception=e
            ) from e

    def _handle_read_only_initialization(
        self, force_recreate_tables: bool
    ) -> bool:
        """Returns True if initialization should be skipped."""
        if self._handler.read_only:
            if force_recreate_tables:
                raise DatabaseConnectionError(
                    "Cannot force_recreate_tables in read-only mode."
                )
            if not self._handler.is_memory:
                logger.warning(
                    "Attempting to initialize schema in read-only mode. Skipping."  # noqa: E501
                )
                return True
        return False

    def _perform_safety_check(self, cursor: duckdb.DuckDBPyConnection) -> None:
        """Refuses to drop tables that still hold review history."""
        if self._handler.is_memory or settings.testing_mode:
            return

        try:
            event_result = cursor.execute(
                "SELECT COUNT(*) FROM review_events"
            ).fetchone()
            state_result = cursor.execute(
                "SELECT COUNT(*) FROM card_states"
            ).fetchone()
        except duckdb.CatalogException:
            # Tables do not exist yet; nothing to lose.
            return

        event_count = event_result[0] if event_result else 0
        state_count = state_result[0] if state_result else 0
        if event_count > 0 or state_count > 0:
            error_msg = (
                "CRITICAL: Attempted to drop tables with existing data! "
                f"Review events: {event_count}, card states: {state_count}."
            )
            logger.error(error_msg)
            raise SchemaInitializationError(error_msg)

    def _recreate_tables(self, cursor: duckdb.DuckDBPyConnection) -> None:
        """Drops all tables to force recreation."""
        self._perform_safety_check(cursor)

        logger.warning(
            f"Forcing table recreation for {self._handler.db_path_resolved}. ALL EXISTING DATA WILL BE LOST."  # noqa: E501
        )
        for table in schema.TABLE_NAMES:
            cursor.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
