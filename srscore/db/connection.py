import duckdb
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from ..exceptions import DatabaseConnectionError

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class ConnectionHandler:
    """
    Owns the single DuckDB connection of an SRSDatabase and hands out
    transactional cursors on it.
    """

    def __init__(self, db_path: Union[str, Path], read_only: bool = False):
        """
        Args:
            db_path: DuckDB file path, or ':memory:' (any case) for a
                transient in-memory database. `~` is expanded.
            read_only: Open the database file read-only.
        """
        if isinstance(db_path, str) and db_path.lower() == MEMORY_PATH:
            self.db_path_resolved = Path(MEMORY_PATH)
        else:
            self.db_path_resolved = Path(db_path).expanduser().resolve()
        logger.info(f"Database location: {self.db_path_resolved}")

        self.read_only: bool = read_only
        self.is_new_db: bool = False
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._connect_lock = threading.Lock()

    @property
    def is_memory(self) -> bool:
        return str(self.db_path_resolved) == MEMORY_PATH

    def _open(self) -> duckdb.DuckDBPyConnection:
        if self.is_memory:
            self.is_new_db = True
            target = MEMORY_PATH
        else:
            self.is_new_db = not self.db_path_resolved.exists()
            if self.read_only and self.is_new_db:
                raise DatabaseConnectionError(
                    f"Cannot open missing database {self.db_path_resolved} "
                    "in read-only mode."
                )
            self.db_path_resolved.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path_resolved)
        return duckdb.connect(database=target, read_only=self.read_only)

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        """
        Return the open connection, connecting on first use.

        Raises:
            DatabaseConnectionError: If the file is missing in read-only
                mode or DuckDB refuses the connection.
        """
        with self._connect_lock:
            if self._connection is None:
                try:
                    self._connection = self._open()
                except duckdb.Error as e:
                    raise DatabaseConnectionError(
                        f"Failed to connect to database: {e}",
                        original_exception=e,
                    ) from e
                logger.info(
                    f"Connected to {self.db_path_resolved} "
                    f"(read_only={self.read_only}, new={self.is_new_db})."
                )
            return self._connection

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Yield a fresh cursor with an open transaction.

        Commits when the block exits normally; rolls back and re-raises
        otherwise.
        """
        with self.get_connection().cursor() as cursor:
            cursor.begin()
            try:
                yield cursor
            except BaseException:
                try:
                    cursor.rollback()
                except duckdb.Error as rb_err:
                    logger.error(f"Failed to rollback transaction: {rb_err}")
                raise
            cursor.commit()

    def close_connection(self) -> None:
        """Close the connection, if open. A later call reconnects."""
        with self._connect_lock:
            if self._connection is None:
                return
            try:
                self._connection.close()
                logger.info(
                    f"Closed database connection to {self.db_path_resolved}."
                )
            except duckdb.Error as e:
                logger.error(f"Error closing the database connection: {e}")
            finally:
                self._connection = None
