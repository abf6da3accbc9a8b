"""SQLite connection pool and the connection states of the document store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class DatabaseUnavailableError(RuntimeError):
    """Raised when the document store cannot be opened."""


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool."""

    def __init__(self, database: str, max_connections: int = 5):
        self.database = database
        self.max_connections = max_connections
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        # Handlers run on a worker thread pool, so connections move between threads.
        conn = sqlite3.connect(self.database, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error as e:
            logger.warning("Error closing pooled connection: %s", e)
        with self._lock:
            self._created_connections -= 1

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; it is rolled back and returned on exit."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %s)", self._created_connections)
            if connection is None:
                # Pool exhausted; wait for a connection to be returned
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                self._discard(connection)

    def close_all(self) -> None:
        """Close every idle connection held by the pool."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            self._discard(connection)


def open_pool(path: str, schema: str, max_connections: int) -> SQLiteConnectionPool:
    """Create a pool for ``path`` and apply ``schema`` on its first connection.

    Any filesystem or SQLite failure is raised as
    :class:`DatabaseUnavailableError`.
    """
    try:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        pool = SQLiteConnectionPool(path, max_connections=max_connections)
        with pool.get_connection() as con:
            con.executescript(schema)
            con.commit()
    except (sqlite3.Error, OSError) as exc:
        raise DatabaseUnavailableError(str(exc)) from exc
    return pool
