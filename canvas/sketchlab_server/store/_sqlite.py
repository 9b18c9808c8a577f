"""
Shared SQLite plumbing for the per-project stores.

Each store keeps one SQLite file per project scope under its own
directory. Connections are opened per operation; SQLite handles
concurrent readers via WAL mode and writers are serialized with an
asyncio lock held by the store.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Set

from ..errors import StorageFailureError
from ..validate import validate_scope

logger = logging.getLogger(__name__)


class ScopedSqliteStore:
    """Base class for stores with one database file per project.

    Subclasses set FILE_PREFIX and implement _create_schema().
    """

    FILE_PREFIX = "project"

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()
        self._initialized: Set[str] = set()

    def _get_db_path(self, scope: str) -> Path:
        """Get database file path for a project."""
        return self.data_dir / f"{self.FILE_PREFIX}_{validate_scope(scope)}.db"

    @contextmanager
    def _get_connection(self, scope: str) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating schema on first use.

        Yields:
            SQLite connection in autocommit mode (explicit transactions)
        """
        db_path = self._get_db_path(scope)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            if scope not in self._initialized:
                self._create_schema(conn)
                self._initialized.add(scope)

            yield conn
        finally:
            conn.close()

    @contextmanager
    def _storage_errors(self, operation: str, scope: str) -> Iterator[None]:
        """Translate sqlite3 errors into StorageFailureError."""
        try:
            yield
        except sqlite3.Error as e:
            logger.error(
                f"Storage operation failed: {operation}: {e}",
                exc_info=True,
                extra={"scope": scope, "operation": operation},
            )
            raise StorageFailureError(operation, scope) from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    async def scope_exists(self, scope: str) -> bool:
        """Whether the project has a database file."""
        return self._get_db_path(scope).exists()
