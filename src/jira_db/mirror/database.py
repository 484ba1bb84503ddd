"""SQLite connection shared by every repository.

All access goes through one connection guarded by a re-entrant lock, so
statements from the web server, MCP tools, scheduler and CLI never
interleave. Multi-statement updates use :meth:`Database.transaction`.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from jira_db.exceptions import RepositoryError
from jira_db.mirror.schema import MIGRATIONS, TABLES

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    """Quote a table or column name, rejecting anything but [A-Za-z0-9_]."""
    if not _IDENTIFIER.match(name):
        raise RepositoryError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


class Database:
    """Lazily opened SQLite database with schema setup and WAL checkpointing."""

    def __init__(self, path: Path | str = MEMORY) -> None:
        """Initialize the database handle.

        Args:
            path: Database file, or ":memory:" for a private in-memory database
        """
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._tx_depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create the connection, creating the schema on first use."""
        with self._lock:
            if self._conn is None:
                self._conn = self._connect()
            return self._conn

    def _connect(self) -> sqlite3.Connection:
        target = str(self.path)
        if target != MEMORY:
            Path(target).parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode; transaction() issues BEGIN/COMMIT explicitly
            conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            if target != MEMORY:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            for statement in TABLES:
                conn.execute(statement)
            self._apply_migrations(conn)
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to open database {target}: {e}") from e
        logger.info(f"Opened database at {target}")
        return conn

    def _apply_migrations(self, conn: sqlite3.Connection) -> None:
        for table, column, definition in MIGRATIONS:
            existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
            if column not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                logger.info(f"Added column {table}.{column}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and run the enclosed statements atomically.

        Nested calls join the outer transaction.
        """
        with self._lock:
            conn = self.conn
            outermost = self._tx_depth == 0
            if outermost:
                self._execute_raw(conn, "BEGIN")
            self._tx_depth += 1
            try:
                yield conn
            except BaseException:
                self._tx_depth -= 1
                if outermost and conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                self._tx_depth -= 1
                if outermost:
                    self._execute_raw(conn, "COMMIT")

    def _execute_raw(self, conn: sqlite3.Connection, sql: str) -> None:
        try:
            conn.execute(sql)
        except sqlite3.Error as e:
            raise RepositoryError(f"{sql} failed: {e}") from e

    def execute(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> int:
        """Execute one statement and return the number of affected rows."""
        with self._lock:
            try:
                return self.conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                raise RepositoryError(f"Query failed: {e}") from e

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> int:
        """Execute one statement for every parameter row inside a transaction."""
        with self.transaction() as conn:
            try:
                return conn.executemany(sql, rows).rowcount
            except sqlite3.Error as e:
                raise RepositoryError(f"Batch write failed: {e}") from e

    def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute an INSERT and return the new rowid."""
        with self._lock:
            try:
                cursor = self.conn.execute(sql, params)
            except sqlite3.Error as e:
                raise RepositoryError(f"Insert failed: {e}") from e
            return int(cursor.lastrowid or 0)

    def fetchall(
        self, sql: str, params: Sequence[Any] | dict[str, Any] = ()
    ) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise RepositoryError(f"Query failed: {e}") from e

    def fetchone(
        self, sql: str, params: Sequence[Any] | dict[str, Any] = ()
    ) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise RepositoryError(f"Query failed: {e}") from e

    def query(self, sql: str) -> tuple[list[str], list[tuple[Any, ...]]]:
        """Run an arbitrary query and return column names plus raw tuples."""
        with self._lock:
            try:
                cursor = self.conn.execute(sql)
                rows = [tuple(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise RepositoryError(f"Query failed: {e}") from e
            columns = [d[0] for d in cursor.description or []]
            return columns, rows

    def table_columns(self, table: str) -> list[str]:
        """Column names of ``table`` in declaration order."""
        rows = self.fetchall(f"PRAGMA table_info({quote_identifier(table)})")
        return [row["name"] for row in rows]

    def add_column_if_not_exists(self, table: str, column: str, column_type: str) -> bool:
        """Add a column unless it already exists.

        Returns:
            True if the column was added
        """
        if column in self.table_columns(table):
            return False
        try:
            self.execute(
                f"ALTER TABLE {quote_identifier(table)} "
                f"ADD COLUMN {quote_identifier(column)} {column_type}"
            )
        except RepositoryError as e:
            if "duplicate column" in str(e).lower():
                return False
            raise
        return True

    def checkpoint(self) -> None:
        """Flush the write-ahead log into the main database file."""
        with self._lock:
            if self._conn is None or str(self.path) == MEMORY:
                return
            try:
                self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                raise RepositoryError(f"WAL checkpoint failed: {e}") from e
            logger.debug(f"Checkpointed {self.path}")

    def close(self) -> None:
        """Checkpoint and close the connection."""
        with self._lock:
            if self._conn is None:
                return
            self.checkpoint()
            self._conn.close()
            self._conn = None
            logger.info(f"Closed database at {self.path}")
