"""Indexer cursor tracking with SQLite persistence."""

import sqlite3
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Self


@dataclass
class IndexerCursor:
    """Progress of one indexer over one conversation."""

    indexer_name: str
    conversation_id: str
    last_cursor: int | None = None
    updated_at: int | None = None


class IndexerState:
    """Manages indexer cursor persistence in SQLite database.

    A cursor is the last source key an indexer has durably written for a
    conversation. It only ever moves forward during normal operation and is
    cleared by ``reset`` for a rebuild.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize indexer state with database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        # Orchestrator passes run state calls in worker threads
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self.ensure_schema()

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            return cursor.rowcount

    def ensure_schema(self) -> None:
        """Create the indexer_cursors table if it doesn't exist."""
        self._write("""
            CREATE TABLE IF NOT EXISTS indexer_cursors (
                indexer_name TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                last_cursor INTEGER,
                updated_at INTEGER,
                PRIMARY KEY (indexer_name, conversation_id)
            )
        """)

    def get_cursor(self, indexer_name: str, conversation_id: str) -> int | None:
        """Get the last indexed source key.

        Returns:
            Last cursor, or None if the conversation was never indexed
        """
        rows = self._query(
            """
            SELECT last_cursor FROM indexer_cursors
            WHERE indexer_name = ? AND conversation_id = ?
            """,
            (indexer_name, conversation_id),
        )
        if not rows:
            return None
        return rows[0]["last_cursor"]

    def set_cursor(self, indexer_name: str, conversation_id: str, last_cursor: int) -> None:
        """Persist a new cursor for an indexer and conversation."""
        self._write(
            """
            INSERT INTO indexer_cursors (indexer_name, conversation_id, last_cursor, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (indexer_name, conversation_id)
            DO UPDATE SET last_cursor = excluded.last_cursor, updated_at = excluded.updated_at
            """,
            (indexer_name, conversation_id, last_cursor, int(time.time())),
        )

    def reset(self, indexer_name: str | None = None, conversation_id: str | None = None) -> int:
        """Forget cursors so the next pass starts from the beginning.

        Args:
            indexer_name: Only reset this indexer (all if None)
            conversation_id: Only reset this conversation (all if None)

        Returns:
            Number of cursors removed
        """
        clauses = []
        values = []
        if indexer_name is not None:
            clauses.append("indexer_name = ?")
            values.append(indexer_name)
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            values.append(conversation_id)

        query = "DELETE FROM indexer_cursors"
        if clauses:
            query += f" WHERE {' AND '.join(clauses)}"

        return self._write(query, values)

    def list_cursors(self, indexer_name: str | None = None) -> list[IndexerCursor]:
        """List tracked cursors, optionally for a single indexer."""
        if indexer_name is None:
            rows = self._query(
                """
                SELECT indexer_name, conversation_id, last_cursor, updated_at
                FROM indexer_cursors
                ORDER BY indexer_name, conversation_id
                """
            )
        else:
            rows = self._query(
                """
                SELECT indexer_name, conversation_id, last_cursor, updated_at
                FROM indexer_cursors
                WHERE indexer_name = ?
                ORDER BY conversation_id
                """,
                (indexer_name,),
            )

        return [
            IndexerCursor(
                indexer_name=row["indexer_name"],
                conversation_id=row["conversation_id"],
                last_cursor=row["last_cursor"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
