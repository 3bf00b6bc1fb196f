"""Raw message record store with SQLite persistence.

This is the source of truth the indexes are rebuilt from. The ingestion
path writes here; indexers read from it through ``fetch``.
"""

import sqlite3
import threading
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, Self

from chat_recall.models import Message


class MessageSource(Protocol):
    """Resumable read access to raw messages, paged in message_id order."""

    def fetch(self, conversation_id: str, after_key: int | None, limit: int) -> list[Message]: ...

    def count_messages(self, conversation_id: str | None = None, after_key: int | None = None) -> int: ...

    def list_conversations(self) -> list[str]: ...

    def purge_conversation(self, conversation_id: str) -> int: ...


def _to_epoch(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


class MessageStore:
    """Manages chat messages in a SQLite database.

    Messages are keyed by ``(conversation_id, message_id)``; inserting an
    existing key replaces the row.
    """

    def __init__(self, db_path: Path, min_text_length: int = 1) -> None:
        """Initialize message store with database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
            min_text_length: Messages whose stripped text is shorter than
                     this are never returned by ``fetch``
        """
        self._db_path = db_path
        self._min_text_length = min_text_length
        db_path.parent.mkdir(parents=True, exist_ok=True)
        # Orchestrator passes run store calls in worker threads
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
        """Create the messages table if it doesn't exist."""
        self._write("""
            CREATE TABLE IF NOT EXISTS messages (
                conversation_id TEXT NOT NULL,
                message_id INTEGER NOT NULL,
                author_id TEXT NOT NULL,
                author_name TEXT NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                timestamp_utc REAL NOT NULL,
                PRIMARY KEY (conversation_id, message_id)
            )
        """)

    def add_messages(self, messages: Iterable[Message]) -> int:
        """Insert or replace messages.

        Returns:
            Number of rows written
        """
        rows = [
            (
                m.conversation_id,
                m.message_id,
                m.author_id,
                m.author_name,
                m.text or "",
                _to_epoch(m.timestamp_utc),
            )
            for m in messages
        ]
        if not rows:
            return 0
        with self._lock:
            self._conn.executemany(
                """
                INSERT OR REPLACE INTO messages
                    (conversation_id, message_id, author_id, author_name, text, timestamp_utc)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self._conn.commit()
        return len(rows)

    def fetch(self, conversation_id: str, after_key: int | None, limit: int) -> list[Message]:
        """Fetch the next page of a conversation after a cursor.

        Pages follow message_id, the key cursors are kept in, so a message
        whose timestamp is out of step with its ID is never paged past.

        Args:
            conversation_id: Conversation to read
            after_key: Only messages with a greater message_id are returned
            limit: Maximum number of messages

        Returns:
            Messages ordered by message_id
        """
        rows = self._query(
            """
            SELECT conversation_id, message_id, author_id, author_name, text, timestamp_utc
            FROM messages
            WHERE conversation_id = ?
              AND message_id > ?
              AND LENGTH(TRIM(text)) >= ?
            ORDER BY message_id
            LIMIT ?
            """,
            (conversation_id, after_key if after_key is not None else -1, self._min_text_length, limit),
        )
        return [self._row_to_message(row) for row in rows]

    def count_messages(self, conversation_id: str | None = None, after_key: int | None = None) -> int:
        """Count fetchable messages, optionally past a cursor."""
        clauses = ["LENGTH(TRIM(text)) >= ?"]
        values: list = [self._min_text_length]
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            values.append(conversation_id)
        if after_key is not None:
            clauses.append("message_id > ?")
            values.append(after_key)
        rows = self._query(f"SELECT COUNT(*) FROM messages WHERE {' AND '.join(clauses)}", values)
        return rows[0][0]

    def list_conversations(self) -> list[str]:
        """List all conversation IDs that have messages."""
        rows = self._query("SELECT DISTINCT conversation_id FROM messages ORDER BY conversation_id")
        return [row["conversation_id"] for row in rows]

    def rename_author(self, conversation_id: str, author_id: str, author_name: str) -> int:
        """Correct an author's display name across a conversation.

        Returns:
            Number of messages updated
        """
        return self._write(
            """
            UPDATE messages SET author_name = ?
            WHERE conversation_id = ? AND author_id = ?
            """,
            (author_name, conversation_id, author_id),
        )

    def purge_conversation(self, conversation_id: str) -> int:
        """Delete every message of a conversation."""
        return self._write("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            conversation_id=row["conversation_id"],
            message_id=row["message_id"],
            author_id=row["author_id"],
            author_name=row["author_name"],
            text=row["text"],
            timestamp_utc=datetime.fromtimestamp(row["timestamp_utc"], tz=timezone.utc),
        )

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
