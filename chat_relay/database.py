import asyncio
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List

DEFAULT_HISTORY_LIMIT = 100
MAX_HISTORY_LIMIT = 1000


class StorageError(Exception):
    """The message log could not be reached or refused the write."""


@dataclass(frozen=True)
class StoredMessage:
    id: str
    sender_id: str
    text: str
    timestamp: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "text": self.text,
            "timestamp": self.timestamp,
        }


class MessageLog:
    """Append-only chat log ordered by admission timestamp."""

    def __init__(self, db_path: str = "chat_messages.db"):
        self.db_path = db_path
        self.init_database()

    def init_database(self):
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        sender_id TEXT NOT NULL,
                        text TEXT NOT NULL,
                        timestamp INTEGER NOT NULL
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages (timestamp)")
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open message log {self.db_path}: {exc}") from exc
        logging.info("Message log ready at %s", self.db_path)

    def generate_message_id(self) -> str:
        return uuid.uuid4().hex

    # ---- Writes ----
    async def append(self, message) -> str:
        """Persist ``message`` (anything with sender_id/text/timestamp) and return its id.

        The SQLite write runs in a worker thread so other connections keep
        being served while it is in flight.
        """
        return await asyncio.to_thread(
            self.insert_message, message.sender_id, message.text, message.timestamp
        )

    def insert_message(self, sender_id: str, text: str, timestamp: int) -> str:
        message_id = self.generate_message_id()
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO messages (id, sender_id, text, timestamp) VALUES (?, ?, ?, ?)",
                    (message_id, sender_id, text, int(timestamp)),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return message_id

    # ---- Reads ----
    async def query_recent(self, limit: int = DEFAULT_HISTORY_LIMIT) -> List[StoredMessage]:
        return await asyncio.to_thread(self.recent_messages, limit)

    def recent_messages(self, limit: int = DEFAULT_HISTORY_LIMIT) -> List[StoredMessage]:
        """Newest ``limit`` messages, returned oldest first."""
        try:
            with sqlite3.connect(self.db_path) as conn:
                rows = conn.execute(
                    """
                    SELECT id, sender_id, text, timestamp FROM messages
                    ORDER BY timestamp DESC, rowid DESC
                    LIMIT ?
                    """,
                    (int(limit),),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        rows.reverse()
        return [StoredMessage(*row) for row in rows]

    def count(self) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return int(row[0])

