"""
SQLite storage for the bridge: room/conversation mapping, message mapping,
transcribed audio and per-conversation chat history.

Connections are cached per-thread via ``threading.local``.  All public
functions are synchronous; async callers should use
``await async_call(fn, *args)`` so SQLite I/O never blocks the event loop.
"""

import asyncio
import sqlite3
import threading
import time
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from parley.infra import paths

logger = logging.getLogger(__name__)

CONVERSATION_DB: Path = paths.CONVERSATION_DB

# Per-thread cached connection.
_local = threading.local()


async def async_call(fn: Callable, *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous database function in a thread.

    Usage::

        conv = await database.async_call(database.get_or_create_conversation, room_id)
    """
    return await asyncio.to_thread(fn, *args, **kwargs)


def _connect() -> sqlite3.Connection:
    """Return a WAL-mode connection, cached per-thread.

    If the cached connection is broken, or points at a different database
    file than ``CONVERSATION_DB``, a fresh one is opened.
    """
    conn: sqlite3.Connection | None = getattr(_local, "conn", None)
    if conn is not None and getattr(_local, "path", None) == str(CONVERSATION_DB):
        try:
            conn.execute("SELECT 1")
            return conn
        except sqlite3.Error:
            pass
    if conn is not None:
        try:
            conn.close()
        except sqlite3.Error:
            pass
        _local.conn = None

    conn = sqlite3.connect(CONVERSATION_DB)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    _local.conn = conn
    _local.path = str(CONVERSATION_DB)
    return conn


def _add_column(conn: sqlite3.Connection, table: str, column: str, col_type: str) -> None:
    """Add a column to an existing table if it does not already exist."""
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column not in existing:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
        conn.commit()


def run_migrations(conn: sqlite3.Connection) -> None:
    """Ensure all tables and columns exist."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS room_conversations (
            room_id         TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            room_name       TEXT,
            is_dm           INTEGER NOT NULL DEFAULT 0,
            created         REAL    NOT NULL
        );
        CREATE TABLE IF NOT EXISTS message_mappings (
            event_id        TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            sender          TEXT,
            room_id         TEXT,
            created         REAL NOT NULL
        );
        CREATE TABLE IF NOT EXISTS audio_messages (
            event_id        TEXT PRIMARY KEY,
            conversation_id TEXT,
            room_id         TEXT,
            text            TEXT NOT NULL,
            created         REAL NOT NULL
        );
        CREATE TABLE IF NOT EXISTS messages (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id TEXT    NOT NULL,
            timestamp       REAL    NOT NULL,
            role            TEXT    NOT NULL,
            content         TEXT    NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages (conversation_id, id);
    """)
    _add_column(conn, "message_mappings", "reply_event_id", "TEXT")
    conn.commit()


def init_db() -> None:
    """Create tables if they don't exist, and run migrations."""
    CONVERSATION_DB.parent.mkdir(parents=True, exist_ok=True)
    with _connect() as conn:
        run_migrations(conn)
    logger.debug("Database initialised at %s", CONVERSATION_DB)


# ---------------------------------------------------------------------------
# Room <-> conversation
# ---------------------------------------------------------------------------

def get_conversation(room_id: str) -> Optional[str]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT conversation_id FROM room_conversations WHERE room_id=?",
            (room_id,),
        ).fetchone()
    return row[0] if row else None


def get_or_create_conversation(room_id: str, room_name: str = "", is_dm: bool = False) -> str:
    """Return the conversation id bound to *room_id*, creating one if needed."""
    existing = get_conversation(room_id)
    if existing is not None:
        return existing
    conversation_id = uuid.uuid4().hex
    with _connect() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO room_conversations "
            "(room_id, conversation_id, room_name, is_dm, created) VALUES (?, ?, ?, ?, ?)",
            (room_id, conversation_id, room_name, int(is_dm), time.time()),
        )
        conn.commit()
    return get_conversation(room_id) or conversation_id


def reset_conversation(room_id: str) -> str:
    """Bind *room_id* to a fresh conversation id and return it."""
    conversation_id = uuid.uuid4().hex
    with _connect() as conn:
        conn.execute(
            "INSERT INTO room_conversations (room_id, conversation_id, created) VALUES (?, ?, ?) "
            "ON CONFLICT(room_id) DO UPDATE SET conversation_id=excluded.conversation_id",
            (room_id, conversation_id, time.time()),
        )
        conn.commit()
    return conversation_id


# ---------------------------------------------------------------------------
# Message <-> conversation
# ---------------------------------------------------------------------------

def store_message_mapping(event_id: str, conversation_id: str, sender: str = "",
                          room_id: str = "", reply_event_id: str = "") -> None:
    with _connect() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO message_mappings "
            "(event_id, conversation_id, sender, room_id, reply_event_id, created) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (event_id, conversation_id, sender, room_id, reply_event_id, time.time()),
        )
        conn.commit()


def get_message_mapping(event_id: str) -> Optional[dict]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT event_id, conversation_id, sender, room_id, reply_event_id "
            "FROM message_mappings WHERE event_id=?",
            (event_id,),
        ).fetchone()
    if row is None:
        return None
    keys = ("event_id", "conversation_id", "sender", "room_id", "reply_event_id")
    return dict(zip(keys, row))


# ---------------------------------------------------------------------------
# Audio -> text
# ---------------------------------------------------------------------------

def store_audio_message(event_id: str, text: str, conversation_id: str = "", room_id: str = "") -> None:
    with _connect() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO audio_messages "
            "(event_id, conversation_id, room_id, text, created) VALUES (?, ?, ?, ?, ?)",
            (event_id, conversation_id, room_id, text, time.time()),
        )
        conn.commit()


def get_audio_text(event_id: str) -> Optional[str]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT text FROM audio_messages WHERE event_id=?", (event_id,),
        ).fetchone()
    return row[0] if row else None


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

def append_message(conversation_id: str, role: str, content: str) -> int:
    """Insert a message and return its row id."""
    with _connect() as conn:
        cur = conn.execute(
            "INSERT INTO messages (conversation_id, timestamp, role, content) VALUES (?, ?, ?, ?)",
            (conversation_id, time.time(), role, content),
        )
        conn.commit()
        return cur.lastrowid


def load_history(conversation_id: str, limit: int = 50) -> list[dict]:
    """Return the last *limit* messages of a conversation, oldest first."""
    with _connect() as conn:
        rows = conn.execute(
            "SELECT role, content FROM messages WHERE conversation_id=? "
            "ORDER BY id DESC LIMIT ?",
            (conversation_id, limit),
        ).fetchall()
    return [{"role": role, "content": content} for role, content in reversed(rows)]


def count_messages(conversation_id: str) -> int:
    with _connect() as conn:
        row = conn.execute(
            "SELECT COUNT(*) FROM messages WHERE conversation_id=?", (conversation_id,),
        ).fetchone()
    return int(row[0])
