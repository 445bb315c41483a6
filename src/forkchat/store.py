"""Thread store: SQLite persistence of chat threads and their messages.

Best-effort by contract: callers that mirror live chain operations
(see forkchat.recorder) must never let a store failure reach the chain.
"""

import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from forkchat.config import FORKCHAT_DB

THREAD_COLUMNS = {"title", "category", "summary", "last_response_id", "updated_at"}
DEFAULT_CATEGORY = "recent"
DEFAULT_OWNER = "local"


@dataclass
class StoredMessage:
    """A persisted turn."""

    id: str
    role: str  # user, assistant, context
    text: str
    created_at: float
    response_id: str | None = None
    meta: dict = field(default_factory=dict)


@dataclass
class StoredThread:
    """A persisted conversation with its messages."""

    id: str
    title: str
    category: str
    created_at: float
    updated_at: float
    summary: str | None = None
    last_response_id: str | None = None
    messages: list[StoredMessage] = field(default_factory=list)


class ChatStore:
    """SQLite-backed thread store.

    Every query is scoped to one owner id (a user or session identifier);
    threads of other owners are invisible.
    """

    def __init__(self, db_path: Path | None = None, owner: str = DEFAULT_OWNER):
        self.db_path = Path(db_path or FORKCHAT_DB)
        self.owner = owner
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                owner TEXT DEFAULT 'local',
                title TEXT,
                category TEXT DEFAULT 'recent',
                summary TEXT,
                created_at REAL,
                updated_at REAL,
                last_response_id TEXT
            );

            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT,
                thread_id TEXT,
                role TEXT,
                text TEXT,
                created_at REAL,
                response_id TEXT,
                meta_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id);
            CREATE INDEX IF NOT EXISTS idx_threads_updated ON threads(updated_at);
        """)
        columns = {row[1] for row in conn.execute("PRAGMA table_info(threads)")}
        if "owner" not in columns:
            conn.execute("ALTER TABLE threads ADD COLUMN owner TEXT DEFAULT 'local'")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_threads_owner ON threads(owner)")
        conn.commit()
        conn.close()

    # --- Threads ---

    def create_thread(self, title: str = "New Chat", category: str = DEFAULT_CATEGORY) -> StoredThread:
        now = time.time()
        thread = StoredThread(
            id=str(uuid.uuid4()),
            title=title,
            category=category,
            created_at=now,
            updated_at=now,
        )
        conn = self._connect()
        conn.execute(
            "INSERT INTO threads (id, owner, title, category, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (thread.id, self.owner, thread.title, thread.category, now, now),
        )
        conn.commit()
        conn.close()
        return thread

    def update_thread(self, thread_id: str, **kwargs) -> None:
        invalid = set(kwargs) - THREAD_COLUMNS
        if invalid:
            raise ValueError(f"Invalid thread columns: {sorted(invalid)}")
        kwargs["updated_at"] = time.time()
        sets = ", ".join(f"{k} = ?" for k in kwargs)
        values = list(kwargs.values()) + [thread_id, self.owner]
        conn = self._connect()
        conn.execute(f"UPDATE threads SET {sets} WHERE id = ? AND owner = ?", values)
        conn.commit()
        conn.close()

    def get_thread(self, thread_id: str) -> StoredThread | None:
        conn = self._connect()
        row = conn.execute(
            "SELECT id, title, category, created_at, updated_at, summary, last_response_id "
            "FROM threads WHERE id = ? AND owner = ?",
            (thread_id, self.owner),
        ).fetchone()
        if not row:
            conn.close()
            return None
        rows = conn.execute(
            "SELECT id, role, text, created_at, response_id, meta_json FROM messages "
            "WHERE thread_id = ? ORDER BY seq",
            (thread_id,),
        ).fetchall()
        conn.close()
        thread = StoredThread(*row)
        thread.messages = [
            StoredMessage(
                id=r[0], role=r[1], text=r[2], created_at=r[3], response_id=r[4],
                meta=json.loads(r[5]) if r[5] else {},
            )
            for r in rows
        ]
        return thread

    def list_threads(self, limit: int = 50) -> list[StoredThread]:
        """Thread metadata (without messages), most recently updated first."""
        conn = self._connect()
        rows = conn.execute(
            "SELECT id, title, category, created_at, updated_at, summary, last_response_id "
            "FROM threads WHERE owner = ? ORDER BY updated_at DESC LIMIT ?",
            (self.owner, limit),
        ).fetchall()
        conn.close()
        return [StoredThread(*r) for r in rows]

    def delete_thread(self, thread_id: str) -> None:
        conn = self._connect()
        deleted = conn.execute(
            "DELETE FROM threads WHERE id = ? AND owner = ?", (thread_id, self.owner)
        ).rowcount
        if deleted:
            conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
        conn.commit()
        conn.close()

    # --- Messages ---

    def append_message(self, thread_id: str, message: StoredMessage) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT INTO messages (id, thread_id, role, text, created_at, response_id, meta_json) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                message.id, thread_id, message.role, message.text, message.created_at,
                message.response_id, json.dumps(message.meta) if message.meta else None,
            ),
        )
        conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (time.time(), thread_id))
        conn.commit()
        conn.close()

    def count_messages(self, thread_id: str) -> int:
        conn = self._connect()
        count = conn.execute(
            "SELECT COUNT(*) FROM messages WHERE thread_id = ?", (thread_id,)
        ).fetchone()[0]
        conn.close()
        return count
