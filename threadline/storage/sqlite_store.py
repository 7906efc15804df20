"""
SQLite storage for conversations, messages and usage quotas.
Single portable file. The conversation service is the only caller; the
context manager and orchestrator never touch it.
"""

import sqlite3
import logging
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager

from threadline.storage.models import Conversation, StoredMessage

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    archived_at TEXT DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tokens_used INTEGER DEFAULT 0,
    model_used TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS usage_quotas (
    workspace_id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    limit_value INTEGER NOT NULL,
    current_usage INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (workspace_id, resource_type)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id);
CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id, updated_at);
"""

# Quota resources checked before every exchange
QUOTA_RESOURCES = ("messages", "ai_tokens")


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    keys = row.keys()
    return Conversation(
        id=row["id"],
        workspace_id=row["workspace_id"],
        user_id=row["user_id"],
        title=row["title"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        message_count=row["message_count"] if "message_count" in keys else None,
    )


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        tokens_used=row["tokens_used"] or 0,
        model_used=row["model_used"] or "",
        created_at=row["created_at"],
    )


class SQLiteStore:
    """Thread-safe SQLite conversation store (one connection per call)."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, conv: Conversation) -> Conversation:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations
                   (id, workspace_id, user_id, title, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (conv.id, conv.workspace_id, conv.user_id, conv.title,
                 conv.status, conv.created_at, conv.updated_at),
            )
        logger.debug("Created conversation %s (user=%s)", conv.id, conv.user_id)
        return conv

    def get_conversation(self, conversation_id: str, user_id: str) -> Conversation | None:
        """Fetch an unarchived conversation owned by user_id, without messages."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM conversations
                   WHERE id = ? AND user_id = ? AND archived_at IS NULL""",
                (conversation_id, user_id),
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def list_conversations(
        self, user_id: str, workspace_id: str | None = None, limit: int = 50
    ) -> list[Conversation]:
        query = """
            SELECT c.*, COUNT(m.id) AS message_count
            FROM conversations c
            LEFT JOIN messages m ON c.id = m.conversation_id
            WHERE c.user_id = ? AND c.archived_at IS NULL
        """
        params: list = [user_id]
        if workspace_id:
            query += " AND c.workspace_id = ?"
            params.append(workspace_id)
        query += " GROUP BY c.id ORDER BY c.updated_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def touch(self, conversation_id: str):
        with self._connect() as conn:
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (_utcnow(), conversation_id),
            )

    def update_title(self, conversation_id: str, title: str, user_id: str | None = None):
        sql = "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?"
        params: list = [title, _utcnow(), conversation_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._connect() as conn:
            conn.execute(sql, params)

    def archive(self, conversation_id: str, user_id: str):
        now = _utcnow()
        with self._connect() as conn:
            conn.execute(
                """UPDATE conversations SET archived_at = ?, status = 'archived', updated_at = ?
                   WHERE id = ? AND user_id = ?""",
                (now, now, conversation_id, user_id),
            )

    def delete(self, conversation_id: str, user_id: str):
        with self._connect() as conn:
            owned = conn.execute(
                "SELECT 1 FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
            if not owned:
                return
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def store_message(self, msg: StoredMessage) -> StoredMessage:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO messages
                   (id, conversation_id, role, content, tokens_used, model_used, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (msg.id, msg.conversation_id, msg.role, msg.content,
                 msg.tokens_used, msg.model_used, msg.created_at),
            )
        logger.debug("Stored message %s (role=%s, conv=%s)", msg.id, msg.role, msg.conversation_id)
        return msg

    def get_messages(self, conversation_id: str) -> list[StoredMessage]:
        """All messages of a conversation in insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at, rowid",
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def message_count(self, conversation_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return row["n"]

    # ------------------------------------------------------------------
    # Usage quotas
    # ------------------------------------------------------------------

    def set_quota(self, workspace_id: str, resource_type: str, limit_value: int, current_usage: int = 0):
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO usage_quotas
                   (workspace_id, resource_type, limit_value, current_usage, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (workspace_id, resource_type, limit_value, current_usage, _utcnow()),
            )

    def exhausted_quotas(self, workspace_id: str) -> list[str]:
        """Resource types whose usage has reached the limit. No row means unlimited."""
        placeholders = ",".join("?" for _ in QUOTA_RESOURCES)
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT resource_type, limit_value, current_usage FROM usage_quotas
                    WHERE workspace_id = ? AND resource_type IN ({placeholders})""",
                (workspace_id, *QUOTA_RESOURCES),
            ).fetchall()
        return [r["resource_type"] for r in rows if r["current_usage"] >= r["limit_value"]]

    def add_usage(self, workspace_id: str, tokens_used: int):
        """Count one exchange and its tokens against the workspace quotas."""
        now = _utcnow()
        with self._connect() as conn:
            conn.execute(
                """UPDATE usage_quotas SET current_usage = current_usage + 1, updated_at = ?
                   WHERE workspace_id = ? AND resource_type = 'messages'""",
                (now, workspace_id),
            )
            conn.execute(
                """UPDATE usage_quotas SET current_usage = current_usage + ?, updated_at = ?
                   WHERE workspace_id = ? AND resource_type = 'ai_tokens'""",
                (tokens_used, now, workspace_id),
            )

    def get_usage(self, workspace_id: str) -> dict[str, dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM usage_quotas WHERE workspace_id = ?", (workspace_id,)
            ).fetchall()
        return {
            r["resource_type"]: {"limit": r["limit_value"], "used": r["current_usage"]}
            for r in rows
        }
