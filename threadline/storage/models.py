"""
Data models for conversation storage.
These define the shape of rows handed between the store and the
conversation service.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StoredMessage:
    """A single persisted message in a conversation."""
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str = ""
    role: str = ""           # "user", "assistant", "system"
    content: str = ""
    tokens_used: int = 0
    model_used: str = ""
    created_at: str = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "tokens_used": self.tokens_used,
            "model_used": self.model_used,
            "created_at": self.created_at,
        }


@dataclass
class Conversation:
    """Conversation header plus, when loaded, its messages."""
    id: str = field(default_factory=lambda: uuid4().hex)
    workspace_id: str = ""
    user_id: str = ""
    title: str = "New Conversation"
    status: str = "active"
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)
    messages: list[StoredMessage] | None = None
    message_count: int | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "user_id": self.user_id,
            "title": self.title,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.messages is not None:
            data["messages"] = [m.to_dict() for m in self.messages]
        if self.message_count is not None:
            data["message_count"] = self.message_count
        return data
