"""
Data shapes exchanged between the context manager, the orchestrator
and the provider backends.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from threadline.errors import ValidationError

VALID_ROLES = ("system", "user", "assistant")


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token. Not a real tokenizer."""
    return math.ceil(len(text) / 4)


def estimate_message_tokens(messages) -> int:
    return sum(estimate_tokens(m.content) for m in messages)


@dataclass
class Message:
    """A single chat turn."""
    role: str
    content: str
    tokens_used: int = 0

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=data.get("role", ""),
            content=data.get("content") or "",
            tokens_used=int(data.get("tokens_used") or 0),
        )


@dataclass
class NormalizedRequest:
    """Provider-agnostic completion request."""
    messages: list[Message] = field(default_factory=list)
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 2000
    stream: bool = False

    def validate(self) -> None:
        """Raise ValidationError if the request can't be sent anywhere."""
        if not self.messages:
            raise ValidationError("messages must not be empty")
        for msg in self.messages:
            if msg.role not in VALID_ROLES:
                raise ValidationError(f"invalid message role: {msg.role!r}")
        if not 0 <= self.temperature <= 2:
            raise ValidationError(
                f"temperature must be within [0, 2], got {self.temperature}"
            )
        if self.max_tokens <= 0:
            raise ValidationError(
                f"max_tokens must be positive, got {self.max_tokens}"
            )


@dataclass
class NormalizedResponse:
    """Provider-agnostic completion result.

    tokens_used == 0 means the vendor did not report usage, not that the
    response was empty.
    """
    content: str
    model: str
    tokens_used: int = 0
    finish_reason: str = "stop"

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "finish_reason": self.finish_reason,
        }


@dataclass
class StreamChunk:
    """One increment of a streamed answer. The last chunk has done=True."""
    content: str = ""
    done: bool = False

    def to_dict(self) -> dict:
        return {"content": self.content, "done": self.done}
