"""
context.py: per-conversation message windows.

One ConversationContext per live conversation id, held in a process-wide
map. Each append runs the two-stage trim before returning:

  1. Count: over max_messages, keep every system message plus the most
     recent non-system messages that fit, oldest evicted first.
  2. Budget: while the chars/4 estimate exceeds max_tokens, drop the
     oldest non-system message, never going below min_retained of them.

System messages are exempt from both stages.

Mutations take the context's own lock, so the manager is safe when sync
handlers run on worker threads. Different conversation ids never contend
for the same context lock; only the brief map lookups are shared.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from threadline.errors import ContextNotFoundError, ValidationError
from threadline.models import VALID_ROLES, Message, estimate_message_tokens

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 50
DEFAULT_MAX_TOKENS = 8000
DEFAULT_MIN_RETAINED = 2


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ContextMetadata:
    user_id: str
    workspace_id: str
    model: str
    total_tokens: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class ConversationContext:
    """The bounded message window of one conversation."""
    conversation_id: str
    metadata: ContextMetadata
    messages: list[Message] = field(default_factory=list)
    system_prompt: str | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


class ContextManager:
    """Owns every live ConversationContext, keyed by conversation id."""

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        min_retained: int = DEFAULT_MIN_RETAINED,
        default_model: str = "gpt-4-turbo",
    ):
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self.min_retained = min_retained
        self.default_model = default_model
        self._contexts: dict[str, ConversationContext] = {}
        self._map_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: dict) -> "ContextManager":
        ctx_cfg = cfg.get("context", {}) or {}
        return cls(
            max_messages=ctx_cfg.get("max_messages", DEFAULT_MAX_MESSAGES),
            max_tokens=ctx_cfg.get("max_tokens", DEFAULT_MAX_TOKENS),
            min_retained=ctx_cfg.get("min_retained", DEFAULT_MIN_RETAINED),
            default_model=(cfg.get("ai", {}) or {}).get("default_model") or "gpt-4-turbo",
        )

    def _require(self, conversation_id: str) -> ConversationContext:
        with self._map_lock:
            context = self._contexts.get(conversation_id)
        if context is None:
            raise ContextNotFoundError(conversation_id)
        return context

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_context(
        self,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        system_prompt: str | None = None,
    ) -> ConversationContext:
        """Create a fresh context, replacing any existing one for this id."""
        context = ConversationContext(
            conversation_id=conversation_id,
            metadata=ContextMetadata(
                user_id=user_id,
                workspace_id=workspace_id,
                model=self.default_model,
            ),
            system_prompt=system_prompt,
        )
        with self._map_lock:
            self._contexts[conversation_id] = context
        return context

    def get_context(self, conversation_id: str) -> ConversationContext | None:
        """Return the live context, or None. Never creates one."""
        with self._map_lock:
            return self._contexts.get(conversation_id)

    def load_from_messages(
        self,
        conversation_id: str,
        user_id: str,
        workspace_id: str,
        raw_messages: list[dict | Message],
        system_prompt: str | None = None,
    ) -> ConversationContext:
        """
        Rebuild a context from persisted history.
        Rows with roles outside system/user/assistant are skipped, and
        total_tokens is recomputed over what remains.
        """
        messages: list[Message] = []
        for raw in raw_messages:
            msg = raw if isinstance(raw, Message) else Message.from_dict(raw)
            if msg.role in VALID_ROLES:
                messages.append(Message(msg.role, msg.content, msg.tokens_used))

        context = ConversationContext(
            conversation_id=conversation_id,
            metadata=ContextMetadata(
                user_id=user_id,
                workspace_id=workspace_id,
                model=self.default_model,
                total_tokens=estimate_message_tokens(messages),
            ),
            messages=messages,
            system_prompt=system_prompt,
        )
        with self._map_lock:
            self._contexts[conversation_id] = context
        logger.debug(
            "Loaded context %s from %d stored messages (%d kept)",
            conversation_id, len(raw_messages), len(messages),
        )
        return context

    def clear_context(self, conversation_id: str) -> None:
        """Drop the context. Clearing an unknown id is a no-op."""
        with self._map_lock:
            self._contexts.pop(conversation_id, None)

    def cleanup_old_contexts(self, max_age_minutes: float = 60) -> int:
        """Remove contexts idle longer than max_age_minutes. Returns how many."""
        cutoff = _now() - timedelta(minutes=max_age_minutes)
        with self._map_lock:
            stale = [
                cid for cid, ctx in self._contexts.items()
                if ctx.metadata.updated_at < cutoff
            ]
            for cid in stale:
                del self._contexts[cid]
        if stale:
            logger.info("Swept %d idle contexts (older than %s min)", len(stale), max_age_minutes)
        return len(stale)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tokens_used: int = 0,
    ) -> None:
        """Append a message, then trim the window."""
        if role not in VALID_ROLES:
            raise ValidationError(f"invalid message role: {role!r}")
        if tokens_used < 0:
            raise ValidationError("tokens_used must be >= 0")
        context = self._require(conversation_id)
        with context.lock:
            context.messages.append(Message(role, content, tokens_used))
            context.metadata.total_tokens += tokens_used
            context.metadata.updated_at = _now()
            self._trim(context)

    def update_system_prompt(self, conversation_id: str, system_prompt: str) -> None:
        """
        Replace the system prompt and keep the single system-role entry
        in the window in step with it.
        """
        context = self._require(conversation_id)
        with context.lock:
            context.system_prompt = system_prompt
            for msg in context.messages:
                if msg.role == "system":
                    msg.content = system_prompt
                    break
            else:
                context.messages.insert(0, Message("system", system_prompt))
            context.metadata.updated_at = _now()

    def set_model(self, conversation_id: str, model: str) -> None:
        """Record the model that last answered in this conversation."""
        context = self._require(conversation_id)
        with context.lock:
            context.metadata.model = model

    def _trim(self, context: ConversationContext) -> None:
        messages = context.messages

        if len(messages) > self.max_messages:
            system = [m for m in messages if m.role == "system"]
            other = [m for m in messages if m.role != "system"]
            keep = max(self.max_messages - len(system), 0)
            messages = system + (other[-keep:] if keep else [])

        if estimate_message_tokens(messages) > self.max_tokens:
            system = [m for m in messages if m.role == "system"]
            other = [m for m in messages if m.role != "system"]
            while (
                estimate_message_tokens(system) + estimate_message_tokens(other) > self.max_tokens
                and len(other) > self.min_retained
            ):
                other.pop(0)
            messages = system + other

        if len(messages) != len(context.messages):
            logger.debug(
                "Trimmed context %s from %d to %d messages",
                context.conversation_id, len(context.messages), len(messages),
            )
        context.messages = messages

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_messages_for_ai(self, conversation_id: str) -> list[Message]:
        """The exact ordered payload for the orchestrator: system prompt first, then the window."""
        context = self._require(conversation_id)
        with context.lock:
            out: list[Message] = []
            if context.system_prompt:
                out.append(Message("system", context.system_prompt))
            out.extend(Message(m.role, m.content, m.tokens_used) for m in context.messages)
            return out

    def get_context_summary(self, conversation_id: str) -> dict | None:
        context = self.get_context(conversation_id)
        if context is None:
            return None
        with context.lock:
            return {
                "message_count": len(context.messages),
                "total_tokens": context.metadata.total_tokens,
                "model": context.metadata.model,
                "last_updated": context.metadata.updated_at.isoformat(),
            }

    def get_active_contexts(self) -> list[dict]:
        """Snapshot of every live context, for monitoring."""
        with self._map_lock:
            contexts = list(self._contexts.values())
        return [
            {
                "conversation_id": ctx.conversation_id,
                "message_count": len(ctx.messages),
                "total_tokens": ctx.metadata.total_tokens,
                "user_id": ctx.metadata.user_id,
            }
            for ctx in contexts
        ]

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._contexts)
