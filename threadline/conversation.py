"""
Conversation service: sequences one chat exchange:

    persist user message → update context → orchestrator
        → persist assistant message → update context → usage

It sits between the HTTP layer and the two core pieces (ContextManager,
Orchestrator). Storage and quotas go through the injected store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator

from threadline.context import ContextManager
from threadline.errors import (
    ConversationNotFoundError,
    QuotaExceededError,
    ThreadlineError,
    ValidationError,
)
from threadline.orchestrator import Orchestrator
from threadline.storage.models import Conversation, StoredMessage
from threadline.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Be concise, accurate, and helpful."

TITLE_PROMPT = (
    'Generate a short, concise title (max 6 words) for a conversation that starts with: '
    '"{first}". Only return the title, nothing else.'
)


class ConversationService:
    """Runs chat exchanges for stored conversations."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        contexts: ContextManager,
        store: SQLiteStore,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        auto_title: bool = True,
        title_model: str = "gpt-3.5-turbo",
    ):
        self.orchestrator = orchestrator
        self.contexts = contexts
        self.store = store
        self.system_prompt = system_prompt
        self.auto_title = auto_title
        self.title_model = title_model
        # One lock per conversation id; exchanges on the same conversation run one at a time.
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(
        cls,
        cfg: dict,
        orchestrator: Orchestrator,
        contexts: ContextManager,
        store: SQLiteStore,
    ) -> "ConversationService":
        conv_cfg = cfg.get("conversation", {}) or {}
        return cls(
            orchestrator=orchestrator,
            contexts=contexts,
            store=store,
            system_prompt=conv_cfg.get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
            auto_title=conv_cfg.get("auto_title", True),
            title_model=conv_cfg.get("title_model", "gpt-3.5-turbo"),
        )

    # ------------------------------------------------------------------
    # Conversation CRUD
    # ------------------------------------------------------------------

    def create_conversation(
        self, user_id: str, workspace_id: str, title: str | None = None
    ) -> Conversation:
        conv = self.store.create_conversation(
            Conversation(
                workspace_id=workspace_id,
                user_id=user_id,
                title=title or "New Conversation",
            )
        )
        self.contexts.create_context(conv.id, user_id, workspace_id, self.system_prompt)
        return conv

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    def _require(self, conversation_id: str, user_id: str) -> Conversation:
        conv = self.store.get_conversation(conversation_id, user_id)
        if conv is None:
            raise ConversationNotFoundError(conversation_id)
        return conv

    def _ensure_context(self, conv: Conversation, history: list[StoredMessage] | None = None):
        """Rebuild the context from stored history if it isn't live (e.g. after a restart or sweep)."""
        if self.contexts.get_context(conv.id) is not None:
            return
        if history is None:
            history = self.store.get_messages(conv.id)
        self.contexts.load_from_messages(
            conv.id,
            conv.user_id,
            conv.workspace_id,
            [m.to_dict() for m in history],
            self.system_prompt,
        )

    def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        """Fetch a conversation with its messages, loading its context if needed."""
        conv = self._require(conversation_id, user_id)
        conv.messages = self.store.get_messages(conversation_id)
        self._ensure_context(conv, conv.messages)
        return conv

    def list_conversations(
        self, user_id: str, workspace_id: str | None = None, limit: int = 50
    ) -> list[Conversation]:
        return self.store.list_conversations(user_id, workspace_id, limit)

    def update_title(self, conversation_id: str, user_id: str, title: str):
        self._require(conversation_id, user_id)
        self.store.update_title(conversation_id, title, user_id)

    def archive_conversation(self, conversation_id: str, user_id: str):
        self.store.archive(conversation_id, user_id)
        self.contexts.clear_context(conversation_id)
        self._locks.pop(conversation_id, None)

    def delete_conversation(self, conversation_id: str, user_id: str):
        self.store.delete(conversation_id, user_id)
        self.contexts.clear_context(conversation_id)
        self._locks.pop(conversation_id, None)

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    def _check_quotas(self, workspace_id: str):
        exhausted = self.store.exhausted_quotas(workspace_id)
        if exhausted:
            raise QuotaExceededError(exhausted[0])

    def _begin(
        self, conversation_id: str, user_id: str, content: str, model: str | None
    ) -> tuple[Conversation, str, StoredMessage]:
        """Shared front half of an exchange: checks, then the user message."""
        if not content or not content.strip():
            raise ValidationError("Message content is required")
        conv = self._require(conversation_id, user_id)
        self._check_quotas(conv.workspace_id)
        model, _ = self.orchestrator.resolve_model(model)
        self._ensure_context(conv)

        user_msg = self.store.store_message(
            StoredMessage(
                conversation_id=conversation_id,
                role="user",
                content=content,
                tokens_used=self.orchestrator.count_tokens(content),
                model_used=model,
            )
        )
        self.contexts.add_message(conversation_id, "user", content, user_msg.tokens_used)
        return conv, model, user_msg

    async def _finish(
        self,
        conv: Conversation,
        user_msg: StoredMessage,
        content: str,
        tokens_used: int,
        model: str,
    ) -> StoredMessage:
        """Shared back half: persist the answer, update context and usage."""
        ai_msg = self.store.store_message(
            StoredMessage(
                conversation_id=conv.id,
                role="assistant",
                content=content,
                tokens_used=tokens_used,
                model_used=model,
            )
        )
        self.contexts.add_message(conv.id, "assistant", content, tokens_used)
        self.contexts.set_model(conv.id, model)
        self.store.touch(conv.id)
        self.store.add_usage(conv.workspace_id, user_msg.tokens_used + tokens_used)

        if self.auto_title and self.store.message_count(conv.id) == 2:
            await self._generate_title(conv.id, user_msg.content)
        return ai_msg

    async def send_message(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        model: str | None = None,
    ) -> dict:
        """Blocking exchange. Returns both stored messages."""
        async with self._lock(conversation_id):
            conv, model, user_msg = self._begin(conversation_id, user_id, content, model)

            messages = self.contexts.get_messages_for_ai(conversation_id)
            response = await self.orchestrator.chat(messages, model=model)

            ai_msg = await self._finish(
                conv, user_msg, response.content, response.tokens_used, response.model
            )
        return {"user_message": user_msg.to_dict(), "ai_message": ai_msg.to_dict()}

    async def stream_message(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        model: str | None = None,
    ) -> AsyncIterator[dict]:
        """
        Streaming exchange. Yields events:
            {type: "user", content, message_id}
            {type: "ai",   content}            one per chunk
            {type: "done", content: "", message_id}
        A provider failure propagates; the partial answer is not stored.
        The conversation stays locked until the stream ends or is closed.
        """
        async with self._lock(conversation_id):
            conv, model, user_msg = self._begin(conversation_id, user_id, content, model)
            yield {"type": "user", "content": content, "message_id": user_msg.id}

            messages = self.contexts.get_messages_for_ai(conversation_id)
            parts: list[str] = []
            async with aclosing(self.orchestrator.stream_chat(messages, model=model)) as chunks:
                async for chunk in chunks:
                    if chunk.content:
                        parts.append(chunk.content)
                        yield {"type": "ai", "content": chunk.content}
                    if chunk.done:
                        break

            full = "".join(parts)
            ai_msg = await self._finish(
                conv, user_msg, full, self.orchestrator.count_tokens(full), model
            )
            yield {"type": "done", "content": "", "message_id": ai_msg.id}

    async def _generate_title(self, conversation_id: str, first_message: str):
        """Name the conversation after its first message. Failures only get logged."""
        try:
            response = await self.orchestrator.chat(
                [{"role": "user", "content": TITLE_PROMPT.format(first=first_message[:100])}],
                model=self.title_model,
                max_tokens=20,
            )
        except ThreadlineError as e:
            logger.warning("Title generation failed for %s: %s", conversation_id, e)
            return

        title = response.content.strip().strip("\"'").strip()
        if title:
            self.store.update_title(conversation_id, title)
