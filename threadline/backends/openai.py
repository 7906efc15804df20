"""
OpenAI backend: chat completions API.

The system instruction travels as a leading system-role message, which is
OpenAI's dedicated channel for it. Streams end on a non-null
finish_reason or the `data: [DONE]` marker, whichever comes first.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from threadline.backends.base import BaseProvider
from threadline.models import NormalizedRequest, NormalizedResponse, StreamChunk

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    """Backend for the OpenAI chat completions API."""

    family = "openai"
    default_url = "https://api.openai.com"
    default_models = ("gpt-4-turbo", "gpt-4", "gpt-3.5-turbo")
    default_finish_reason = "stop"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, request: NormalizedRequest, stream: bool) -> dict:
        system, turns = self.split_system(request.messages)
        messages = [{"role": "system", "content": system}] if system is not None else []
        messages.extend(m.to_dict() for m in turns)
        return {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }

    async def complete(self, request: NormalizedRequest) -> NormalizedResponse:
        self._require_key()
        data = await self._post_json(
            f"{self.url}/v1/chat/completions",
            self._body(request, stream=False),
            self._headers(),
        )
        try:
            choice = data["choices"][0]
            content = (choice.get("message") or {}).get("content") or ""
        except (KeyError, IndexError, TypeError) as e:
            raise self._error(f"malformed response: missing {e}") from e

        usage = data.get("usage") or {}
        return NormalizedResponse(
            content=content,
            model=data.get("model") or request.model,
            tokens_used=int(usage.get("total_tokens") or 0),
            finish_reason=choice.get("finish_reason") or self.default_finish_reason,
        )

    async def stream_complete(self, request: NormalizedRequest) -> AsyncIterator[StreamChunk]:
        self._require_key()
        finished = False
        async with self._events(
            f"{self.url}/v1/chat/completions",
            self._body(request, stream=True),
            self._headers(),
        ) as events:
            async for data in events:
                if data == "[DONE]":
                    finished = True
                    break
                event = self._decode(data)
                if event.get("error"):
                    err = event["error"]
                    raise self._error(err.get("message", str(err)) if isinstance(err, dict) else str(err))
                choices = event.get("choices") or []
                if not choices:
                    continue
                choice = choices[0]
                text = (choice.get("delta") or {}).get("content") or ""
                if text:
                    yield StreamChunk(content=text)
                if choice.get("finish_reason") is not None:
                    finished = True
                    break

        if not finished:
            raise self._error("stream ended before a finish signal")
        yield StreamChunk(done=True)
