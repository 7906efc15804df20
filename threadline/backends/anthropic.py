"""
Anthropic backend: Messages API.

The system instruction goes in the top-level `system` field. Turns are
sent exactly as given; if the API rejects their shape (e.g. two user
turns in a row) the rejection surfaces as ProviderError.
Streams end on the `message_stop` event.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from threadline.backends.base import BaseProvider
from threadline.models import NormalizedRequest, NormalizedResponse, StreamChunk

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    """Backend for the Anthropic Messages API."""

    family = "anthropic"
    default_url = "https://api.anthropic.com"
    default_models = (
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    )
    default_finish_reason = "end_turn"

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "Content-Type": "application/json",
        }

    def _body(self, request: NormalizedRequest, stream: bool) -> dict:
        system, turns = self.split_system(request.messages)
        if not turns:
            raise self._error("request has no user or assistant turns")
        body = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [m.to_dict() for m in turns],
        }
        if system is not None:
            body["system"] = system
        if stream:
            body["stream"] = True
        return body

    async def complete(self, request: NormalizedRequest) -> NormalizedResponse:
        self._require_key()
        data = await self._post_json(
            f"{self.url}/v1/messages",
            self._body(request, stream=False),
            self._headers(),
        )
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise self._error("malformed response: missing content")
        content = "".join(
            b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"
        )

        usage = data.get("usage") or {}
        tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
        return NormalizedResponse(
            content=content,
            model=data.get("model") or request.model,
            tokens_used=tokens,
            finish_reason=data.get("stop_reason") or self.default_finish_reason,
        )

    async def stream_complete(self, request: NormalizedRequest) -> AsyncIterator[StreamChunk]:
        self._require_key()
        body = self._body(request, stream=True)
        finished = False
        async with self._events(f"{self.url}/v1/messages", body, self._headers()) as events:
            async for data in events:
                event = self._decode(data)
                etype = event.get("type")
                if etype == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield StreamChunk(content=delta["text"])
                elif etype == "message_stop":
                    finished = True
                    break
                elif etype == "error":
                    err = event.get("error") or {}
                    raise self._error(err.get("message") or "stream error")

        if not finished:
            raise self._error("stream ended before message_stop")
        yield StreamChunk(done=True)
