"""
Google backend: Gemini generateContent API.

Gemini wants roles `user` and `model` and a separate `systemInstruction`.
Every non-system message becomes one entry in `contents`, in order; the
last entry is the turn being answered and the ones before it are the
history. A single message therefore means an empty history, which the
API accepts as-is. Consecutive same-role turns are passed through
unmerged so the API, not this adapter, decides whether they are valid.

Streaming uses `alt=sse`. There is no stop event; the last chunk carries a
`finishReason` instead, and a stream that closes without one was cut off.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from threadline.backends.base import BaseProvider
from threadline.models import Message, NormalizedRequest, NormalizedResponse, StreamChunk

logger = logging.getLogger(__name__)


def to_contents(turns: list[Message]) -> list[dict]:
    """Map normalized turns onto Gemini `contents` entries."""
    return [
        {
            "role": "model" if m.role == "assistant" else "user",
            "parts": [{"text": m.content}],
        }
        for m in turns
    ]


class GoogleProvider(BaseProvider):
    """Backend for the Google Gemini API."""

    family = "google"
    default_url = "https://generativelanguage.googleapis.com"
    default_models = ("gemini-pro", "gemini-pro-vision")
    default_finish_reason = "stop"

    def _headers(self) -> dict:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def _body(self, request: NormalizedRequest) -> dict:
        system, turns = self.split_system(request.messages)
        if not turns:
            raise self._error("request has no user or assistant turns")
        body = {
            "contents": to_contents(turns),
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if system is not None:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return body

    def _candidate_text(self, data: dict) -> tuple[str, str | None]:
        """Return (text, finishReason) of the first candidate."""
        if data.get("error"):
            err = data["error"]
            raise self._error(err.get("message", str(err)) if isinstance(err, dict) else str(err))
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise self._error(f"prompt blocked: {feedback['blockReason']}")
            return "", None
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        return text, candidate.get("finishReason")

    async def complete(self, request: NormalizedRequest) -> NormalizedResponse:
        self._require_key()
        data = await self._post_json(
            f"{self.url}/v1beta/models/{request.model}:generateContent",
            self._body(request),
            self._headers(),
        )
        if not data.get("candidates"):
            feedback = data.get("promptFeedback") or {}
            reason = feedback.get("blockReason") or "no candidates returned"
            raise self._error(f"malformed response: {reason}")
        text, finish = self._candidate_text(data)

        # Usage is optional in Gemini replies; 0 means "unknown".
        usage = data.get("usageMetadata") or {}
        return NormalizedResponse(
            content=text,
            model=data.get("modelVersion") or request.model,
            tokens_used=int(usage.get("totalTokenCount") or 0),
            finish_reason=(finish or self.default_finish_reason).lower(),
        )

    async def stream_complete(self, request: NormalizedRequest) -> AsyncIterator[StreamChunk]:
        self._require_key()
        body = self._body(request)
        finished = False
        async with self._events(
            f"{self.url}/v1beta/models/{request.model}:streamGenerateContent?alt=sse",
            body,
            self._headers(),
        ) as events:
            async for data in events:
                text, finish = self._candidate_text(self._decode(data))
                if text:
                    yield StreamChunk(content=text)
                if finish:
                    finished = True
                    break

        if not finished:
            raise self._error("stream ended before a finish signal")
        yield StreamChunk(done=True)
