"""
Orchestrator: the provider-agnostic facade over the model backends.

Callers hand over a message list and per-request overrides; the
orchestrator fills in defaults, validates, picks the backend through the
ModelRouter and relays the normalized result. Unsupported models fail
before any backend is touched. No retries happen here: retry policy
belongs to whoever called us.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator

from threadline.backends.base import BaseProvider
from threadline.backends.router import ModelRouter
from threadline.errors import ProviderError, ThreadlineError
from threadline.models import (
    Message,
    NormalizedRequest,
    NormalizedResponse,
    StreamChunk,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4-turbo"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000


class Orchestrator:
    """Blocking and streaming chat over whichever provider owns the model."""

    def __init__(
        self,
        router: ModelRouter,
        default_model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.router = router
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, cfg: dict, router: ModelRouter | None = None) -> "Orchestrator":
        ai_cfg = cfg.get("ai", {}) or {}
        return cls(
            router=router or ModelRouter.from_config(cfg),
            default_model=ai_cfg.get("default_model") or DEFAULT_MODEL,
            temperature=ai_cfg.get("temperature", DEFAULT_TEMPERATURE),
            max_tokens=ai_cfg.get("max_tokens", DEFAULT_MAX_TOKENS),
        )

    def resolve_model(self, model: str | None = None) -> tuple[str, BaseProvider]:
        """Apply the default model and route it. Raises UnsupportedModelError."""
        model = model or self.default_model
        try:
            return model, self.router.resolve(model)
        except ThreadlineError:
            logger.warning("Rejected request for unsupported model '%s'", model)
            raise

    def _prepare(
        self,
        messages: list[Message | dict],
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> tuple[BaseProvider, NormalizedRequest]:
        model, provider = self.resolve_model(model)

        request = NormalizedRequest(
            messages=[m if isinstance(m, Message) else Message.from_dict(m) for m in messages],
            model=model,
            temperature=self.temperature if temperature is None else temperature,
            max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            stream=stream,
        )
        request.validate()
        logger.debug(
            "Routing model '%s' to provider '%s' (%d messages, stream=%s)",
            model, provider.name, len(request.messages), stream,
        )
        return provider, request

    async def chat(
        self,
        messages: list[Message | dict],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> NormalizedResponse:
        """Send messages and wait for the full answer."""
        provider, request = self._prepare(messages, model, temperature, max_tokens, stream=False)
        try:
            return await provider.complete(request)
        except ThreadlineError:
            raise
        except Exception as e:
            logger.warning("Provider '%s' raised unexpectedly: %s", provider.name, e)
            raise ProviderError(provider.name, str(e)) from e

    async def stream_chat(
        self,
        messages: list[Message | dict],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream the answer as StreamChunks.
        Ends with exactly one done=True chunk; stops pulling from the
        provider as soon as the consumer stops iterating.
        """
        provider, request = self._prepare(messages, model, temperature, max_tokens, stream=True)
        try:
            async with aclosing(provider.stream_complete(request)) as chunks:
                async for chunk in chunks:
                    yield chunk
                    if chunk.done:
                        return
        except ThreadlineError:
            raise
        except Exception as e:
            logger.warning("Provider '%s' stream raised unexpectedly: %s", provider.name, e)
            raise ProviderError(provider.name, str(e)) from e

        # Provider ended without its own terminal chunk
        raise ProviderError(provider.name, "stream ended without a done chunk")

    def get_available_models(self) -> list[str]:
        """Models whose provider has credentials configured. No network probe."""
        return self.router.available_models()

    @staticmethod
    def count_tokens(text: str) -> int:
        return estimate_tokens(text)
