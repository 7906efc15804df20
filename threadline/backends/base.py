"""
Base provider abstraction.
All providers implement this interface so the router and orchestrator can
treat them uniformly: one normalized request in, one normalized response
(or a stream of StreamChunks) out.
"""

from __future__ import annotations

import abc
import json
import logging
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from threadline.errors import ProviderError
from threadline.models import Message, NormalizedRequest, NormalizedResponse, StreamChunk

logger = logging.getLogger(__name__)


class BaseProvider(abc.ABC):
    """
    Abstract base for vendor adapters.
    Subclasses translate NormalizedRequest into the vendor's call shape
    and flatten the vendor's reply/stream back into the common contract.
    """

    #: Provider id reported in ProviderError and model listings.
    family: str = ""
    default_url: str = ""
    default_models: tuple[str, ...] = ()
    default_finish_reason: str = "stop"

    def __init__(
        self,
        api_key: str = "",
        url: str = "",
        timeout: int = 120,
        models: list[str] | None = None,
        name: str = "",
    ):
        self.name = name or self.family
        self.api_key = api_key or ""
        self.url = (url or self.default_url).rstrip("/")
        self.timeout = timeout
        self.models = list(models) if models else list(self.default_models)

    @property
    def configured(self) -> bool:
        """True when a credential is present for this provider."""
        return bool(self.api_key)

    def list_models(self) -> list[str]:
        """Models advertised by this provider; empty when not configured."""
        return list(self.models) if self.configured else []

    @abc.abstractmethod
    async def complete(self, request: NormalizedRequest) -> NormalizedResponse:
        """Run a blocking completion. Raises ProviderError on any vendor failure."""
        ...

    @abc.abstractmethod
    def stream_complete(self, request: NormalizedRequest) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion as text deltas.
        Always ends with exactly one StreamChunk(done=True); raises
        ProviderError on setup or mid-stream failure.
        """
        ...

    # ------------------------------------------------------------------
    # Helpers shared by the concrete adapters
    # ------------------------------------------------------------------

    @staticmethod
    def split_system(messages: list[Message]) -> tuple[str | None, list[Message]]:
        """
        Separate the first system message from the conversational turns.
        Later system messages are not honored and never become turns.
        """
        system: str | None = None
        turns: list[Message] = []
        for msg in messages:
            if msg.role == "system":
                if system is None:
                    system = msg.content
                continue
            turns.append(msg)
        return system, turns

    def _error(self, cause: str, upstream_status: int | None = None) -> ProviderError:
        return ProviderError(self.name, cause, upstream_status)

    def _require_key(self) -> None:
        if not self.api_key:
            raise self._error("API key not configured")

    def _decode(self, raw: str) -> dict:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise self._error(f"malformed response: {e}") from e
        if not isinstance(data, dict):
            raise self._error("malformed response: expected a JSON object")
        return data

    async def _post_json(self, url: str, body: dict, headers: dict) -> dict:
        """POST a JSON body and return the decoded JSON reply."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                if resp.status_code >= 400:
                    raise self._error(
                        f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code
                    )
                try:
                    data = resp.json()
                except ValueError as e:
                    raise self._error(f"malformed response: {e}") from e
                if not isinstance(data, dict):
                    raise self._error("malformed response: expected a JSON object")
                return data
        except ProviderError as e:
            logger.warning("Provider '%s' request failed: %s", self.name, e.cause)
            raise
        except httpx.TimeoutException as e:
            logger.warning("Provider '%s' timed out after %ss", self.name, self.timeout)
            raise self._error(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Provider '%s' failed: %s", self.name, e)
            raise self._error(str(e) or e.__class__.__name__) from e

    async def _stream_data(self, url: str, body: dict, headers: dict) -> AsyncIterator[str]:
        """
        POST a streaming request and yield the payload of every SSE
        `data:` line. Leaving the generator early closes the connection.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream("POST", url, json=body, headers=headers) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise self._error(
                            f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code
                        )
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        yield line[5:].strip()
        except ProviderError as e:
            logger.warning("Provider '%s' stream failed: %s", self.name, e.cause)
            raise
        except httpx.TimeoutException as e:
            logger.warning("Provider '%s' stream timed out", self.name)
            raise self._error(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Provider '%s' stream failed: %s", self.name, e)
            raise self._error(str(e) or e.__class__.__name__) from e

    def _events(self, url: str, body: dict, headers: dict):
        """_stream_data wrapped so a `break` in the caller still releases the connection."""
        return aclosing(self._stream_data(url, body, headers))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r} configured={self.configured}>"
