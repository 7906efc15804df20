"""
Shared fixtures: a deterministic, call-counting provider double and the
wiring around it. Nothing here touches the network.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from threadline.backends.base import BaseProvider
from threadline.backends.router import ModelRouter
from threadline.context import ContextManager
from threadline.errors import ProviderError
from threadline.models import NormalizedResponse, StreamChunk
from threadline.orchestrator import Orchestrator
from threadline.storage.sqlite_store import SQLiteStore


class FakeProvider(BaseProvider):
    """Answers every request with the same text, split into fixed pieces."""

    family = "fake"
    default_models = ("fake-small", "fake-large")

    def __init__(self, reply="Hello there, how can I help?", pieces=None,
                 fail_at=None, tokens_used=11, configured=True, name="fake", delay=0):
        super().__init__(api_key="test-key" if configured else "", name=name)
        self.reply = reply
        self.pieces = pieces or [reply[i:i + 5] for i in range(0, len(reply), 5)]
        self.fail_at = fail_at          # index of the piece that raises instead
        self.tokens_used = tokens_used
        self.delay = delay              # seconds to wait before answering
        self.calls = 0
        self.requests = []
        self.pulled = 0                 # pieces handed out across all streams

    async def complete(self, request):
        self.calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_at is not None:
            raise ProviderError(self.name, "backend down")
        return NormalizedResponse(
            content=self.reply,
            model=request.model,
            tokens_used=self.tokens_used,
            finish_reason="stop",
        )

    async def stream_complete(self, request):
        self.calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        for i, piece in enumerate(self.pieces):
            if self.fail_at == i:
                raise ProviderError(self.name, "connection reset mid-stream")
            self.pulled += 1
            yield StreamChunk(content=piece)
        yield StreamChunk(done=True)


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances."""
    return FakeProvider


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(fake_provider):
    """Orchestrator whose 'gpt-' and 'claude-' models both go to one fake."""
    router = ModelRouter({"gpt-": fake_provider, "claude-": fake_provider})
    return Orchestrator(router, default_model="gpt-4-turbo")


@pytest.fixture
def contexts():
    return ContextManager(max_messages=50, max_tokens=8000, min_retained=2)


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store per test."""
    return SQLiteStore(str(tmp_path / "test.db"))


def mock_http_client(post_response=None, stream_lines=None, stream_status=200, stream_text=""):
    """
    Build a stand-in for httpx.AsyncClient.
    `client.pulled` counts how many stream lines were consumed and
    `client.stream_cm.__aexit__` records whether the stream was closed.
    """
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    client.post = AsyncMock(return_value=post_response)
    client.pulled = 0

    resp = MagicMock()
    resp.status_code = stream_status
    resp.text = stream_text
    resp.aread = AsyncMock(return_value=stream_text.encode())

    async def aiter_lines():
        for line in stream_lines or []:
            client.pulled += 1
            yield line

    resp.aiter_lines = aiter_lines

    stream_cm = MagicMock()
    stream_cm.__aenter__ = AsyncMock(return_value=resp)
    stream_cm.__aexit__ = AsyncMock(return_value=False)
    client.stream = MagicMock(return_value=stream_cm)
    client.stream_cm = stream_cm
    return client


def json_response(data, status_code=200, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = data
    resp.text = text
    return resp


@pytest.fixture
def http_client():
    """Expose the httpx mocking helpers to test modules."""
    return mock_http_client


@pytest.fixture
def http_response():
    return json_response
