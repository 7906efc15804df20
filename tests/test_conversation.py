"""
Tests for ConversationService: one exchange end to end against the
fake provider and a temp SQLite store.
"""

import asyncio

import pytest

from threadline.backends.router import ModelRouter
from threadline.conversation import ConversationService
from threadline.errors import (
    ConversationNotFoundError,
    ProviderError,
    QuotaExceededError,
    UnsupportedModelError,
    ValidationError,
)
from threadline.models import estimate_tokens
from threadline.orchestrator import Orchestrator


@pytest.fixture
def service(orchestrator, contexts, store):
    return ConversationService(orchestrator, contexts, store, system_prompt="Sys.", auto_title=False)


async def _collect(agen):
    return [event async for event in agen]


def test_create_conversation_creates_context(service, contexts):
    conv = service.create_conversation("u1", "w1")
    assert conv.title == "New Conversation"
    ctx = contexts.get_context(conv.id)
    assert ctx is not None
    assert ctx.system_prompt == "Sys."


@pytest.mark.asyncio
async def test_send_message_persists_both_sides(service, store, contexts, fake_provider):
    conv = service.create_conversation("u1", "w1")
    result = await service.send_message(conv.id, "u1", "What's up?")

    assert result["user_message"]["content"] == "What's up?"
    assert result["ai_message"]["content"] == fake_provider.reply
    assert result["ai_message"]["tokens_used"] == 11

    stored = store.get_messages(conv.id)
    assert [(m.role, m.content) for m in stored] == [
        ("user", "What's up?"), ("assistant", fake_provider.reply),
    ]
    sent = fake_provider.requests[0].messages
    assert [(m.role, m.content) for m in sent] == [("system", "Sys."), ("user", "What's up?")]
    assert len(contexts.get_context(conv.id).messages) == 2


@pytest.mark.asyncio
async def test_send_message_records_model(service, contexts):
    conv = service.create_conversation("u1", "w1")
    await service.send_message(conv.id, "u1", "hi", model="claude-3-haiku-20240307")
    assert contexts.get_context_summary(conv.id)["model"] == "claude-3-haiku-20240307"


@pytest.mark.asyncio
async def test_unsupported_model_has_no_side_effects(service, store, fake_provider):
    conv = service.create_conversation("u1", "w1")
    with pytest.raises(UnsupportedModelError):
        await service.send_message(conv.id, "u1", "hi", model="llama-2")
    assert store.get_messages(conv.id) == []
    assert fake_provider.calls == 0


@pytest.mark.asyncio
async def test_blank_content_rejected(service):
    conv = service.create_conversation("u1", "w1")
    with pytest.raises(ValidationError):
        await service.send_message(conv.id, "u1", "   ")


@pytest.mark.asyncio
async def test_unknown_conversation(service):
    with pytest.raises(ConversationNotFoundError):
        await service.send_message("missing", "u1", "hi")


@pytest.mark.asyncio
async def test_other_users_conversation_not_found(service):
    conv = service.create_conversation("u1", "w1")
    with pytest.raises(ConversationNotFoundError):
        await service.send_message(conv.id, "u2", "hi")


@pytest.mark.asyncio
async def test_quota_exceeded_blocks_exchange(service, store, fake_provider):
    conv = service.create_conversation("u1", "w1")
    store.set_quota("w1", "ai_tokens", 100, current_usage=100)
    with pytest.raises(QuotaExceededError) as exc:
        await service.send_message(conv.id, "u1", "hi")
    assert exc.value.resource == "ai_tokens"
    assert fake_provider.calls == 0


@pytest.mark.asyncio
async def test_usage_counted(service, store):
    conv = service.create_conversation("u1", "w1")
    store.set_quota("w1", "messages", 10)
    store.set_quota("w1", "ai_tokens", 10000)
    await service.send_message(conv.id, "u1", "abcdefgh")
    usage = store.get_usage("w1")
    assert usage["messages"]["used"] == 1
    assert usage["ai_tokens"]["used"] == estimate_tokens("abcdefgh") + 11


@pytest.mark.asyncio
async def test_stream_message_events(service, store, fake_provider):
    conv = service.create_conversation("u1", "w1")
    events = await _collect(service.stream_message(conv.id, "u1", "Tell me"))

    assert events[0]["type"] == "user"
    assert events[0]["content"] == "Tell me"
    assert events[-1]["type"] == "done"
    ai = [e["content"] for e in events if e["type"] == "ai"]
    assert "".join(ai) == fake_provider.reply

    stored = store.get_messages(conv.id)
    assert stored[-1].content == fake_provider.reply
    assert stored[-1].tokens_used == estimate_tokens(fake_provider.reply)
    assert events[-1]["message_id"] == stored[-1].id
    assert events[0]["message_id"] == stored[0].id


@pytest.mark.asyncio
async def test_stream_failure_stores_no_answer(contexts, store, make_provider):
    provider = make_provider(fail_at=1)
    orch = Orchestrator(ModelRouter({"gpt-": provider}))
    service = ConversationService(orch, contexts, store, auto_title=False)
    conv = service.create_conversation("u1", "w1")

    received = []
    with pytest.raises(ProviderError):
        async for event in service.stream_message(conv.id, "u1", "hi"):
            received.append(event)

    assert [e["type"] for e in received] == ["user", "ai"]
    assert [m.role for m in store.get_messages(conv.id)] == ["user"]


@pytest.mark.asyncio
async def test_context_rebuilt_from_history(service, contexts, fake_provider):
    conv = service.create_conversation("u1", "w1")
    await service.send_message(conv.id, "u1", "first")
    contexts.clear_context(conv.id)

    await service.send_message(conv.id, "u1", "second")
    sent = fake_provider.requests[-1].messages
    assert [m.content for m in sent] == ["Sys.", "first", fake_provider.reply, "second"]


def test_get_conversation_loads_context(service, contexts):
    conv = service.create_conversation("u1", "w1")
    contexts.clear_context(conv.id)
    loaded = service.get_conversation(conv.id, "u1")
    assert loaded.messages == []
    assert contexts.get_context(conv.id) is not None


def test_archive_and_delete_clear_context(service, contexts):
    a = service.create_conversation("u1", "w1")
    b = service.create_conversation("u1", "w1")
    service.archive_conversation(a.id, "u1")
    service.delete_conversation(b.id, "u1")
    assert contexts.get_context(a.id) is None
    assert contexts.get_context(b.id) is None
    assert service.list_conversations("u1") == []


def test_update_title_requires_ownership(service):
    conv = service.create_conversation("u1", "w1")
    with pytest.raises(ConversationNotFoundError):
        service.update_title(conv.id, "u2", "mine now")
    service.update_title(conv.id, "u1", "Renamed")
    assert service.get_conversation(conv.id, "u1").title == "Renamed"


@pytest.mark.asyncio
async def test_auto_title_after_first_exchange(orchestrator, contexts, store):
    service = ConversationService(orchestrator, contexts, store, auto_title=True)
    orchestrator.router.routes["gpt-"].reply = '"Greetings Exchange"'
    conv = service.create_conversation("u1", "w1")

    await service.send_message(conv.id, "u1", "hello")
    assert store.get_conversation(conv.id, "u1").title == "Greetings Exchange"

    title_request = orchestrator.router.routes["gpt-"].requests[-1]
    assert title_request.model == "gpt-3.5-turbo"
    assert title_request.max_tokens == 20


@pytest.mark.asyncio
async def test_title_failure_is_not_fatal(contexts, store, make_provider):
    chat = make_provider()
    titles = make_provider(fail_at=0, name="titles")
    orch = Orchestrator(ModelRouter({"gpt-": chat, "claude-": titles}))
    service = ConversationService(
        orch, contexts, store, auto_title=True, title_model="claude-3-haiku-20240307",
    )
    conv = service.create_conversation("u1", "w1")

    result = await service.send_message(conv.id, "u1", "hello")
    assert result["ai_message"]["content"] == chat.reply
    assert titles.calls == 1
    assert store.get_conversation(conv.id, "u1").title == "New Conversation"


# ---------------------------------------------------------------------------
# Same-conversation serialization
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_sends_run_one_at_a_time(contexts, store, make_provider):
    provider = make_provider(reply="ok", delay=0.02)
    orch = Orchestrator(ModelRouter({"gpt-": provider}))
    service = ConversationService(orch, contexts, store, system_prompt="Sys.", auto_title=False)
    conv = service.create_conversation("u1", "w1")

    await asyncio.gather(
        service.send_message(conv.id, "u1", "question A"),
        service.send_message(conv.id, "u1", "question B"),
    )

    second = [(m.role, m.content) for m in provider.requests[1].messages]
    assert second == [
        ("system", "Sys."), ("user", "question A"), ("assistant", "ok"), ("user", "question B"),
    ]
    window = [(m.role, m.content) for m in contexts.get_context(conv.id).messages]
    assert window == [
        ("user", "question A"), ("assistant", "ok"), ("user", "question B"), ("assistant", "ok"),
    ]


@pytest.mark.asyncio
async def test_stream_and_send_do_not_interleave(contexts, store, make_provider):
    provider = make_provider(reply="ok then", delay=0.02)
    orch = Orchestrator(ModelRouter({"gpt-": provider}))
    service = ConversationService(orch, contexts, store, auto_title=False)
    conv = service.create_conversation("u1", "w1")

    await asyncio.gather(
        _collect(service.stream_message(conv.id, "u1", "streamed")),
        service.send_message(conv.id, "u1", "blocking"),
    )

    roles = [m.role for m in store.get_messages(conv.id)]
    assert roles == ["user", "assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_abandoned_stream_releases_conversation(contexts, store, make_provider):
    provider = make_provider(reply="a" * 40)
    orch = Orchestrator(ModelRouter({"gpt-": provider}))
    service = ConversationService(orch, contexts, store, auto_title=False)
    conv = service.create_conversation("u1", "w1")

    gen = service.stream_message(conv.id, "u1", "first")
    assert (await gen.__anext__())["type"] == "user"
    assert (await gen.__anext__())["type"] == "ai"
    await gen.aclose()
    assert provider.pulled == 1

    result = await asyncio.wait_for(service.send_message(conv.id, "u1", "second"), timeout=1)
    assert result["ai_message"]["content"] == provider.reply


def test_delete_drops_conversation_lock(service):
    conv = service.create_conversation("u1", "w1")
    service._lock(conv.id)
    service.delete_conversation(conv.id, "u1")
    assert conv.id not in service._locks
