"""
Tests for SQLite storage.
Uses a temp database for each test (the `store` fixture).
"""

from threadline.storage.models import Conversation, StoredMessage


def _conv(store, user="u1", workspace="w1", title="New Conversation"):
    return store.create_conversation(Conversation(workspace_id=workspace, user_id=user, title=title))


def test_create_and_get_conversation(store):
    conv = _conv(store, title="Trip planning")
    loaded = store.get_conversation(conv.id, "u1")
    assert loaded.id == conv.id
    assert loaded.title == "Trip planning"
    assert loaded.status == "active"


def test_get_conversation_checks_owner(store):
    conv = _conv(store)
    assert store.get_conversation(conv.id, "someone-else") is None


def test_store_and_retrieve_messages(store):
    """Messages come back in insertion order."""
    conv = _conv(store)
    store.store_message(StoredMessage(conversation_id=conv.id, role="user", content="hi"))
    store.store_message(StoredMessage(conversation_id=conv.id, role="assistant", content="hello!",
                                      tokens_used=5, model_used="gpt-4"))
    store.store_message(StoredMessage(conversation_id=conv.id, role="user", content="how are you?"))

    messages = store.get_messages(conv.id)
    assert [m.content for m in messages] == ["hi", "hello!", "how are you?"]
    assert messages[1].tokens_used == 5
    assert messages[1].model_used == "gpt-4"
    assert store.message_count(conv.id) == 3


def test_separate_conversations(store):
    """Messages in different conversations stay separate."""
    a, b = _conv(store), _conv(store)
    store.store_message(StoredMessage(conversation_id=a.id, role="user", content="msg1"))
    store.store_message(StoredMessage(conversation_id=b.id, role="user", content="msg2"))
    assert len(store.get_messages(a.id)) == 1
    assert len(store.get_messages(b.id)) == 1


def test_list_conversations_with_counts(store):
    a = _conv(store, workspace="w1")
    _conv(store, workspace="w2")
    _conv(store, user="u2")
    store.store_message(StoredMessage(conversation_id=a.id, role="user", content="x"))

    mine = store.list_conversations("u1")
    assert len(mine) == 2
    in_w1 = store.list_conversations("u1", workspace_id="w1")
    assert [c.id for c in in_w1] == [a.id]
    assert in_w1[0].message_count == 1


def test_archive_hides_conversation(store):
    conv = _conv(store)
    store.archive(conv.id, "u1")
    assert store.get_conversation(conv.id, "u1") is None
    assert store.list_conversations("u1") == []


def test_delete_removes_messages(store):
    conv = _conv(store)
    store.store_message(StoredMessage(conversation_id=conv.id, role="user", content="x"))
    store.delete(conv.id, "u1")
    assert store.get_conversation(conv.id, "u1") is None
    assert store.get_messages(conv.id) == []


def test_delete_ignores_other_users(store):
    conv = _conv(store)
    store.delete(conv.id, "intruder")
    assert store.get_conversation(conv.id, "u1") is not None


def test_update_title(store):
    conv = _conv(store)
    store.update_title(conv.id, "Renamed", "u1")
    assert store.get_conversation(conv.id, "u1").title == "Renamed"
    store.update_title(conv.id, "Hijacked", "u2")
    assert store.get_conversation(conv.id, "u1").title == "Renamed"


def test_quotas(store):
    """No quota row means unlimited; usage counts exchanges and tokens."""
    assert store.exhausted_quotas("w1") == []

    store.set_quota("w1", "messages", 2)
    store.set_quota("w1", "ai_tokens", 1000)
    store.add_usage("w1", 300)
    assert store.exhausted_quotas("w1") == []

    store.add_usage("w1", 300)
    assert store.exhausted_quotas("w1") == ["messages"]
    assert store.get_usage("w1") == {
        "messages": {"limit": 2, "used": 2},
        "ai_tokens": {"limit": 1000, "used": 600},
    }


def test_to_dict_shapes(store):
    conv = _conv(store)
    msg = store.store_message(StoredMessage(conversation_id=conv.id, role="user", content="x"))
    assert set(msg.to_dict()) == {
        "id", "conversation_id", "role", "content", "tokens_used", "model_used", "created_at",
    }
    assert "messages" not in conv.to_dict()
