import pytest

from chatkernel.service.conversations import ConversationService, parse_role
from chatkernel.service.errors import NotFoundError, ValidationError
from chatkernel.service.usage import UsageAccountant
from chatkernel.storage.memory import MemoryStore
from chatkernel.storage.models import MessageRole


@pytest.fixture
def service():
    return ConversationService(MemoryStore(), history_limit=3)


def test_create_uses_default_title(service):
    conv = service.create("alice")
    assert conv.title == "New Conversation"
    assert service.create("alice", title="   ").title == "New Conversation"
    assert service.create("alice", title="Trip").title == "Trip"


def test_create_requires_owner(service):
    with pytest.raises(ValidationError):
        service.create("")


def test_other_users_see_not_found(service):
    conv = service.create("alice")
    with pytest.raises(NotFoundError):
        service.require_owned(conv.id, "bob")
    with pytest.raises(NotFoundError):
        service.require_owned("does-not-exist", "alice")


def test_parse_role_rejects_unknown_roles():
    assert parse_role("Assistant") == MessageRole.ASSISTANT
    with pytest.raises(ValidationError):
        parse_role("tool")


def test_append_to_missing_conversation_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.append_message("missing", "user", "hello")


def test_append_rejects_negative_token_count(service):
    conv = service.create("alice")
    with pytest.raises(ValidationError):
        service.append_message(conv.id, "assistant", "x", token_count=-1)


def test_append_with_idempotency_key_is_single_write(service):
    conv = service.create("alice")
    first, created = service.append_message(
        conv.id, "assistant", "answer", idempotency_key="job-7"
    )
    second, created_again = service.append_message(
        conv.id, "assistant", "answer", idempotency_key="job-7"
    )
    assert created and not created_again
    assert first.id == second.id


def test_history_is_bounded_and_oldest_first(service):
    conv = service.create("alice")
    for i in range(5):
        service.append_message(conv.id, "user" if i % 2 == 0 else "assistant", f"m{i}")

    history = service.history(conv.id, "alice")
    assert history == [
        {"role": "user", "content": "m2"},
        {"role": "assistant", "content": "m3"},
        {"role": "user", "content": "m4"},
    ]
    assert len(service.history(conv.id, "alice", limit=10)) == 5
    assert service.history(conv.id, "alice", limit=0) == []


def test_history_requires_ownership(service):
    conv = service.create("alice")
    with pytest.raises(NotFoundError):
        service.history(conv.id, "bob")


def test_list_paginates_with_meta(service):
    for _ in range(5):
        service.create("alice")
    service.create("bob")

    page = service.list("alice", page=2, limit=2)
    assert len(page["data"]) == 2
    assert page["meta"] == {"total": 5, "page": 2, "limit": 2, "total_pages": 3}
    assert all(item["user_id"] == "alice" for item in page["data"])

    with pytest.raises(ValidationError):
        service.list("alice", page=0)
    with pytest.raises(ValidationError):
        service.list("alice", limit=101)


def test_list_reports_message_counts(service):
    conv = service.create("alice")
    service.append_message(conv.id, "user", "hi")
    service.append_message(conv.id, "assistant", "hello")
    listing = service.list("alice")
    assert listing["data"][0]["message_count"] == 2


def test_delete_checks_ownership(service):
    conv = service.create("alice")
    with pytest.raises(NotFoundError):
        service.delete(conv.id, "bob")
    service.delete(conv.id, "alice")
    with pytest.raises(NotFoundError):
        service.get(conv.id, "alice")


def test_usage_accountant_totals_and_stats():
    store = MemoryStore()
    conversations = ConversationService(store)
    usage = UsageAccountant(store)
    conv = conversations.create("alice")
    conversations.append_message(conv.id, "user", "hi")

    assert usage.total("alice") == 0
    usage.increment("alice", 10)
    usage.increment("alice", 0)
    assert usage.total("alice") == 10

    stats = usage.stats("alice")
    assert stats["total_tokens"] == 10
    assert stats["conversations_count"] == 1
    assert stats["messages_count"] == 1
    assert stats["last_used"] is not None

    with pytest.raises(ValidationError):
        usage.increment("alice", -3)
