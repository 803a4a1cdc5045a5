"""Integration tests for the REST surface.

Covers:
- Synchronous chat and the response envelope
- Conversation listing, detail and deletion with ownership checks
- Usage statistics
- Queued completion and embedding jobs
- Error envelopes, rate limiting and health
"""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient

from chatkernel import app as app_module
from chatkernel.service.runtime import get_runtime
from chatkernel.storage.models import MessageRole


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def user_headers():
    return {"X-User-ID": f"user_{uuid.uuid4().hex[:8]}"}


def _drain_jobs() -> int:
    return asyncio.run(get_runtime().worker.drain())


class TestChat:
    def test_requires_user_header(self, client):
        response = client.post("/v1/chat", json={"message": "Hello"})
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["data"] is None

    def test_chat_creates_conversation(self, client, user_headers):
        response = client.post("/v1/chat", headers=user_headers, json={"message": "Hello"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["requestId"]
        data = body["data"]
        assert data["content"] == "Echo: Hello"
        assert data["finishReason"] == "stop"
        assert data["tokens"] >= 1
        assert data["conversationId"]
        assert data["messageId"]

    def test_chat_continues_conversation(self, client, user_headers):
        first = client.post("/v1/chat", headers=user_headers, json={"message": "one"})
        conv_id = first.json()["data"]["conversationId"]

        second = client.post(
            "/v1/chat",
            headers=user_headers,
            json={"message": "two", "conversationId": conv_id},
        )
        assert second.status_code == 200
        assert second.json()["data"]["conversationId"] == conv_id

        detail = client.get(f"/v1/conversations/{conv_id}", headers=user_headers)
        messages = detail.json()["data"]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
        assert [m["seq"] for m in messages] == [0, 1, 2, 3]
        assert messages[1]["modelName"]
        assert messages[1]["tokenCount"] >= 1

    def test_options_out_of_range_are_validation_errors(self, client, user_headers):
        response = client.post(
            "/v1/chat", headers=user_headers, json={"message": "hi", "maxTokens": 9000}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

        response = client.post(
            "/v1/chat", headers=user_headers, json={"message": "hi", "temperature": 2.5}
        )
        assert response.status_code == 400

    def test_blank_message_rejected(self, client, user_headers):
        response = client.post("/v1/chat", headers=user_headers, json={"message": "  "})
        assert response.status_code == 400
        assert get_runtime().store.count_conversations(user_headers["X-User-ID"]) == 0

    def test_unknown_conversation_is_not_found(self, client, user_headers):
        response = client.post(
            "/v1/chat",
            headers=user_headers,
            json={"message": "hi", "conversationId": str(uuid.uuid4())},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_rate_limit(self, client, user_headers):
        get_runtime().settings.chat_rate_limit_per_minute = 2
        for _ in range(2):
            ok = client.post("/v1/chat", headers=user_headers, json={"message": "hi"})
            assert ok.status_code == 200
        limited = client.post("/v1/chat", headers=user_headers, json={"message": "hi"})
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"

    def test_request_id_is_echoed(self, client, user_headers):
        headers = {**user_headers, "X-Request-ID": "req-12345"}
        response = client.post("/v1/chat", headers=headers, json={"message": "hi"})
        assert response.headers["X-Request-ID"] == "req-12345"
        assert response.json()["requestId"] == "req-12345"


class TestEmbeddings:
    def test_embedding_is_returned_and_charged(self, client, user_headers):
        response = client.post(
            "/v1/embeddings", headers=user_headers, json={"text": "vector please"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["embedding"]) == 16
        assert data["model"] == "echo-embedding"

        usage = client.get("/v1/usage", headers=user_headers).json()["data"]
        assert usage["totalTokens"] == data["tokens"]


class TestConversations:
    def test_create_and_list_with_pagination(self, client, user_headers):
        for title in ("a", "b", "c"):
            created = client.post(
                "/v1/conversations", headers=user_headers, json={"title": title}
            )
            assert created.status_code == 201
            assert created.json()["data"]["title"] == title

        response = client.get(
            "/v1/conversations", headers=user_headers, params={"page": 1, "limit": 2}
        )
        assert response.status_code == 200
        listing = response.json()["data"]
        assert len(listing["data"]) == 2
        assert listing["meta"] == {"total": 3, "page": 1, "limit": 2, "totalPages": 2}
        assert listing["data"][0]["messageCount"] == 0

    def test_default_title(self, client, user_headers):
        created = client.post("/v1/conversations", headers=user_headers, json={})
        assert created.json()["data"]["title"] == "New Conversation"

    def test_other_users_cannot_read_or_delete(self, client, user_headers):
        conv_id = client.post("/v1/conversations", headers=user_headers, json={}).json()[
            "data"
        ]["id"]
        intruder = {"X-User-ID": "intruder"}

        assert client.get(f"/v1/conversations/{conv_id}", headers=intruder).status_code == 404
        assert client.delete(f"/v1/conversations/{conv_id}", headers=intruder).status_code == 404
        listing = client.get("/v1/conversations", headers=intruder).json()["data"]
        assert listing["data"] == []

    def test_delete_conversation(self, client, user_headers):
        conv_id = client.post("/v1/conversations", headers=user_headers, json={}).json()[
            "data"
        ]["id"]
        response = client.delete(f"/v1/conversations/{conv_id}", headers=user_headers)
        assert response.status_code == 204
        assert (
            client.get(f"/v1/conversations/{conv_id}", headers=user_headers).status_code
            == 404
        )


class TestUsage:
    def test_usage_counts(self, client, user_headers):
        chat = client.post("/v1/chat", headers=user_headers, json={"message": "count me"})
        tokens = chat.json()["data"]["tokens"]

        usage = client.get("/v1/usage", headers=user_headers).json()["data"]
        assert usage["totalTokens"] == tokens
        assert usage["conversationsCount"] == 1
        assert usage["messagesCount"] == 2
        assert usage["lastUsed"]

    def test_new_user_has_zero_usage(self, client, user_headers):
        usage = client.get("/v1/usage", headers=user_headers).json()["data"]
        assert usage["totalTokens"] == 0
        assert usage["messagesCount"] == 0


class TestJobs:
    def _conversation_with_user_message(self, client, headers, text="queued hello"):
        conv_id = client.post("/v1/conversations", headers=headers, json={}).json()["data"][
            "id"
        ]
        message, _ = get_runtime().conversations.append_message(
            conv_id, MessageRole.USER, text
        )
        return conv_id, message.id

    def test_completion_job_lifecycle(self, client, user_headers):
        conv_id, message_id = self._conversation_with_user_message(client, user_headers)

        accepted = client.post(
            "/v1/jobs/completions",
            headers=user_headers,
            json={"conversationId": conv_id, "messageId": message_id},
        )
        assert accepted.status_code == 202
        job_id = accepted.json()["data"]["jobId"]
        assert accepted.json()["data"]["status"] == "queued"

        queued = client.get(f"/v1/jobs/{job_id}", headers=user_headers).json()["data"]
        assert queued["state"] == "queued"
        assert queued["progress"] == 0
        assert queued["result"] is None

        assert _drain_jobs() == 1

        done = client.get(f"/v1/jobs/{job_id}", headers=user_headers).json()["data"]
        assert done["state"] == "completed"
        assert done["progress"] == 100
        assert done["attempts"] == 1
        assert done["result"]["content"] == "Echo: queued hello"
        assert done["result"]["conversationId"] == conv_id

        detail = client.get(f"/v1/conversations/{conv_id}", headers=user_headers)
        messages = detail.json()["data"]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["id"] == done["result"]["messageId"]

    def test_completion_job_requires_matching_message(self, client, user_headers):
        conv_a, _ = self._conversation_with_user_message(client, user_headers)
        _, message_b = self._conversation_with_user_message(client, user_headers)
        response = client.post(
            "/v1/jobs/completions",
            headers=user_headers,
            json={"conversationId": conv_a, "messageId": message_b},
        )
        assert response.status_code == 404

    def test_embedding_job(self, client, user_headers):
        accepted = client.post(
            "/v1/jobs/embeddings", headers=user_headers, json={"text": "embed later"}
        )
        assert accepted.status_code == 202
        job_id = accepted.json()["data"]["jobId"]

        _drain_jobs()

        done = client.get(f"/v1/jobs/{job_id}", headers=user_headers).json()["data"]
        assert done["kind"] == "embedding"
        assert done["state"] == "completed"
        assert len(done["result"]["embedding"]) == 16
        usage = client.get("/v1/usage", headers=user_headers).json()["data"]
        assert usage["totalTokens"] == done["result"]["tokens"]

    def test_jobs_are_private(self, client, user_headers):
        accepted = client.post(
            "/v1/jobs/embeddings", headers=user_headers, json={"text": "mine"}
        )
        job_id = accepted.json()["data"]["jobId"]
        response = client.get(f"/v1/jobs/{job_id}", headers={"X-User-ID": "someone-else"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


def test_health_reports_memory_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert body["checks"]["provider"]["name"] == "echo"
    assert response.headers["Cache-Control"] == "no-store"
