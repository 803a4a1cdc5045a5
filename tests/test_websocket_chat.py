"""WebSocket streaming protocol tests."""

import uuid

import pytest
from fastapi.testclient import TestClient

from chatkernel import app as app_module

STREAM_PATH = "/v1/chat/stream"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def user_id():
    return f"ws_{uuid.uuid4().hex[:8]}"


def _collect_until(ws, terminal=("end", "error", "stopped"), limit=200):
    frames = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if frame["event"] in terminal:
            return frames
    raise AssertionError(f"no terminal event in {frames}")


def test_stream_new_conversation(client, user_id):
    with client.websocket_connect(STREAM_PATH, headers={"X-User-ID": user_id}) as ws:
        ws.send_json({"event": "start", "data": {"message": "Hi stream"}})
        frames = _collect_until(ws)

    events = [f["event"] for f in frames]
    assert events[0] == "conversationCreated"
    assert events[1] == "userMessageSaved"
    assert events[-1] == "end"
    assert set(events[2:-1]) == {"chunk"}

    conv_id = frames[0]["data"]["conversationId"]
    assert frames[1]["data"]["content"] == "Hi stream"
    text = "".join(f["data"]["content"] for f in frames if f["event"] == "chunk")
    assert text == "Echo: Hi stream"
    end = frames[-1]["data"]
    assert end["conversationId"] == conv_id
    assert end["finishReason"] == "stop"
    assert end["totalTokens"] >= 1

    detail = client.get(f"/v1/conversations/{conv_id}", headers={"X-User-ID": user_id})
    messages = detail.json()["data"]["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["id"] == end["messageId"]
    assert messages[1]["content"] == text

    usage = client.get("/v1/usage", headers={"X-User-ID": user_id}).json()["data"]
    assert usage["totalTokens"] == end["totalTokens"]


def test_stream_existing_conversation_with_user_in_payload(client, user_id):
    conv_id = client.post(
        "/v1/conversations", headers={"X-User-ID": user_id}, json={}
    ).json()["data"]["id"]

    with client.websocket_connect(STREAM_PATH) as ws:
        ws.send_json(
            {
                "event": "start",
                "data": {"userId": user_id, "message": "again", "conversationId": conv_id},
            }
        )
        frames = _collect_until(ws)

    events = [f["event"] for f in frames]
    assert events[0] == "userMessageSaved"
    assert events[-1] == "end"
    assert frames[-1]["data"]["conversationId"] == conv_id


def test_missing_user_is_an_error_event(client):
    with client.websocket_connect(STREAM_PATH) as ws:
        ws.send_json({"event": "start", "data": {"message": "who am i"}})
        frame = ws.receive_json()
    assert frame == {"event": "error", "data": {"message": "userId is required"}}


def test_malformed_frames_keep_connection_open(client, user_id):
    with client.websocket_connect(STREAM_PATH, headers={"X-User-ID": user_id}) as ws:
        ws.send_text("not json")
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"event": "dance", "data": {}})
        unknown = ws.receive_json()
        assert unknown["event"] == "error"
        assert "dance" in unknown["data"]["message"]

        ws.send_json({"event": "start", "data": {"maxTokens": 10}})
        invalid = ws.receive_json()
        assert invalid["event"] == "error"
        assert "message" in invalid["data"]["message"]

        ws.send_json({"event": "start", "data": {"message": "still here"}})
        frames = _collect_until(ws)
    assert frames[-1]["event"] == "end"


def test_out_of_range_options_rejected(client, user_id):
    with client.websocket_connect(STREAM_PATH, headers={"X-User-ID": user_id}) as ws:
        ws.send_json({"event": "start", "data": {"message": "hi", "temperature": 3}})
        frame = ws.receive_json()
    assert frame["event"] == "error"


def test_foreign_conversation_rejected(client, user_id):
    conv_id = client.post(
        "/v1/conversations", headers={"X-User-ID": user_id}, json={}
    ).json()["data"]["id"]
    with client.websocket_connect(STREAM_PATH, headers={"X-User-ID": "other"}) as ws:
        ws.send_json(
            {"event": "start", "data": {"message": "hi", "conversationId": conv_id}}
        )
        frame = ws.receive_json()
    assert frame == {"event": "error", "data": {"message": "conversation not found"}}


def test_stop_without_stream_is_acknowledged(client, user_id):
    with client.websocket_connect(STREAM_PATH, headers={"X-User-ID": user_id}) as ws:
        ws.send_json({"event": "stop"})
        frame = ws.receive_json()
    assert frame == {"event": "stopped", "data": {}}


def test_sequential_streams_on_one_connection(client, user_id):
    with client.websocket_connect(STREAM_PATH, headers={"X-User-ID": user_id}) as ws:
        ws.send_json({"event": "start", "data": {"message": "first"}})
        first = _collect_until(ws)
        conv_id = first[0]["data"]["conversationId"]

        ws.send_json(
            {"event": "start", "data": {"message": "second", "conversationId": conv_id}}
        )
        second = _collect_until(ws)

    assert first[-1]["event"] == "end"
    assert second[-1]["event"] == "end"
    detail = client.get(f"/v1/conversations/{conv_id}", headers={"X-User-ID": user_id})
    assert len(detail.json()["data"]["messages"]) == 4


def test_store_failure_on_start_keeps_connection_open(client, user_id, monkeypatch):
    from chatkernel.service.runtime import get_runtime

    store = get_runtime().store
    original = store.append_message
    calls = {"n": 0}

    def flaky_append(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("db connection lost")
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "append_message", flaky_append)

    with client.websocket_connect(STREAM_PATH, headers={"X-User-ID": user_id}) as ws:
        ws.send_json({"event": "start", "data": {"message": "first"}})
        failed = ws.receive_json()
        assert failed["event"] == "error"

        ws.send_json({"event": "start", "data": {"message": "second"}})
        frames = _collect_until(ws)
    assert frames[-1]["event"] == "end"
