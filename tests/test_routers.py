from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from realtime_chat.errors import TransportDisconnected
from realtime_chat.routers.chat import router as chat_router
from realtime_chat.routers.conversations import router as conversations_router
from realtime_chat.routers.presence import router as presence_router
from tests.conftest import ALICE, BOB
from tests.fakes import BASE_TIME


AS_ALICE = {"X-User-Id": ALICE}
AS_BOB = {"X-User-Id": BOB}


@pytest.fixture
def client(backend, bus, settings):
    app = FastAPI()
    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(presence_router)
    app.state.backend = backend
    app.state.bus = bus
    app.state.settings = settings
    with TestClient(app) as client:
        yield client


def _open_conversation(client):
    response = client.post(f"/conversations/with/{BOB}", headers=AS_ALICE)
    assert response.status_code == 200
    return response.json()["id"]


def _seed_messages(backend, conversation_id, count):
    for i in range(count):
        backend.seed("messages", {
            "id": f"m{i}",
            "conversation_id": conversation_id,
            "sender_id": ALICE,
            "content": f"message {i}",
            "message_type": "text",
            "created_at": BASE_TIME + timedelta(seconds=i),
            "is_read": False,
        })


def test_identity_header_is_required(client):
    assert client.get("/conversations").status_code == 401


def test_get_or_create_conversation(client):
    first = _open_conversation(client)
    again = client.post(f"/conversations/with/{ALICE}", headers=AS_BOB).json()["id"]
    assert first == again
    assert client.post(f"/conversations/with/{ALICE}", headers=AS_ALICE).status_code == 400


def test_inbox_lists_summaries_with_unread(client, backend):
    conversation_id = _open_conversation(client)
    _seed_messages(backend, conversation_id, 2)

    body = client.get("/conversations", headers=AS_BOB).json()

    assert body["total_unread"] == 2
    assert [item["conversation"]["id"] for item in body["items"]] == [conversation_id]
    assert body["items"][0]["other_participant"]["full_name"] == "Alice Doe"
    assert client.get("/conversations", headers=AS_ALICE).json()["total_unread"] == 0


def test_history_is_paged_by_cursor(client, backend):
    conversation_id = _open_conversation(client)
    _seed_messages(backend, conversation_id, 4)

    first = client.get(f"/conversations/{conversation_id}/messages", headers=AS_BOB).json()
    assert [m["id"] for m in first["items"]] == ["m1", "m2", "m3"]
    assert first["next_cursor"]

    second = client.get(
        f"/conversations/{conversation_id}/messages",
        params={"cursor": first["next_cursor"]},
        headers=AS_BOB,
    ).json()
    assert [m["id"] for m in second["items"]] == ["m0"]
    assert second["next_cursor"] is None


def test_history_errors(client, backend):
    conversation_id = _open_conversation(client)
    path = f"/conversations/{conversation_id}/messages"

    assert client.get(path, headers={"X-User-Id": "mallory"}).status_code == 404
    assert client.get(path, params={"cursor": "garbage"}, headers=AS_BOB).status_code == 400
    backend.fail_reads.add("messages")
    assert client.get(path, headers=AS_BOB).status_code == 503


def test_inbox_unavailable_maps_to_503(client, backend):
    backend.fail_reads.add("conversation_participants")
    assert client.get("/conversations", headers=AS_ALICE).status_code == 503


def test_presence_from_last_seen(client, backend):
    backend.seed("profiles", {"id": "carol", "last_seen": datetime.now(timezone.utc)})
    backend.seed("profiles", {"id": "dave", "last_seen": datetime.now(timezone.utc) - timedelta(hours=1)})

    assert client.get("/presence/carol").json()["online"] is True
    assert client.get("/presence/dave").json()["online"] is False
    assert client.get("/presence/nobody").json() == {"user_id": "nobody", "online": False, "last_seen": None}


def test_socket_rejects_outsiders(client):
    conversation_id = _open_conversation(client)
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(f"/messages/ws/{conversation_id}?user_id=mallory"):
            pass
    assert excinfo.value.code == 4403


def test_socket_sends_and_streams_events(client, backend):
    conversation_id = _open_conversation(client)

    with client.websocket_connect(f"/messages/ws/{conversation_id}?user_id={ALICE}") as ws:
        seen = []
        while "messages" not in seen:
            seen.append(ws.receive_json()["type"])

        ws.send_json({"type": "send", "content": "hello"})
        frames = []
        for _ in range(20):
            frame = ws.receive_json()
            frames.append(frame)
            kinds = {f["type"] for f in frames}
            if {"sent", "message"} <= kinds:
                break

        sent = next(f for f in frames if f["type"] == "sent")
        assert sent["data"]["content"] == "hello"
        event = next(f for f in frames if f["type"] == "message")
        assert event["data"]["id"] == sent["data"]["id"]

        ws.send_json({"type": "teleport"})
        while True:
            frame = ws.receive_json()
            if frame["type"] == "error":
                break
        assert "teleport" in frame["data"]["detail"]

    assert [row["content"] for row in backend.rows("messages")] == ["hello"]


def test_socket_rejects_unknown_message_kind(client, backend):
    conversation_id = _open_conversation(client)

    with client.websocket_connect(f"/messages/ws/{conversation_id}?user_id={ALICE}") as ws:
        ws.send_json({"type": "send", "content": "hello", "message_type": "sticker"})
        while True:
            frame = ws.receive_json()
            if frame["type"] == "error":
                break
        assert frame["data"]["command"] == "send"
        assert "sticker" in frame["data"]["detail"]

    assert backend.rows("messages") == []
    with client.websocket_connect(f"/messages/ws/{conversation_id}?user_id={BOB}") as ws:
        seen = []
        while "messages" not in seen:
            seen.append(ws.receive_json()["type"])


def test_presence_falls_back_to_last_seen_when_bus_fails(client, backend, bus, mocker):
    mocker.patch.object(bus, "is_present", mocker.AsyncMock(side_effect=TransportDisconnected("presence:carol")))
    backend.seed("profiles", {"id": "carol", "last_seen": datetime.now(timezone.utc)})
    backend.seed("profiles", {"id": "dave", "last_seen": datetime.now(timezone.utc) - timedelta(hours=1)})

    response = client.get("/presence/dave")
    assert response.status_code == 200
    assert response.json()["online"] is False
    assert client.get("/presence/carol").json()["online"] is True
