import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import FakeStorage
from rate_limiter import RateLimiter


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def client(storage):
    app = create_app(storage=storage, start_heartbeat=False)
    with TestClient(app) as test_client:
        yield test_client


def test_healthz_reports_connection_count(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "connections": 0, "voice_peers": 0}


def test_websocket_handshake_sends_identity_and_snapshot(client):
    with client.websocket_connect("/ws") as ws:
        hello = ws.receive_json()
        snapshot = ws.receive_json()

        assert hello["type"] == "self-id"
        assert len(hello["data"]["id"]) == 32
        assert snapshot == {"type": "voice-snapshot", "data": {"peers": []}}
        assert client.get("/healthz").json()["connections"] == 1


def test_root_path_also_accepts_websockets(client):
    with client.websocket_connect("/") as ws:
        assert ws.receive_json()["type"] == "self-id"


def test_voice_join_and_offer_between_two_clients(client):
    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        a = ws_a.receive_json()["data"]["id"]
        ws_a.receive_json()
        b = ws_b.receive_json()["data"]["id"]
        ws_b.receive_json()

        ws_b.send_json({"type": "voice-join", "user": "bob"})
        assert ws_a.receive_json() == {"type": "voice-join", "data": {"id": b, "user": "bob"}}

        ws_a.send_json({"type": "voice-offer", "to": b, "sdp": {"type": "offer"}})
        assert ws_b.receive_json() == {"type": "voice-offer", "data": {"from": a, "sdp": {"type": "offer"}}}


def test_websocket_chat_is_persisted_and_echoed(client, storage):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.receive_json()

        ws.send_text("this is not json")
        ws.send_json({"type": "send", "user": "alice", "text": " hi there ", "cid": "c-1"})
        message = ws.receive_json()

    assert message["type"] == "message"
    assert message["data"]["text"] == "hi there"
    assert message["data"]["cid"] == "c-1"
    assert storage.messages[0]["text"] == "hi there"


def test_disconnect_announces_departure_to_remaining_clients(client):
    with client.websocket_connect("/ws") as ws_a:
        ws_a.receive_json()
        ws_a.receive_json()
        with client.websocket_connect("/ws") as ws_b:
            b = ws_b.receive_json()["data"]["id"]
            ws_b.receive_json()
            ws_b.send_json({"type": "voice-join", "user": "bob"})
            assert ws_a.receive_json()["type"] == "voice-join"

        assert ws_a.receive_json() == {"type": "voice-leave", "data": {"id": b, "user": "bob"}}


def test_rest_send_broadcasts_and_persists(client, storage):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.receive_json()

        response = client.post("/api/send", json={"user": "carol", "text": "  from rest "})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["persisted"] is True
        message = ws.receive_json()
        assert message == {"type": "message", "data": {"user": "carol", "text": "from rest", "ts": body["ts"]}}
    assert storage.messages[0]["user"] == "carol"


def test_rest_send_rejects_empty_text(client, storage):
    response = client.post("/api/send", json={"user": "carol", "text": "   "})

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "empty"}
    assert storage.messages == []


def test_rest_send_still_succeeds_when_storage_fails(client, storage):
    storage.fail = True

    response = client.post("/api/send", json={"text": "hello"})

    assert response.status_code == 200
    assert response.json()["persisted"] is False


def test_history_returns_oldest_first_with_limit(client, storage):
    for i in range(5):
        client.post("/api/send", json={"user": "u", "text": f"m{i}"})

    response = client.get("/api/history", params={"limit": 3})

    assert response.status_code == 200
    assert [m["text"] for m in response.json()] == ["m2", "m3", "m4"]


def test_history_failure_is_reported(client, storage):
    storage.fail = True

    response = client.get("/api/history")

    assert response.status_code == 500
    assert response.json() == {"detail": "db_fail"}


def test_history_limit_is_validated(client):
    assert client.get("/api/history", params={"limit": 0}).status_code == 422


def test_rest_requests_over_the_limit_get_429(storage):
    app = create_app(storage=storage, start_heartbeat=False, rate_limiter=RateLimiter(max_requests=3, window_seconds=60))
    with TestClient(app) as client:
        statuses = [client.get("/healthz").status_code for _ in range(3)]
        limited = client.post("/api/send", json={"text": "hello"})
        other_client = client.get("/healthz", headers={"X-Forwarded-For": "198.51.100.7"})

    assert statuses == [200, 200, 200]
    assert limited.status_code == 429
    assert limited.json() == {"detail": "rate_limited"}
    assert int(limited.headers["retry-after"]) >= 1
    assert storage.messages == []
    assert other_client.status_code == 200


def test_websocket_is_not_rate_limited(storage):
    app = create_app(storage=storage, start_heartbeat=False, rate_limiter=RateLimiter(max_requests=1, window_seconds=60))
    with TestClient(app) as client:
        for _ in range(3):
            with client.websocket_connect("/ws") as ws:
                assert ws.receive_json()["type"] == "self-id"
