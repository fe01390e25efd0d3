import asyncio

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient
from starlette.websockets import WebSocketDisconnect

from conftest import USER_A, USER_B, FakeBlobStore, build_service
from exchange_chat.config import Settings
from exchange_chat.main import app
from exchange_chat.utils.dependencies import get_chat_service, get_exchange_service
from exchange_chat.utils.realtime_bus import LocalBus
from exchange_chat.utils.security import create_access_token


def _auth(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def api_db():
    return AsyncMongoMockClient()["exchange_chat_api"]


@pytest.fixture
def client(api_db):
    service = build_service(api_db, LocalBus(), Settings(stream_poll_seconds=0.2), FakeBlobStore())
    app.dependency_overrides[get_chat_service] = lambda: service
    app.dependency_overrides[get_exchange_service] = lambda: service.exchanges
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def conversation_id(client):
    res = client.post("/conversations", json={"other_user_id": USER_B}, headers=_auth(USER_A))
    assert res.status_code == 200
    return res.json()["conversation"]["_id"]


class TestAuth:

    def test_missing_token(self, client):
        res = client.get("/conversations")
        assert res.status_code == 401
        assert res.json()["error"] == "Unauthenticated"

    def test_bad_token(self, client):
        res = client.get("/conversations", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401

    def test_outsider_gets_403(self, client, conversation_id):
        res = client.get(f"/conversations/{conversation_id}", headers=_auth("intruder"))
        assert res.status_code == 403
        assert res.json()["status"] == "fail"


class TestConversationRoutes:

    def test_open_is_idempotent(self, client, conversation_id):
        res = client.post("/conversations", json={"other_user_id": USER_A}, headers=_auth(USER_B))
        assert res.json()["conversation"]["_id"] == conversation_id

    def test_send_list_and_read(self, client, conversation_id):
        res = client.post(f"/conversations/{conversation_id}/messages", json={"text": "hello"}, headers=_auth(USER_A))
        assert res.status_code == 201
        assert res.json()["message"]["seq"] == 1

        listing = client.get("/conversations", headers=_auth(USER_B)).json()
        assert listing["items"][0]["unread"] == 1
        assert listing["items"][0]["other_user_id"] == USER_A
        assert client.get("/conversations/unread", headers=_auth(USER_B)).json()["total"] == 1

        res = client.post(f"/conversations/{conversation_id}/read", headers=_auth(USER_B))
        assert res.json() == {"updated": 1}
        assert client.get("/conversations/unread", headers=_auth(USER_B)).json()["total"] == 0

        history = client.get(f"/conversations/{conversation_id}/messages", headers=_auth(USER_B)).json()
        assert [m["text"] for m in history["items"]] == ["hello"]
        assert history["items"][0]["read"] is True

    def test_unknown_conversation_is_404(self, client):
        res = client.get(f"/conversations/{ObjectId()}", headers=_auth(USER_A))
        assert res.status_code == 404
        assert res.json()["retryable"] is False

    def test_empty_message_is_422(self, client, conversation_id):
        res = client.post(f"/conversations/{conversation_id}/messages", json={"text": " "}, headers=_auth(USER_A))
        assert res.status_code == 422

    def test_media_upload(self, client, conversation_id):
        files = [("files", ("a.jpg", b"123", "image/jpeg")), ("files", ("b.jpg", b"456", "image/jpeg"))]
        res = client.post(f"/conversations/{conversation_id}/media", files=files, data={"text": "pics"}, headers=_auth(USER_A))
        assert res.status_code == 201
        body = res.json()
        assert len(body["message"]["media_urls"]) == 2
        assert set(body["media"]) == set(body["message"]["media_urls"])

    def test_recipient_downloads_received_media(self, client, conversation_id):
        files = [("files", ("a.jpg", b"123", "image/jpeg"))]
        client.post(f"/conversations/{conversation_id}/media", files=files, headers=_auth(USER_A))

        item = client.get(f"/conversations/{conversation_id}/messages", headers=_auth(USER_B)).json()["items"][0]
        (url,) = item["media"].values()

        res = client.get(url)
        assert res.status_code == 200
        assert res.content == b"123"
        forged = client.get(url.split("?sig=")[0] + "?sig=forged")
        assert forged.status_code == 403

    def test_quick_responses(self, client):
        assert "When can we meet?" in client.get("/conversations/quick-responses").json()["items"]


class TestExchangeRoutes:

    def test_options(self, client):
        body = client.get("/exchanges/options").json()
        assert body["exchange_types"] == ["pickup", "delivery"]
        assert len(body["safe_locations"]) == 3
        assert len(body["time_slots"]) == 26

    def test_full_flow(self, client, conversation_id):
        res = client.post(
            f"/conversations/{conversation_id}/exchanges",
            json={"exchange_type": "pickup", "location": {"id": "1"}, "date_time": "2025-04-01T10:00:00Z"},
            headers=_auth(USER_A),
        )
        assert res.status_code == 201
        exchange_id = res.json()["exchange"]["_id"]

        res = client.post(f"/exchanges/{exchange_id}/respond", json={"decision": "accept"}, headers=_auth(USER_B))
        assert res.json()["exchange"]["status"] == "accepted"

        res = client.post(f"/exchanges/{exchange_id}/complete", headers=_auth(USER_A))
        assert res.json()["exchange"]["status"] == "completed"

        res = client.post(f"/exchanges/{exchange_id}/complete", headers=_auth(USER_A))
        assert res.status_code == 409
        assert res.json()["error"] == "InvalidState"

        history = client.get(f"/conversations/{conversation_id}/messages", headers=_auth(USER_A)).json()["items"]
        assert history[0]["exchange_id"] == exchange_id
        assert [m["exchange_id"] for m in history[1:]] == [None, None]

        listed = client.get(f"/conversations/{conversation_id}/exchanges", headers=_auth(USER_B)).json()["items"]
        assert [e["_id"] for e in listed] == [exchange_id]

    def test_promotion_release_requires_the_owner(self, client, api_db):
        asyncio.run(api_db["businesses"].insert_one({"_id": "biz-1", "owner_id": USER_B}))
        body = {"business_id": "biz-1", "item_id": "promo-1"}

        res = client.post("/exchanges/promotions/release", json=body, headers=_auth("random-stranger"))
        assert res.status_code == 403

        res = client.post("/exchanges/promotions/release", json=body, headers=_auth(USER_B))
        assert res.json() == {"updated": 0}

    def test_bad_decision_is_rejected_by_schema(self, client):
        res = client.post(f"/exchanges/{ObjectId()}/respond", json={"decision": "maybe"}, headers=_auth(USER_B))
        assert res.status_code == 422


class TestConversationSocket:

    def test_requires_token(self, client, conversation_id):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/conversations/{conversation_id}"):
                pass

    def test_send_over_socket(self, client, conversation_id):
        token = create_access_token(USER_A)
        with client.websocket_connect(f"/ws/conversations/{conversation_id}?token={token}") as ws:
            ws.send_json({"type": "message", "text": "over the wire", "client_message_id": "c1"})
            frames = [ws.receive_json(), ws.receive_json()]

        by_type = {f["type"]: f for f in frames}
        assert set(by_type) == {"ack", "message"}
        assert by_type["ack"]["client_message_id"] == "c1"
        assert by_type["message"]["message"]["text"] == "over the wire"
