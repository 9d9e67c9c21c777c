import httpx
import pytest
import pytest_asyncio
from bson import ObjectId

from chat_relay.database.connection import mongo_db_dependency
from chat_relay.main import create_app
from chat_relay.services.chat_service import DeliverMessage
from chat_relay.utils.presence import PresenceRegistry
from chat_relay.utils.security import create_access_token


@pytest.fixture
def app(db):
    app = create_app()
    app.state.presence = PresenceRegistry()

    async def override_db():
        return db

    app.dependency_overrides[mongo_db_dependency] = override_db
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def auth(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    assert (await client.get("/conversations")).status_code == 401
    resp = await client.get("/messages/unread-count", headers={"Authorization": "Bearer junk"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_start_conversation_is_idempotent(client, db):
    first = await client.post("/conversations", json={"participantId": "u2"}, headers=auth("u1"))
    second = await client.post("/conversations", json={"participantId": "u1"}, headers=auth("u2"))

    assert first.status_code == 200
    assert first.json()["conversation"]["conversationId"] == second.json()["conversation"]["conversationId"]
    assert first.json()["conversation"]["userId"] == "u2"
    assert first.json()["conversation"]["partnerName"] == "Unknown"
    assert await db["conversations"].count_documents({}) == 1


@pytest.mark.asyncio
async def test_history_fetch_returns_messages_and_resets_unread(client, service, db):
    delivery = await service.deliver(DeliverMessage("u1", "u2", "hello"))
    conversation_id = str(delivery.conversation["_id"])

    listed = await client.get("/conversations", headers=auth("u2"))
    assert listed.json()["items"][0]["unread"] == 1

    resp = await client.get(f"/conversations/{conversation_id}/messages", headers=auth("u2"))

    assert resp.status_code == 200
    items = resp.json()["items"]
    assert [m["content"] for m in items] == ["hello"]
    assert items[0]["read"] is True
    listed = await client.get("/conversations", headers=auth("u2"))
    assert listed.json()["items"][0]["unread"] == 0


@pytest.mark.asyncio
async def test_history_of_foreign_or_unknown_conversation_is_not_found(client, service):
    delivery = await service.deliver(DeliverMessage("u1", "u2", "private"))

    foreign = await client.get(f"/conversations/{delivery.conversation['_id']}/messages", headers=auth("u3"))
    unknown = await client.get(f"/conversations/{ObjectId()}/messages", headers=auth("u1"))

    for resp in (foreign, unknown):
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_post_message_in_conversation(client, service, db):
    convo = await service.start_conversation("u1", "u2")

    resp = await client.post(f"/conversations/{convo['_id']}/messages", json={"text": "see you"}, headers=auth("u1"))

    assert resp.status_code == 200
    message = resp.json()["message"]
    assert message["text"] == "see you"
    assert message["receiverId"] == "u2"
    assert (await db["conversations"].find_one({"_id": convo["_id"]}))["unread_count"] == 1

    empty = await client.post(f"/conversations/{convo['_id']}/messages", json={"text": "  "}, headers=auth("u1"))
    assert empty.status_code == 400
    assert empty.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_unread_count_and_mark_read(client, service):
    first = await service.deliver(DeliverMessage("u1", "u2", "one"))
    await service.deliver(DeliverMessage("u3", "u2", "two"))

    assert (await client.get("/messages/unread-count", headers=auth("u2"))).json() == {"count": 2}

    resp = await client.put(
        "/messages/mark-read",
        json={"messageIds": [str(first.message["_id"])]},
        headers=auth("u2"),
    )

    assert resp.json() == {"updated": 1}
    assert (await client.get("/messages/unread-count", headers=auth("u2"))).json() == {"count": 1}


@pytest.mark.asyncio
async def test_presence_route_reflects_registry(client, app):
    app.state.presence.register("u1", "sid-1")

    online = await client.get("/presence/u1")
    offline = await client.get("/presence/u2")

    assert online.json() == {"user_id": "u1", "online": True}
    assert offline.json() == {"user_id": "u2", "online": False}


@pytest.mark.asyncio
async def test_post_direct_message_creates_conversation(client, db):
    resp = await client.post("/messages", json={"receiver": "u2", "content": " hello "}, headers=auth("u1"))

    assert resp.status_code == 201
    message = resp.json()["message"]
    assert message["content"] == "hello"
    assert message["senderId"] == "u1"
    convo = await db["conversations"].find_one({})
    assert convo["participants"] == ["u1", "u2"]
    assert str(convo["_id"]) == message["conversationId"]

    again = await client.post("/messages", json={"receiver": "u1", "attachments": ["https://cdn/a.png"]}, headers=auth("u2"))
    assert again.status_code == 201
    assert await db["conversations"].count_documents({}) == 1


@pytest.mark.asyncio
async def test_post_direct_message_requires_content_or_attachments(client, db):
    for body in ({"receiver": "u2", "content": "  "}, {"receiver": "u2", "attachments": [" "]}, {"content": "hi"}):
        resp = await client.post("/messages", json=body, headers=auth("u1"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    assert await db["messages"].count_documents({}) == 0


@pytest.mark.asyncio
async def test_pair_conversation_history(client, service):
    await service.deliver(DeliverMessage("u1", "u2", "first"))
    await service.deliver(DeliverMessage("u2", "u1", "second"))

    resp = await client.get("/messages/conversation", params={"user1": "u2", "user2": "u1"}, headers=auth("u1"))

    assert resp.status_code == 200
    assert [m["content"] for m in resp.json()["items"]] == ["first", "second"]

    missing = await client.get("/messages/conversation", params={"user1": "u1"}, headers=auth("u1"))
    assert missing.status_code == 400
    foreign = await client.get("/messages/conversation", params={"user1": "u1", "user2": "u2"}, headers=auth("u3"))
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_mark_read_requires_message_ids(client):
    for body in ({"messageIds": []}, {}):
        resp = await client.put("/messages/mark-read", json=body, headers=auth("u2"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"
