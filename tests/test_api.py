"""Test suite for the API endpoints."""

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from firechat_sync.api.app import create_app
from firechat_sync.context import ChatContext
from firechat_sync.repositories.memory import InMemoryDocumentStore
from firechat_sync.repositories.resilient import ResilientStore


@pytest.fixture
def app(context):
    return create_app(context)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def _register(client, uid, name):
    response = await client.put(f"/users/{uid}", json={"email": f"{uid}@example.com", "displayName": name})
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_user_lifecycle(client):
    """Test registering, reading, searching and setting presence."""
    profile = await _register(client, "u1", "Ada")
    await _register(client, "u2", "Bob")
    assert profile["uid"] == "u1"
    assert profile["displayName"] == "Ada"
    assert profile["status"] == "online"

    response = await client.put("/users/u1/status", json={"status": "away"})
    assert response.status_code == 204
    assert (await client.get("/users/u1")).json()["status"] == "away"

    others = (await client.get("/users", params={"exclude": "u1"})).json()
    assert [p["uid"] for p in others] == ["u2"]
    found = (await client.get("/users", params={"exclude": "u2", "q": "ADA"})).json()
    assert [p["uid"] for p in found] == ["u1"]


@pytest.mark.asyncio
async def test_error_mapping(client):
    """Test domain errors become the matching HTTP status codes."""
    response = await client.get("/users/ghost")
    assert response.status_code == 404

    response = await client.put("/users/ghost/status", json={"status": "online"})
    assert response.status_code == 404

    response = await client.put("/users/u1", json={"email": "broken"})
    assert response.status_code == 400

    response = await client.post("/conversations/direct", json={"userA": "u1", "userB": "u1"})
    assert response.status_code == 400

    response = await client.put("/users/u1/status", json={"status": "busy"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_conversation_flow(client):
    """Test a group conversation from creation to read receipts."""
    for uid, name in (("u1", "Ada"), ("u2", "Bob"), ("u3", "Cy")):
        await _register(client, uid, name)

    response = await client.post(
        "/conversations/group",
        json={"creatorId": "u1", "memberIds": ["u2"], "name": "Team", "description": "Daily"},
    )
    assert response.status_code == 200
    cid = response.json()["conversationId"]

    response = await client.post(f"/conversations/{cid}/participants", json={"userId": "u3", "actorId": "u1"})
    assert response.json() == {"changed": True}

    response = await client.post(
        f"/conversations/{cid}/messages",
        json={"text": "hello", "senderId": "u1", "senderName": "Ada"},
    )
    assert response.status_code == 200
    message_id = response.json()["messageId"]

    messages = (await client.get(f"/conversations/{cid}/messages")).json()
    assert [m["text"] for m in messages] == ["u1 added u3 to the conversation", "hello"]
    assert messages[-1]["id"] == message_id

    listing = (await client.get("/users/u2/conversations")).json()
    assert listing[0]["conversation"]["id"] == cid
    assert listing[0]["membership"]["unreadCount"] == 1
    assert listing[0]["conversation"]["lastMessage"]["text"] == "hello"

    assert (await client.post(f"/conversations/{cid}/delivered", json={"userId": "u3"})).json() == {"count": 1}
    assert (await client.post(f"/conversations/{cid}/read", json={"userId": "u2"})).json() == {"count": 1}

    response = await client.patch(f"/users/u2/conversations/{cid}", json={"muted": True})
    assert response.status_code == 204
    listing = (await client.get("/users/u2/conversations")).json()
    assert listing[0]["membership"]["muted"] is True
    assert listing[0]["membership"]["unreadCount"] == 0

    response = await client.delete(f"/conversations/{cid}/participants/u3", params={"actor_id": "u1"})
    assert response.json() == {"changed": True}
    conversation = (await client.get(f"/conversations/{cid}")).json()
    assert sorted(conversation["participants"]) == ["u1", "u2"]

    found = (await client.get("/users/u1/conversations/search", params={"q": "team"})).json()
    assert [v["conversation"]["id"] for v in found] == [cid]
    groups = (await client.get("/users/u1/conversations/groups")).json()
    assert [g["id"] for g in groups] == [cid]


@pytest.mark.asyncio
async def test_direct_conversations(client):
    """Test opening and finding a direct conversation."""
    first = (await client.post("/conversations/direct", json={"userA": "u2", "userB": "u1"})).json()
    second = (await client.post("/conversations/direct", json={"userA": "u1", "userB": "u2"})).json()
    assert first == second == {"conversationId": "direct_u1_u2"}

    assert (await client.get("/users/u1/direct/u2")).json() == {"conversationId": "direct_u1_u2"}
    assert (await client.get("/users/u1/direct/u9")).json() == {"conversationId": None}

    recent = (await client.get("/users/u1/conversations/recent", params={"count": 1})).json()
    assert [v["conversation"]["id"] for v in recent] == ["direct_u1_u2"]


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    """Test Prometheus metrics exposure."""
    await client.get("/users/ghost")
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "requests_total" in response.text
    assert "errors_total" in response.text


def test_conversation_stream():
    """Test the WebSocket stream pushes the whole list on every change."""
    context = ChatContext(InMemoryDocumentStore())
    with TestClient(create_app(context)) as client:
        with client.websocket_connect("/ws/users/u1/conversations") as websocket:
            assert websocket.receive_json() == []

            client.post("/conversations/direct", json={"userA": "u1", "userB": "u2"})
            views = websocket.receive_json()
            assert [v["conversation"]["id"] for v in views] == ["direct_u1_u2"]

            client.post("/conversations/group", json={"creatorId": "u1", "name": "Team"})
            views = websocket.receive_json()
            assert len(views) == 2

        assert context.store.listener_count == 0


def test_message_stream():
    """Test the message stream delivers ordered windows."""
    context = ChatContext(InMemoryDocumentStore())
    with TestClient(create_app(context)) as client:
        cid = client.post("/conversations/direct", json={"userA": "u1", "userB": "u2"}).json()["conversationId"]
        with client.websocket_connect(f"/ws/conversations/{cid}/messages?limit=2") as websocket:
            assert websocket.receive_json()["messages"] == []

            for text in ("one", "two", "three"):
                client.post(f"/conversations/{cid}/messages", json={"text": text, "senderId": "u1"})
                feed = websocket.receive_json()

            assert feed["conversationId"] == cid
            assert [m["text"] for m in feed["messages"]] == ["two", "three"]


@pytest.mark.asyncio
async def test_limits_must_be_positive(client):
    """Test window sizes below one are rejected at the boundary."""
    cid = (await client.post("/conversations/direct", json={"userA": "u1", "userB": "u2"})).json()["conversationId"]

    assert (await client.get(f"/conversations/{cid}/messages", params={"limit": -1})).status_code == 422
    assert (await client.get("/users/u1/conversations/recent", params={"count": 0})).status_code == 422
    assert (await client.get("/users/u1/conversations/search", params={"q": "x", "limit": 0})).status_code == 422
    assert (await client.get(f"/conversations/{cid}/messages", params={"limit": 1})).status_code == 200


def test_factory_builds_context_from_settings():
    """Test the application factory works without an explicit context."""
    app = create_app()
    context = app.state.context
    assert isinstance(context, ChatContext)
    assert isinstance(context.store, ResilientStore)

    with TestClient(app) as client:
        assert client.get("/users/ghost").status_code == 404
