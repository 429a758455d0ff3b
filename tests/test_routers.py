import httpx
import pytest
import pytest_asyncio

import managers.chat
from app import app
from routers.deps import get_backend

ALICE = {"X-Participant-Id": "alice", "X-Participant-Name": "Alice"}
BOB = {"X-Participant-Id": "bob", "X-Participant-Name": "Bob"}


@pytest_asyncio.fixture
async def client(backend, published):
    app.dependency_overrides[get_backend] = lambda: backend
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def create_poll(client, **overrides):
    body = {"title": "Favourite colour?", "options": ["Red", "Blue"], "time_limit_seconds": 60, **overrides}
    response = await client.post("/rooms/room-1/polls/", json=body)
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_poll_flow(client, published):
    poll = await create_poll(client)
    assert poll["status"] == "pending"
    assert [o["id"] for o in poll["options"]] == [0, 1]

    response = await client.post(f"/rooms/room-1/polls/{poll['id']}/start")
    assert response.status_code == 200
    assert response.json()["ended_at"] is not None

    response = await client.post(f"/rooms/room-1/polls/{poll['id']}/votes", json={"option_id": 1}, headers=ALICE)
    assert response.status_code == 200
    assert response.json() == [{"id": 0, "count": 0}, {"id": 1, "count": 1}]

    response = await client.post(f"/rooms/room-1/polls/{poll['id']}/votes", json={"option_id": 0}, headers=ALICE)
    assert response.status_code == 409

    response = await client.get(f"/rooms/room-1/polls/{poll['id']}/voted", headers=ALICE)
    assert response.json() == {"voted": True, "option_id": 1}
    response = await client.get(f"/rooms/room-1/polls/{poll['id']}/voted", headers=BOB)
    assert response.json() == {"voted": False, "option_id": None}

    listed = (await client.get("/rooms/room-1/polls/")).json()
    assert [o["count"] for o in listed[0]["options"]] == [0, 1]

    response = await client.post(f"/rooms/room-1/polls/{poll['id']}/close")
    assert response.status_code == 200
    assert [o["count"] for o in response.json()] == [0, 1]
    assert response.json()[1]["voters"] == [{"id": "alice", "name": "Alice"}]

    assert [event["type"] for _, event in published] == ["poll_started", "poll_updated", "poll_ended"]


@pytest.mark.asyncio
async def test_poll_validation(client):
    response = await client.post("/rooms/room-1/polls/", json={"title": "Only one", "options": ["A"]})
    assert response.status_code == 422

    response = await client.post("/rooms/room-1/polls/", json={"title": "  ", "options": ["A", "B"]})
    assert response.status_code == 422

    poll = await create_poll(client)
    await client.post(f"/rooms/room-1/polls/{poll['id']}/start")
    response = await client.post(f"/rooms/room-1/polls/{poll['id']}/votes", json={"option_id": 7}, headers=ALICE)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_vote_requires_participant_header(client):
    poll = await create_poll(client)
    response = await client.post(f"/rooms/room-1/polls/{poll['id']}/votes", json={"option_id": 0})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_vote_on_pending_poll_is_conflict(client):
    poll = await create_poll(client)
    response = await client.post(f"/rooms/room-1/polls/{poll['id']}/votes", json={"option_id": 0}, headers=ALICE)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_unknown_poll_is_not_found(client):
    assert (await client.post("/rooms/room-1/polls/missing/start")).status_code == 404

    poll = await create_poll(client)
    assert (await client.post(f"/rooms/room-2/polls/{poll['id']}/start")).status_code == 404


@pytest.mark.asyncio
async def test_qna_flow(client, published):
    response = await client.post("/rooms/room-1/qna/", json={"title": "Questions?", "time_limit_seconds": 60})
    qna = response.json()

    await client.post(f"/rooms/room-1/qna/{qna['id']}/start")
    response = await client.post(f"/rooms/room-1/qna/{qna['id']}/answers", json={"text": " Recursion "}, headers=ALICE)
    assert response.json() == {"count": 1}
    response = await client.post(f"/rooms/room-1/qna/{qna['id']}/answers", json={"text": "Again"}, headers=ALICE)
    assert response.status_code == 409

    answers = (await client.get(f"/rooms/room-1/qna/{qna['id']}/answers")).json()
    assert answers == [{"participant_id": "alice", "participant_name": "Alice", "text": "Recursion"}]

    response = await client.post(f"/rooms/room-1/qna/{qna['id']}/close")
    assert response.json() == answers
    assert [event["type"] for _, event in published] == ["qna_started", "qna_updated", "qna_ended"]


@pytest.mark.asyncio
async def test_chat_send_and_sync(client, published, monkeypatch):
    clock = iter(range(1_700_000_000_000, 1_700_000_001_000, 10))
    monkeypatch.setattr(managers.chat, "now_ms", lambda: next(clock))

    first = (await client.post("/rooms/room-1/chat/", json={"text": "hello"}, headers=ALICE)).json()
    await client.post("/rooms/room-1/chat/", json={"text": "hi there"}, headers=BOB)

    response = await client.get("/rooms/room-1/chat/", params={"after": first["message_id"]}, headers=ALICE)
    assert [m["text"] for m in response.json()["messages"]] == ["hi there"]

    response = await client.get("/rooms/room-1/chat/", headers=ALICE)
    assert [m["sender_name"] for m in response.json()["messages"]] == ["Alice", "Bob"]
    assert all(event["type"] == "chat" for _, event in published)


@pytest.mark.asyncio
async def test_chat_rate_limit(client):
    for i in range(5):
        response = await client.post("/rooms/room-1/chat/", json={"text": f"message {i}"}, headers=ALICE)
        assert response.status_code == 200
    response = await client.post("/rooms/room-1/chat/", json={"text": "one more"}, headers=ALICE)
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_chat_text_limits(client):
    response = await client.post("/rooms/room-1/chat/", json={"text": "x" * 61}, headers=ALICE)
    assert response.status_code == 422
    response = await client.post("/rooms/room-1/chat/", json={"text": "   "}, headers=ALICE)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_room_snapshot_and_clear(client):
    await create_poll(client)
    await client.post("/rooms/room-1/qna/", json={"title": "Questions?"})
    await client.post("/rooms/room-1/chat/", json={"text": "hello"}, headers=ALICE)

    snapshot = (await client.get("/rooms/room-1/interactions")).json()
    assert len(snapshot["polls"]) == 1
    assert len(snapshot["qna"]) == 1
    assert len(snapshot["messages"]) == 1

    response = await client.delete("/rooms/room-1/interactions")
    assert response.json() == {"room_id": "room-1", "cleared": True}

    snapshot = (await client.get("/rooms/room-1/interactions")).json()
    assert snapshot["polls"] == snapshot["qna"] == snapshot["messages"] == []
