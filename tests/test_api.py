from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from learnchat.main import _build_lifespan, create_app
from tests.conftest import auth, make_settings

BASE = "/api/v1/messaging"


def send(client, sender, content, **target):
    body = {"content": content}
    body.update({key: str(value) for key, value in target.items()})
    return client.post(f"{BASE}/messages", json=body, headers=auth(sender))


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/api/v1/health/redis").json()["status"] == "not_configured"


def test_requests_need_a_valid_token(client):
    assert client.get(f"{BASE}/conversations").status_code == 401
    response = client.get(f"{BASE}/conversations", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_send_needs_exactly_one_target(client, alice, bob):
    response = client.post(f"{BASE}/messages", json={"content": "lost"}, headers=auth(alice))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"

    response = client.post(
        f"{BASE}/messages",
        json={"content": "both", "receiverId": str(bob), "conversationId": str(uuid4())},
        headers=auth(alice),
    )
    assert response.status_code == 400

    listed = client.get(f"{BASE}/conversations", headers=auth(alice)).json()
    assert listed["conversations"] == []


def test_direct_message_flow(client, alice, bob):
    response = send(client, alice, "hi", receiverId=bob)
    assert response.status_code == 201
    message = response.json()
    assert message["content"] == "hi"
    assert message["senderId"] == str(alice)
    assert message["isDeleted"] is False
    conversation_id = message["conversationId"]

    listed = client.get(f"{BASE}/conversations", headers=auth(bob)).json()
    assert listed["pagination"]["total"] == 1
    conversation = listed["conversations"][0]
    assert conversation["id"] == conversation_id
    assert conversation["type"] == "direct"
    assert conversation["unreadCount"] == 1
    assert conversation["lastMessage"]["content"] == "hi"
    assert sorted(conversation["participantIds"]) == sorted([str(alice), str(bob)])

    read = client.post(f"{BASE}/conversations/{conversation_id}/read", headers=auth(bob)).json()
    assert read["unreadCount"] == 0
    count = client.get(f"{BASE}/conversations/{conversation_id}/unread-count", headers=auth(bob)).json()
    assert count == {"conversationId": conversation_id, "unreadCount": 0}


def test_create_direct_conversation_twice_returns_same_one(client, alice, bob):
    body = {"type": "direct", "participantIds": [str(bob)]}
    first = client.post(f"{BASE}/conversations", json=body, headers=auth(alice))
    second = client.post(f"{BASE}/conversations", json=body, headers=auth(alice))

    assert first.status_code == 201
    assert second.json()["id"] == first.json()["id"]


def test_group_lifecycle(client, alice, bob, carol):
    created = client.post(
        f"{BASE}/conversations",
        json={"type": "group", "name": "Biology 101", "participantIds": [str(bob)]},
        headers=auth(alice),
    )
    assert created.status_code == 201
    conversation_id = created.json()["id"]

    forbidden = client.put(f"{BASE}/conversations/{conversation_id}", json={"name": "Mine"}, headers=auth(bob))
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "permission_denied"

    renamed = client.put(f"{BASE}/conversations/{conversation_id}", json={"name": "Biology 102"}, headers=auth(alice))
    assert renamed.json()["name"] == "Biology 102"

    added = client.post(
        f"{BASE}/conversations/{conversation_id}/participants",
        json={"userIds": [str(carol)]},
        headers=auth(alice),
    )
    assert added.status_code == 200
    assert added.json()[0]["userId"] == str(carol)

    removed = client.delete(f"{BASE}/conversations/{conversation_id}/participants/{carol}", headers=auth(alice))
    assert removed.json()["leftAt"] is not None

    outsider = client.get(f"{BASE}/conversations/{uuid4()}", headers=auth(alice))
    assert outsider.status_code == 404

    deleted = client.delete(f"{BASE}/conversations/{conversation_id}", headers=auth(alice))
    assert deleted.status_code == 204
    assert client.get(f"{BASE}/conversations/{conversation_id}", headers=auth(alice)).status_code == 404


def test_group_without_name_is_rejected(client, alice, bob):
    response = client.post(
        f"{BASE}/conversations",
        json={"type": "group", "participantIds": [str(bob)]},
        headers=auth(alice),
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Group conversations must have a name"


def test_message_history_edit_and_delete(client, alice, bob):
    conversation_id = send(client, alice, "first", receiverId=bob).json()["conversationId"]
    second = send(client, alice, "second", conversationId=conversation_id).json()
    send(client, alice, "third", conversationId=conversation_id)

    edited = client.put(f"{BASE}/messages/{second['id']}", json={"content": "second!"}, headers=auth(alice))
    assert edited.json()["isEdited"] is True

    not_sender = client.delete(f"{BASE}/messages/{second['id']}", headers=auth(bob))
    assert not_sender.status_code == 403

    deleted = client.delete(f"{BASE}/messages/{second['id']}", headers=auth(alice)).json()
    assert deleted["isDeleted"] is True
    assert deleted["content"] == "[Message deleted]"

    history = client.get(f"{BASE}/conversations/{conversation_id}/messages", headers=auth(bob)).json()
    assert [m["content"] for m in history["messages"]] == ["first", "[Message deleted]", "third"]
    assert history["pagination"] == {
        "page": 1, "limit": 50, "total": 3, "totalPages": 1, "hasNext": False, "hasPrev": False,
    }

    page = client.get(
        f"{BASE}/conversations/{conversation_id}/messages",
        params={"limit": 2, "page": 2},
        headers=auth(bob),
    ).json()
    assert [m["content"] for m in page["messages"]] == ["first"]
    assert page["pagination"]["hasPrev"] is True


def test_history_honours_offsets_inside_a_page(client, alice, bob):
    conversation_id = send(client, alice, "m0", receiverId=bob).json()["conversationId"]
    for n in range(1, 20):
        send(client, alice, f"m{n}", conversationId=conversation_id)

    window = client.get(
        f"{BASE}/conversations/{conversation_id}/messages",
        params={"offset": 5, "limit": 10},
        headers=auth(bob),
    ).json()
    assert [m["content"] for m in window["messages"]] == [f"m{n}" for n in range(5, 15)]
    assert window["pagination"]["hasPrev"] is True
    assert window["pagination"]["hasNext"] is True

    listed = client.get(f"{BASE}/conversations", params={"offset": 1}, headers=auth(bob)).json()
    assert listed["conversations"] == []
    assert listed["pagination"]["total"] == 1


def test_reactions_and_read_receipts(client, alice, bob):
    message = send(client, alice, "quiz tomorrow", receiverId=bob).json()
    url = f"{BASE}/messages/{message['id']}"

    client.post(f"{url}/reactions", json={"emoji": "👍"}, headers=auth(bob))
    reacted = client.post(f"{url}/reactions", json={"emoji": "👍"}, headers=auth(bob)).json()
    assert reacted["reactions"] == {"👍": [str(bob)]}

    removed = client.delete(f"{url}/reactions", params={"emoji": "👍"}, headers=auth(bob)).json()
    assert removed["reactions"] == {}

    read = client.post(f"{url}/read", headers=auth(bob)).json()
    assert read["readBy"] == [str(bob)]


def test_search_messages(client, alice, bob, carol):
    send(client, alice, "Homework is due Friday", receiverId=bob)
    send(client, alice, "homework help?", receiverId=carol)

    found = client.get(f"{BASE}/messages/search", params={"query": "HOMEWORK"}, headers=auth(bob)).json()
    assert [m["content"] for m in found] == ["Homework is due Friday"]


def test_send_rate_limit_rejects_before_persisting(client, alice, bob):
    conversation_id = send(client, alice, "1", receiverId=bob).json()["conversationId"]
    for n in range(2, 31):
        assert send(client, alice, str(n), conversationId=conversation_id).status_code == 201

    rejected = send(client, alice, "31", conversationId=conversation_id)
    assert rejected.status_code == 429
    assert rejected.json()["error"]["code"] == "rate_limited"
    assert int(rejected.headers["Retry-After"]) >= 1

    history = client.get(
        f"{BASE}/conversations/{conversation_id}/messages",
        params={"limit": 100},
        headers=auth(alice),
    ).json()
    assert history["pagination"]["total"] == 30

    # Other senders have their own quota
    assert send(client, bob, "still fine", conversationId=conversation_id).status_code == 201


def test_rate_limit_is_configurable(alice, bob):
    app = create_app(make_settings(message_rate_limit=1))
    with TestClient(app) as client:
        assert send(client, alice, "one", receiverId=bob).status_code == 201
        assert send(client, alice, "two", receiverId=bob).status_code == 429


async def test_redis_backend_requires_url():
    app = FastAPI()
    lifespan = _build_lifespan(make_settings(pubsub_backend="redis"))
    with pytest.raises(RuntimeError, match="REDIS_URL"):
        async with lifespan(app):
            pass
