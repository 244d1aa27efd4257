"""
Tests for the HTTP routes.

Tests cover:
- Health and metrics endpoints
- Room CRUD with field-level validation errors
- Membership toggling, room browser and unread counts
- Messages and replies, including ownership failures
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from roomchat.main import app
from roomchat.pubsub import broker, topic
from roomchat.storage import Base, engine


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def create_user(client, email: str) -> dict:
    """Helper to register a user and return the X-User-Id header for them."""
    response = client.post("/users", json={"email": email})
    assert response.status_code == 201
    return {"X-User-Id": str(response.json()["id"])}


def create_room(client, name: str, topic_text: str = None) -> dict:
    """Helper to create a room."""
    body = {"name": name}
    if topic_text is not None:
        body["topic"] = topic_text
    response = client.post("/rooms", json=body)
    assert response.status_code == 201
    return response.json()


def post_message(client, room_id: int, headers: dict, body: str) -> dict:
    response = client.post(f"/rooms/{room_id}/messages", json={"body": body}, headers=headers)
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def alice(client):
    return create_user(client, "alice@example.com")


@pytest.fixture
def bob(client):
    return create_user(client, "bob@example.com")


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_request_id_header(self, client):
        response = client.get("/health/live")
        assert "X-Request-ID" in response.headers

    def test_metrics_exposed(self, client, alice):
        room = create_room(client, "general")
        post_message(client, room["id"], alice, "hello")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert 'chat_events_published_total{event="new_message"}' in response.text
        assert "live_sessions_active" in response.text


class TestUsers:
    def test_register(self, client):
        response = client.post("/users", json={"email": "carol.smith@example.com"})

        assert response.status_code == 201
        assert response.json()["username"] == "Carol.smith"

    def test_duplicate_email(self, client, alice):
        response = client.post("/users", json={"email": "alice@example.com"})

        assert response.status_code == 422
        assert response.json()["errors"] == {"email": ["has already been taken"]}

    def test_bad_email(self, client):
        response = client.post("/users", json={"email": "not-an-email"})

        assert response.status_code == 422
        assert "email" in response.json()["errors"]


class TestRooms:
    def test_create_room(self, client):
        response = client.post("/rooms", json={"name": "general-chat", "topic": "Anything"})

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "general-chat"
        assert data["topic"] == "Anything"

    def test_invalid_name_is_field_error(self, client):
        response = client.post("/rooms", json={"name": "general chat"})

        assert response.status_code == 422
        assert response.json() == {
            "detail": "validation failed",
            "errors": {"name": ["can only contain lowercase letters, numbers and dashes"]},
        }

    def test_taken_name_is_field_error(self, client):
        create_room(client, "general")
        response = client.post("/rooms", json={"name": "general"})

        assert response.status_code == 422
        assert response.json()["errors"] == {"name": ["has already been taken"]}

    def test_validate_room_form(self, client):
        create_room(client, "general")

        assert client.post("/rooms/validate", json={"name": "fresh"}).json() == {"valid": True, "errors": {}}
        taken = client.post("/rooms/validate", json={"name": "general"}).json()
        assert taken == {"valid": False, "errors": {"name": ["has already been taken"]}}
        assert [r["name"] for r in client.get("/rooms").json()] == ["general"]

    def test_list_rooms_sorted(self, client):
        create_room(client, "beta")
        create_room(client, "alpha")

        response = client.get("/rooms")

        assert response.status_code == 200
        assert [r["name"] for r in response.json()] == ["alpha", "beta"]

    def test_edit_room(self, client):
        room = create_room(client, "general", "old topic")

        response = client.put(f"/rooms/{room['id']}", json={"topic": "new topic"})

        assert response.status_code == 200
        assert response.json() == {"id": room["id"], "name": "general", "topic": "new topic"}

    def test_edit_missing_room(self, client):
        response = client.put("/rooms/999", json={"topic": "x"})
        assert response.status_code == 404

    def test_show_room_with_messages(self, client, alice):
        room = create_room(client, "general")
        post_message(client, room["id"], alice, "hello")

        response = client.get(f"/rooms/{room['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["room"]["name"] == "general"
        assert [m["body"] for m in data["messages"]] == ["hello"]
        assert data["messages"][0]["user"]["username"] == "Alice"

    def test_default_room(self, client):
        create_room(client, "zulu")
        create_room(client, "bravo")

        response = client.get("/rooms/default")

        assert response.status_code == 200
        assert response.json()["room"]["name"] == "bravo"

    def test_default_room_without_rooms(self, client):
        assert client.get("/rooms/default").status_code == 404


class TestMembership:
    def test_toggle_twice_leaves(self, client, alice):
        room = create_room(client, "general")
        url = f"/rooms/{room['id']}/membership"

        assert client.post(url, headers=alice).json() == {"room_id": room["id"], "joined": True}
        assert client.post(url, headers=alice).json() == {"room_id": room["id"], "joined": False}

    def test_requires_user(self, client):
        room = create_room(client, "general")

        assert client.post(f"/rooms/{room['id']}/membership").status_code == 401
        assert client.post(f"/rooms/{room['id']}/membership", headers={"X-User-Id": "999"}).status_code == 401

    def test_browse_rooms(self, client, alice):
        general = create_room(client, "general")
        create_room(client, "random")
        client.post(f"/rooms/{general['id']}/membership", headers=alice)

        response = client.get("/rooms/browse", headers=alice)

        assert response.status_code == 200
        data = response.json()
        assert data["page"] == 1
        assert data["page_size"] == 10
        assert [(r["room"]["name"], r["joined"]) for r in data["data"]] == [("general", True), ("random", False)]

    def test_browse_rejects_page_zero(self, client, alice):
        assert client.get("/rooms/browse?page=0", headers=alice).status_code == 422

    def test_unread_counts(self, client, alice, bob):
        room = create_room(client, "general")
        client.post(f"/rooms/{room['id']}/membership", headers=alice)
        for i in range(5):
            post_message(client, room["id"], bob, f"m{i}")

        assert client.post(f"/rooms/{room['id']}/read", headers=alice).status_code == 204
        for i in range(3):
            post_message(client, room["id"], bob, f"later {i}")

        response = client.get("/rooms/joined", headers=alice)

        assert response.status_code == 200
        assert response.json() == [{"room": room, "unread_count": 3}]


class TestMessages:
    def test_post_message_broadcasts(self, client, alice):
        room = create_room(client, "general")
        received = []
        sub = broker.subscribe(topic(room["id"]), received.append)
        try:
            message = post_message(client, room["id"], alice, "hello")
        finally:
            broker.unsubscribe(sub)

        assert message["body"] == "hello"
        assert [(e.event, e.message.body) for e in received] == [("new_message", "hello")]

    def test_blank_message(self, client, alice):
        room = create_room(client, "general")

        response = client.post(f"/rooms/{room['id']}/messages", json={"body": ""}, headers=alice)

        assert response.status_code == 422
        assert response.json()["errors"] == {"body": ["can't be blank"]}

    def test_validate_message(self, client):
        assert client.post("/messages/validate", json={"body": "hi"}).json() == {"valid": True, "errors": {}}
        assert client.post("/messages/validate", json={}).json() == {
            "valid": False,
            "errors": {"body": ["can't be blank"]},
        }

    def test_times_are_utc_with_offset(self, client, alice, bob):
        room = create_room(client, "general")
        message = post_message(client, room["id"], alice, "when")
        client.post(f"/messages/{message['id']}/replies", json={"body": "now"}, headers=bob)

        thread = client.get(f"/messages/{message['id']}").json()

        for value in (message["inserted_at"], thread["inserted_at"], thread["replies"][0]["inserted_at"]):
            assert datetime.fromisoformat(value.replace("Z", "+00:00")).utcoffset() == timedelta(0)

    def test_post_to_missing_room(self, client, alice):
        response = client.post("/rooms/999/messages", json={"body": "hi"}, headers=alice)
        assert response.status_code == 404

    def test_non_owner_delete_forbidden(self, client, alice, bob):
        room = create_room(client, "general")
        message = post_message(client, room["id"], alice, "mine")

        response = client.delete(f"/messages/{message['id']}", headers=bob)

        assert response.status_code == 403
        assert len(client.get(f"/rooms/{room['id']}/messages").json()) == 1

    def test_owner_delete(self, client, alice):
        room = create_room(client, "general")
        message = post_message(client, room["id"], alice, "bye")

        assert client.delete(f"/messages/{message['id']}", headers=alice).status_code == 204
        assert client.get(f"/rooms/{room['id']}/messages").json() == []
        assert client.get(f"/messages/{message['id']}").status_code == 404

    def test_reply_round_trip(self, client, alice, bob):
        room = create_room(client, "general")
        message = post_message(client, room["id"], alice, "question")

        first = client.post(f"/messages/{message['id']}/replies", json={"body": "one"}, headers=bob)
        second = client.post(f"/messages/{message['id']}/replies", json={"body": "two"}, headers=alice)
        assert first.status_code == 201
        assert second.status_code == 201

        thread = client.get(f"/messages/{message['id']}").json()
        assert [r["body"] for r in thread["replies"]] == ["one", "two"]
        assert [r["user"]["username"] for r in thread["replies"]] == ["Bob", "Alice"]

    def test_reply_delete_ownership(self, client, alice, bob):
        room = create_room(client, "general")
        message = post_message(client, room["id"], alice, "question")
        reply = client.post(f"/messages/{message['id']}/replies", json={"body": "one"}, headers=bob).json()

        assert client.delete(f"/replies/{reply['id']}", headers=alice).status_code == 403
        assert client.delete(f"/replies/{reply['id']}", headers=bob).status_code == 204
        assert client.get(f"/messages/{message['id']}").json()["replies"] == []
        assert client.delete(f"/replies/{reply['id']}", headers=bob).status_code == 404
