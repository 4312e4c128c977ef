"""Tests for accounts, sessions and the chatbot endpoints."""

import uuid

import pytest

from therapy_chat.models.database import ChatSession, Message
from therapy_chat.services.database import database_service
from therapy_chat.services.sessions import SESSION_ALREADY_STARTED


@pytest.fixture
def owner(make_user):
    return make_user(full_name="Ana Client")


@pytest.fixture
def chat_session(owner, persist):
    return persist(ChatSession(user_id=owner.id, title="Sunday", goal="Manage exam anxiety"))


# ==================================================
# Error envelope
# ==================================================
@pytest.mark.parametrize("method", ["get", "put", "delete"])
def test_non_post_save_summary_is_405(client, method):
    response = getattr(client, method)("/api/v1/chatbot/save-summary")
    assert response.status_code == 405
    assert response.json() == {"error": "Method Not Allowed"}


def test_save_summary_empty_body_is_400(client, owner, auth_headers):
    response = client.post("/api/v1/chatbot/save-summary", json={}, headers=auth_headers(owner))
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid input"
    assert {issue["field"] for issue in body["issues"]} == {"sessionId", "summary"}


def test_save_summary_requires_auth(client, chat_session):
    response = client.post("/api/v1/chatbot/save-summary", json={"sessionId": chat_session.id, "summary": "x"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_save_summary_success(client, owner, chat_session, auth_headers):
    response = client.post(
        "/api/v1/chatbot/save-summary",
        json={"sessionId": chat_session.id, "summary": "test summary"},
        headers=auth_headers(owner),
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}

    with database_service.session() as session:
        assert session.get(ChatSession, chat_session.id).summary == "test summary"


def test_save_summary_unknown_session(client, owner, auth_headers):
    response = client.post(
        "/api/v1/chatbot/save-summary",
        json={"sessionId": "missing", "summary": "test summary"},
        headers=auth_headers(owner),
    )
    assert response.status_code == 404
    assert response.json() == {"error": "Session not found"}


def test_save_summary_on_someone_elses_session(client, chat_session, make_user, auth_headers):
    response = client.post(
        "/api/v1/chatbot/save-summary",
        json={"sessionId": chat_session.id, "summary": "test summary"},
        headers=auth_headers(make_user()),
    )
    assert response.status_code == 403


# ==================================================
# Accounts
# ==================================================
def test_register_login_and_profile(client):
    response = client.post(
        "/api/v1/auth/register",
        json={"email": "Ben@Example.com", "password": "Str0ng!Pass", "full_name": "Ben"},
    )
    assert response.status_code == 200
    assert response.json()["email"] == "ben@example.com"
    assert response.json()["role"] == "user"

    duplicate = client.post("/api/v1/auth/register", json={"email": "ben@example.com", "password": "Str0ng!Pass"})
    assert duplicate.status_code == 400
    assert duplicate.json() == {"error": "Email already registered"}

    login = client.post("/api/v1/auth/login", data={"username": "ben@example.com", "password": "Str0ng!Pass"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["full_name"] == "Ben"


def test_register_rejects_weak_password(client):
    response = client.post("/api/v1/auth/register", json={"email": "weak@example.com", "password": "alllowercase"})
    assert response.status_code == 400
    assert "uppercase" in response.json()["error"]


def test_login_with_wrong_password(client, make_user):
    make_user(email="carla@example.com", password="Str0ng!Pass")
    response = client.post("/api/v1/auth/login", data={"username": "carla@example.com", "password": "nope"})
    assert response.status_code == 401
    assert response.json() == {"error": "Incorrect email or password"}


def test_search_users_is_for_staff(client, make_user, auth_headers):
    make_user(email="dora@example.com", full_name="Dora Jones")
    make_user(email="eli@example.com", full_name="Eli Smith")
    therapist = make_user(role="therapist")

    response = client.get("/api/v1/auth/users/search", params={"query": "dora"}, headers=auth_headers(therapist))
    assert response.status_code == 200
    assert [u["email"] for u in response.json()["users"]] == ["dora@example.com"]

    forbidden = client.get("/api/v1/auth/users/search", headers=auth_headers(make_user()))
    assert forbidden.status_code == 403


def test_session_crud(client, owner, auth_headers):
    headers = auth_headers(owner)
    first = client.post("/api/v1/auth/session", json={"title": "First", "goal": "Sleep"}, headers=headers).json()
    client.post("/api/v1/auth/session", json={"title": "Second"}, headers=headers)

    listed = client.get("/api/v1/auth/sessions", headers=headers).json()
    assert [s["title"] for s in listed] == ["First", "Second"]

    renamed = client.patch(f"/api/v1/auth/session/{first['session_id']}/title", json={"title": "Renamed"}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Renamed"


def test_shared_therapist_cannot_rename(client, owner, make_user, persist, auth_headers):
    therapist = make_user(role="therapist")
    session = persist(ChatSession(user_id=owner.id, title="Shared", shared_with=[therapist.id]))

    response = client.patch(
        f"/api/v1/auth/session/{session.id}/title", json={"title": "Mine now"}, headers=auth_headers(therapist)
    )
    assert response.status_code == 403
    assert response.json() == {"error": "Cannot modify other sessions"}


# ==================================================
# Assistant
# ==================================================
def test_chat_replies_as_assistant(client, owner, auth_headers, llm_replies):
    llm_replies[:] = ["Let's take a deep breath together."]
    response = client.post(
        "/api/v1/chatbot/chat",
        json={"messages": [{"role": "user", "content": "I feel tense"}], "goal": "Reduce stress"},
        headers=auth_headers(owner),
    )
    assert response.status_code == 200
    assert response.json() == {"message": {"role": "assistant", "content": "Let's take a deep breath together."}}
    assert "Reduce stress" in llm_replies.prompts[0][0].content


def test_chat_rejects_script_content(client, owner, auth_headers, llm_replies):
    response = client.post(
        "/api/v1/chatbot/chat",
        json={"messages": [{"role": "user", "content": "<script>alert(1)</script>"}], "goal": "x"},
        headers=auth_headers(owner),
    )
    assert response.status_code == 400


def test_summarize_title(client, owner, auth_headers, llm_replies):
    llm_replies[:] = ["Working through exam nerves"]
    response = client.post(
        "/api/v1/chatbot/summarize-title",
        json={"messages": [{"role": "user", "content": "Exams are next week"}]},
        headers=auth_headers(owner),
    )
    assert response.status_code == 200
    assert response.json() == {"title": "Working through exam nerves"}


def test_summarize_stored_session(client, owner, chat_session, persist, auth_headers, llm_replies):
    persist(Message(session_id=chat_session.id, role="user", content="I studied all night"))
    llm_replies[:] = ["The client is anxious about exams."]

    response = client.post(f"/api/v1/chatbot/sessions/{chat_session.id}/summarize", headers=auth_headers(owner))
    assert response.status_code == 200
    assert response.json() == {"summary": "The client is anxious about exams."}
    with database_service.session() as session:
        assert session.get(ChatSession, chat_session.id).summary == "The client is anxious about exams."


def test_first_message_for_new_session(client, owner, persist, auth_headers, llm_replies):
    earlier = persist(ChatSession(user_id=owner.id, title="Earlier"))
    persist(Message(session_id=earlier.id, role="user", content="Last time I slept badly"))
    current = persist(ChatSession(user_id=owner.id, title="Now", goal="Sleep better"))
    llm_replies[:] = ["Welcome back! How did you sleep this week?"]

    response = client.post(
        "/api/v1/chatbot/generate-first-message", json={"sessionId": current.id}, headers=auth_headers(owner)
    )
    assert response.status_code == 200
    assert response.json() == {"message": "Welcome back! How did you sleep this week?"}

    prompt = llm_replies.prompts[0]
    assert "Session number: 2" in prompt[1].content
    assert prompt[-1].content == "Last time I slept badly"


def test_first_message_when_session_started(client, owner, chat_session, persist, auth_headers, llm_replies):
    persist(Message(session_id=chat_session.id, role="assistant", content="Hello"))
    response = client.post(
        "/api/v1/chatbot/generate-first-message", json={"sessionId": chat_session.id}, headers=auth_headers(owner)
    )
    assert response.json() == {"message": SESSION_ALREADY_STARTED}
    assert llm_replies.prompts == []


def test_messages_roundtrip_with_client_id(client, owner, chat_session, auth_headers):
    headers = auth_headers(owner)
    message_id = str(uuid.uuid4())
    url = f"/api/v1/chatbot/sessions/{chat_session.id}/messages"

    created = client.post(url, json={"id": message_id, "role": "user", "content": "Hi"}, headers=headers)
    assert created.status_code == 200
    assert created.json()["id"] == message_id

    repeated = client.post(url, json={"id": message_id, "role": "user", "content": "Hi"}, headers=headers)
    assert repeated.json()["id"] == message_id

    listed = client.get(url, headers=headers).json()
    assert [m["id"] for m in listed] == [message_id]


def test_mark_reviewed_requires_staff(client, owner, chat_session, make_user, auth_headers):
    denied = client.post(f"/api/v1/chatbot/sessions/{chat_session.id}/reviewed", headers=auth_headers(owner))
    assert denied.status_code == 403

    admin = make_user(role="admin")
    response = client.post(f"/api/v1/chatbot/sessions/{chat_session.id}/reviewed", headers=auth_headers(admin))
    assert response.json() == {"success": True, "reviewed": True}


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/api/v1/health").json()["status"] == "healthy"
