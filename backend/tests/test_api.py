from __future__ import annotations

import uuid
from typing import Any

import pytest
from sqlalchemy import select

from backend.app.chat import completion
from backend.app.chat.errors import CompletionServiceError
from backend.app.core.config import settings
from backend.app.models import Conversation, Message, User


def _stub_completion(monkeypatch: pytest.MonkeyPatch, reply: str = "Try Kyoto.") -> list[Any]:
    calls: list[Any] = []

    async def fake_complete(turns, *, system_instruction=None, **kwargs):
        calls.append((list(turns), system_instruction))
        return reply

    monkeypatch.setattr(completion, "complete", fake_complete)
    return calls


def _failing_completion(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_complete(turns, *, system_instruction=None, **kwargs):
        raise CompletionServiceError("upstream timed out")

    monkeypatch.setattr(completion, "complete", fake_complete)


def test_api_requires_identity(app: Any) -> None:
    for method, path in [
        ("GET", "/api/chat/conversations"),
        ("POST", "/api/chat/conversations"),
        ("GET", "/api/chat/messages"),
        ("POST", "/api/chat/messages"),
        ("DELETE", f"/api/chat/conversations/{uuid.uuid4()}"),
    ]:
        response = app.request(method, path)
        assert response.status_code == 401
        assert response.json() == {"detail": "Not authenticated"}


def test_local_login_success(app: Any, session_factory) -> None:
    response = app.post(
        "/auth/local-login",
        json={"email": settings.LOCAL_LOGIN_EMAIL, "password": settings.LOCAL_LOGIN_PASSWORD},
    )
    assert response.status_code == 200
    assert response.json()["detail"] == "Logged in"

    session_cookie = response.cookies.get(settings.SESSION_COOKIE_NAME)
    assert session_cookie

    app.cookies.set(settings.SESSION_COOKIE_NAME, session_cookie)
    me_response = app.get("/auth/me")
    assert me_response.status_code == 200
    me_payload = me_response.json()
    assert me_payload["user"]["email"] == settings.LOCAL_LOGIN_EMAIL
    assert me_payload["user"]["is_anonymous"] is False

    with session_factory() as session:
        assert session.query(User).count() == 1


def test_local_login_rejects_bad_credentials(app: Any) -> None:
    response = app.post(
        "/auth/local-login",
        json={"email": settings.LOCAL_LOGIN_EMAIL, "password": "wrong"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


def test_local_login_only_accepts_configured_credentials(app: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "LOCAL_LOGIN_EMAIL", "other@example.com")
    monkeypatch.setattr(settings, "LOCAL_LOGIN_PASSWORD", "supersecret")

    stale = app.post(
        "/auth/local-login",
        json={"email": "dev@example.com", "password": "devdevdev"},
    )
    assert stale.status_code == 401
    assert settings.SESSION_COOKIE_NAME not in stale.cookies

    configured = app.post(
        "/auth/local-login",
        json={"email": "other@example.com", "password": "supersecret"},
    )
    assert configured.status_code == 200


def test_local_login_disabled(app: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "LOCAL_LOGIN_ENABLED", False)

    response = app.post(
        "/auth/local-login",
        json={"email": settings.LOCAL_LOGIN_EMAIL, "password": settings.LOCAL_LOGIN_PASSWORD},
    )
    assert response.status_code == 404


def test_signup_then_signin(app: Any, fake_provider, session_factory) -> None:
    mismatch = app.post(
        "/auth/signup",
        json={"email": "a@example.com", "password": "pw1", "confirm_password": "pw2", "name": "A"},
    )
    assert mismatch.status_code == 400
    assert mismatch.json()["detail"] == "Passwords do not match."

    signup = app.post(
        "/auth/signup",
        json={"email": "a@example.com", "password": "pw1", "confirm_password": "pw1", "name": "Ada"},
    )
    assert signup.status_code == 200
    assert signup.json()["user"]["display_name"] == "Ada"

    duplicate = app.post(
        "/auth/signup",
        json={"email": "a@example.com", "password": "pw1", "confirm_password": "pw1"},
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "User already registered"

    app.post("/auth/logout")
    app.cookies.clear()

    bad = app.post("/auth/signin", json={"email": "a@example.com", "password": "nope"})
    assert bad.status_code == 401

    good = app.post("/auth/signin", json={"email": "a@example.com", "password": "pw1"})
    assert good.status_code == 200
    assert good.json()["user"]["email"] == "a@example.com"

    with session_factory() as session:
        assert session.query(User).count() == 1


def test_guest_bootstrap_issues_and_reuses_identity(app: Any, fake_provider, session_factory) -> None:
    first = app.post("/auth/guest")
    assert first.status_code == 200
    body = first.json()
    assert body["user"]["is_anonymous"] is True
    assert body["access_token"]
    assert fake_provider.anonymous_sign_ins == 1

    second = app.post("/auth/guest")
    assert second.status_code == 200
    assert second.json()["user"]["id"] == body["user"]["id"]
    assert second.json()["access_token"] is None
    assert fake_provider.anonymous_sign_ins == 1

    with session_factory() as session:
        user = session.get(User, uuid.UUID(body["user"]["id"]))
        assert user is not None and user.is_anonymous


def test_guest_bootstrap_when_provider_unreachable(app: Any, fake_provider) -> None:
    fake_provider.unreachable = True
    response = app.post("/auth/guest")
    assert response.status_code == 401
    assert "retry" in response.json()["detail"].lower()


def test_guest_bearer_token_reaches_api_without_csrf(app: Any, fake_provider, monkeypatch: pytest.MonkeyPatch) -> None:
    token, user = fake_provider.issue_guest()
    headers = {"Authorization": f"Bearer {token}"}

    created = app.post("/api/chat/conversations", json={"title": "Guest chat"}, headers=headers)
    assert created.status_code == 201
    assert created.json()["user_id"] == str(user.id)

    listing = app.get("/api/chat/conversations", headers=headers)
    assert listing.status_code == 200
    assert listing.json() == []

    monkeypatch.setattr(settings, "GUEST_HISTORY_ENABLED", True)
    listing = app.get("/api/chat/conversations", headers=headers)
    assert [row["title"] for row in listing.json()] == ["Guest chat"]


def test_invalid_guest_token_is_unauthorized(app: Any, fake_provider) -> None:
    response = app.get("/api/chat/conversations", headers={"Authorization": "Bearer bogus"})
    assert response.status_code == 401


def test_guest_upgrade_keeps_id_and_history(app: Any, fake_provider, session_factory, monkeypatch) -> None:
    _stub_completion(monkeypatch)
    bootstrap = app.post("/auth/guest").json()
    app.headers["X-CSRF-Token"] = bootstrap["csrf_token"]
    conversation = app.post("/api/chat/conversations", json={"title": "Before signup"}).json()

    upgraded = app.post(
        "/auth/upgrade",
        json={"email": "g@example.com", "password": "pw", "confirm_password": "pw", "name": "Gee"},
    )
    assert upgraded.status_code == 200
    payload = upgraded.json()
    assert payload["user"]["id"] == bootstrap["user"]["id"]
    assert payload["user"]["is_anonymous"] is False
    assert payload["user"]["email"] == "g@example.com"

    app.headers["X-CSRF-Token"] = payload["csrf_token"]
    listing = app.get("/api/chat/conversations").json()
    assert [row["id"] for row in listing] == [conversation["id"]]

    with session_factory() as session:
        assert session.query(User).count() == 1


def test_csrf_required_for_cookie_sessions(app: Any, auth_session: dict[str, str]) -> None:
    app.cookies.set(settings.SESSION_COOKIE_NAME, auth_session["cookie"])

    missing = app.post("/api/chat/conversations", json={})
    assert missing.status_code == 403

    ok = app.post(
        "/api/chat/conversations",
        json={},
        headers={"X-CSRF-Token": auth_session["csrf_token"]},
    )
    assert ok.status_code == 201
    assert ok.json()["title"] == "New Chat"


def test_create_then_list_orders_by_activity(authed_client: Any) -> None:
    first = authed_client.post("/api/chat/conversations", json={"title": "First"}).json()
    second = authed_client.post("/api/chat/conversations", json={"title": "Second"}).json()

    listing = authed_client.get("/api/chat/conversations").json()
    assert [row["id"] for row in listing] == [second["id"], first["id"]]


def test_create_conversation_provisions_missing_profile(app: Any, session_factory, sign_session) -> None:
    user_id = uuid.uuid4()
    cookie = sign_session(
        {"user_id": str(user_id), "email": "fresh@example.com", "csrf_token": "t"}
    )
    app.cookies.set(settings.SESSION_COOKIE_NAME, cookie)
    response = app.post("/api/chat/conversations", json={"title": "Hi"}, headers={"X-CSRF-Token": "t"})
    assert response.status_code == 201

    with session_factory() as session:
        user = session.get(User, user_id)
        assert user is not None
        assert user.email == "fresh@example.com"


def test_send_message_scenario(authed_client: Any, session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _stub_completion(monkeypatch)

    conversation = authed_client.post("/api/chat/conversations", json={"title": "Trip planning"}).json()
    assert conversation["title"] == "Trip planning"

    response = authed_client.post(
        "/api/chat/messages",
        json={"conversation_id": conversation["id"], "content": "Where should I go in Japan?"},
    )
    assert response.status_code == 200
    assistant = response.json()["assistant_message"]
    assert assistant["role"] == "assistant"
    assert assistant["content"] == "Try Kyoto."

    turns, system_instruction = calls[0]
    assert [(turn.role, turn.text) for turn in turns] == [("user", "Where should I go in Japan?")]
    assert system_instruction == settings.CHAT_SYSTEM_INSTRUCTION

    messages = authed_client.get(
        "/api/chat/messages", params={"conversation_id": conversation["id"]}
    ).json()
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "Where should I go in Japan?"),
        ("assistant", "Try Kyoto."),
    ]

    listing = authed_client.get("/api/chat/conversations").json()
    assert [row["id"] for row in listing] == [conversation["id"]]


def test_send_message_ai_failure_keeps_user_message(
    authed_client: Any, session_factory, monkeypatch: pytest.MonkeyPatch
) -> None:
    _failing_completion(monkeypatch)
    conversation = authed_client.post("/api/chat/conversations", json={}).json()

    for _ in range(2):
        response = authed_client.post(
            "/api/chat/messages",
            json={"conversation_id": conversation["id"], "content": "hello"},
        )
        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "ai_service_failed"

    with session_factory() as session:
        rows = session.execute(
            select(Message).where(Message.conversation_id == uuid.UUID(conversation["id"]))
        ).scalars().all()
        assert [(row.role, row.content) for row in rows] == [("user", "hello"), ("user", "hello")]

    assert authed_client.get("/admin/health").status_code == 200


def test_send_message_validation(authed_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    _stub_completion(monkeypatch)
    conversation = authed_client.post("/api/chat/conversations", json={}).json()

    empty = authed_client.post(
        "/api/chat/messages", json={"conversation_id": conversation["id"], "content": ""}
    )
    assert empty.status_code == 422

    blank = authed_client.post(
        "/api/chat/messages", json={"conversation_id": conversation["id"], "content": "   "}
    )
    assert blank.status_code == 400

    malformed = authed_client.post(
        "/api/chat/messages", json={"conversation_id": "not-a-uuid", "content": "hi"}
    )
    assert malformed.status_code == 422


def test_messages_empty_without_conversation(authed_client: Any) -> None:
    response = authed_client.get("/api/chat/messages")
    assert response.status_code == 200
    assert response.json() == []


def test_cross_user_access_is_not_found(
    authed_client: Any, make_user, session_factory, monkeypatch: pytest.MonkeyPatch
) -> None:
    _stub_completion(monkeypatch)
    other_id = make_user("other@example.com")
    with session_factory() as session:
        foreign = Conversation(user_id=other_id, title="Private")
        session.add(foreign)
        session.flush()
        session.add(Message(conversation_id=foreign.id, user_id=other_id, role="user", content="secret"))
        session.commit()
        foreign_id = str(foreign.id)

    assert authed_client.delete(f"/api/chat/conversations/{foreign_id}").status_code == 404
    assert authed_client.get("/api/chat/messages", params={"conversation_id": foreign_id}).status_code == 404
    send = authed_client.post("/api/chat/messages", json={"conversation_id": foreign_id, "content": "hi"})
    assert send.status_code == 404
    assert authed_client.delete(f"/api/chat/conversations/{uuid.uuid4()}").status_code == 404

    with session_factory() as session:
        assert session.get(Conversation, uuid.UUID(foreign_id)) is not None
        assert session.query(Message).count() == 1


def test_delete_conversation_cascades(authed_client: Any, session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    _stub_completion(monkeypatch)
    conversation = authed_client.post("/api/chat/conversations", json={}).json()
    authed_client.post(
        "/api/chat/messages", json={"conversation_id": conversation["id"], "content": "hello"}
    )

    response = authed_client.delete(f"/api/chat/conversations/{conversation['id']}")
    assert response.status_code == 200
    assert response.json() == {"success": True}

    with session_factory() as session:
        assert session.query(Conversation).count() == 0
        assert session.query(Message).count() == 0

    again = authed_client.delete(f"/api/chat/conversations/{conversation['id']}")
    assert again.status_code == 404


def test_profile_endpoint_is_idempotent(authed_client: Any, auth_session: dict[str, str], session_factory) -> None:
    for _ in range(3):
        response = authed_client.post("/api/chat/profile")
        assert response.status_code == 200
        assert response.json()["id"] == auth_session["user_id"]

    with session_factory() as session:
        assert session.query(User).count() == 1


def test_admin_metrics(app: Any) -> None:
    app.get("/admin/health")
    response = app.get("/admin/metrics")
    assert response.status_code == 200
    assert b"parley_requests_total" in response.content
