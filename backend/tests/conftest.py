from __future__ import annotations

import base64
import json
import sys
import uuid
from collections.abc import Iterator
from pathlib import Path

import itsdangerous
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.api import routes_admin, routes_auth, routes_chat
from backend.app.auth import provider as provider_module
from backend.app.auth.provider import AuthProviderError, ProviderGrant, ProviderUser
from backend.app.core import db as db_module
from backend.app.core.config import settings
from backend.app.main import create_app
from backend.app.models import Base, User


class FakeAuthProvider:
    """In-memory stand-in for the auth provider's REST API."""

    def __init__(self) -> None:
        self.tokens: dict[str, ProviderUser] = {}
        self.passwords: dict[str, tuple[str, ProviderUser]] = {}
        self.unreachable = False
        self.anonymous_sign_ins = 0

    def _check(self) -> None:
        if self.unreachable:
            raise AuthProviderError("Auth provider unreachable: connection refused")

    def issue_guest(self) -> tuple[str, ProviderUser]:
        user = ProviderUser(id=uuid.uuid4(), email=None, name=None, is_anonymous=True)
        token = f"guest-{user.id}"
        self.tokens[token] = user
        return token, user

    async def sign_up(self, email: str, password: str, name: str | None = None) -> ProviderUser:
        self._check()
        if email in self.passwords:
            raise AuthProviderError("User already registered", status_code=422)
        user = ProviderUser(id=uuid.uuid4(), email=email, name=name, is_anonymous=False)
        self.passwords[email] = (password, user)
        return user

    async def sign_in_with_password(self, email: str, password: str) -> ProviderGrant:
        self._check()
        stored = self.passwords.get(email)
        if stored is None or stored[0] != password:
            raise AuthProviderError("Invalid login credentials", status_code=400)
        token = f"user-{stored[1].id}"
        self.tokens[token] = stored[1]
        return ProviderGrant(access_token=token, user=stored[1])

    async def sign_in_anonymously(self) -> ProviderGrant:
        self._check()
        self.anonymous_sign_ins += 1
        token, user = self.issue_guest()
        return ProviderGrant(access_token=token, user=user)

    async def get_user(self, access_token: str) -> ProviderUser:
        self._check()
        user = self.tokens.get(access_token)
        if user is None:
            raise AuthProviderError("invalid JWT", status_code=401)
        return user

    async def update_user(
        self,
        access_token: str,
        *,
        email: str | None = None,
        password: str | None = None,
        name: str | None = None,
    ) -> ProviderUser:
        current = await self.get_user(access_token)
        upgraded = ProviderUser(id=current.id, email=email, name=name, is_anonymous=False)
        self.tokens[access_token] = upgraded
        if email and password:
            self.passwords[email] = (password, upgraded)
        return upgraded


@pytest.fixture()
def fake_provider(monkeypatch: pytest.MonkeyPatch) -> FakeAuthProvider:
    provider = FakeAuthProvider()
    monkeypatch.setattr(provider_module, "get_auth_provider", lambda: provider)
    return provider


@pytest.fixture()
def engine() -> Iterator:
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db_module.enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _session_ctx(factory: sessionmaker):
    def _get_session() -> Iterator[Session]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _get_session


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch, session_factory: sessionmaker, fake_provider: FakeAuthProvider) -> TestClient:
    session_ctx = _session_ctx(session_factory)

    monkeypatch.setattr(db_module, "SessionLocal", session_factory)

    app = create_app()
    app.dependency_overrides[db_module.get_session] = session_ctx
    app.dependency_overrides[routes_admin.get_session] = session_ctx
    app.dependency_overrides[routes_auth.get_session] = session_ctx
    app.dependency_overrides[routes_chat.get_session] = session_ctx
    return TestClient(app)


def _signed_session_cookie(data: dict[str, str]) -> str:
    signer = itsdangerous.TimestampSigner(settings.SESSION_SECRET)
    payload = base64.b64encode(json.dumps(data).encode("utf-8"))
    return signer.sign(payload).decode("utf-8")


@pytest.fixture()
def make_user(session_factory: sessionmaker):
    def _make_user(email: str | None = None, *, is_anonymous: bool = False) -> uuid.UUID:
        user_id = uuid.uuid4()
        with session_factory() as session:
            session.add(User(id=user_id, email=email, is_anonymous=is_anonymous))
            session.commit()
        return user_id

    return _make_user


@pytest.fixture()
def auth_session(make_user) -> dict[str, str]:
    user_id = make_user("user@example.com")
    csrf_token = "test-csrf-token"
    cookie = _signed_session_cookie(
        {"user_id": str(user_id), "email": "user@example.com", "csrf_token": csrf_token}
    )
    return {"cookie": cookie, "user_id": str(user_id), "csrf_token": csrf_token}


@pytest.fixture()
def authed_client(app: TestClient, auth_session: dict[str, str]) -> TestClient:
    app.cookies.set(settings.SESSION_COOKIE_NAME, auth_session["cookie"])
    app.headers["X-CSRF-Token"] = auth_session["csrf_token"]
    return app


@pytest.fixture()
def sign_session():
    return _signed_session_cookie
