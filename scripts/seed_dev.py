"""Seed the development database with the local-login user and a sample conversation."""
from __future__ import annotations

import sys
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.app.auth import RegisteredIdentity, subject_user_id
from backend.app.chat import conversations as store
from backend.app.chat.profiles import ensure_profile
from backend.app.core.config import settings
from backend.app.core.db import get_session
from backend.app.models import Conversation


@contextmanager
def _session_scope():
    generator = get_session()
    session = next(generator)
    try:
        yield session
    except Exception as exc:
        generator.throw(exc)
        raise
    else:
        next(generator, None)


def _get_or_create_conversation(session, user_id, title: str) -> Conversation:
    for conversation in store.list_conversations(session, user_id):
        if conversation.title == title:
            return conversation
    return store.create_conversation(session, user_id, title)


def main(context: AbstractContextManager | None = None) -> None:
    """Entry point for seeding data."""

    email = settings.LOCAL_LOGIN_EMAIL.strip().lower()
    identity = RegisteredIdentity(
        id=subject_user_id(email, issuer="local"),
        email=email,
        name="Dev User",
    )

    session_ctx = context or _session_scope()
    with session_ctx as session:
        user = ensure_profile(session, identity)
        conversation = _get_or_create_conversation(session, user.id, "Welcome")

        print("Seeded development data:")
        print(f"  User ID: {user.id}")
        print(f"  Conversation ID: {conversation.id}")


if __name__ == "__main__":
    main()
