"""Owner-scoped conversation and message queries."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Conversation, Message
from .errors import ConversationNotFoundError, ProfileNotProvisionedError

logger = logging.getLogger(__name__)


def _normalize_title(title: str | None) -> str:
    clean = (title or "").strip()
    if not clean:
        return settings.DEFAULT_CONVERSATION_TITLE
    return clean[: settings.CONVERSATION_TITLE_MAX_LENGTH]


def list_conversations(session: Session, user_id: uuid.UUID) -> List[Conversation]:
    """Return the user's conversations, most recently active first."""

    stmt = (
        select(Conversation)
        .where(Conversation.user_id == user_id)
        .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
    )
    return list(session.execute(stmt).scalars().all())


def create_conversation(session: Session, user_id: uuid.UUID, title: str | None = None) -> Conversation:
    """Insert a conversation for ``user_id``.

    Raises :class:`ProfileNotProvisionedError` when no profile row exists for
    the owner yet; the caller is expected to provision it and retry.
    """

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        user_id=user_id,
        title=_normalize_title(title),
        created_at=now,
        updated_at=now,
    )
    session.add(conversation)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise ProfileNotProvisionedError(f"No profile for user {user_id}") from exc
    return conversation


def get_conversation(session: Session, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
    """Return the conversation if ``user_id`` owns it, else raise not found."""

    stmt = select(Conversation).where(
        Conversation.id == conversation_id,
        Conversation.user_id == user_id,
    )
    conversation = session.execute(stmt).scalar_one_or_none()
    if conversation is None:
        raise ConversationNotFoundError(str(conversation_id))
    return conversation


def delete_conversation(session: Session, user_id: uuid.UUID, conversation_id: uuid.UUID) -> None:
    conversation = get_conversation(session, user_id, conversation_id)
    session.delete(conversation)
    session.flush()
    logger.info("Deleted conversation %s for user %s", conversation_id, user_id)


def touch_conversation(session: Session, conversation_id: uuid.UUID) -> None:
    """Mark the conversation as active now."""

    stmt = (
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session="fetch")
    )
    session.execute(stmt)


def list_messages(
    session: Session,
    user_id: uuid.UUID,
    conversation_id: uuid.UUID,
    *,
    limit: int | None = None,
) -> List[Message]:
    """Return the conversation's messages in insertion order.

    With ``limit`` only the most recent messages are returned, still oldest
    first.
    """

    get_conversation(session, user_id, conversation_id)

    stmt = select(Message).where(
        Message.conversation_id == conversation_id,
        Message.user_id == user_id,
    )
    if limit:
        stmt = stmt.order_by(Message.created_at.desc()).limit(limit)
        return list(reversed(session.execute(stmt).scalars().all()))
    stmt = stmt.order_by(Message.created_at.asc())
    return list(session.execute(stmt).scalars().all())
