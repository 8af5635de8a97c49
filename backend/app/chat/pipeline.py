"""Send-message pipeline: persist the user turn, ask the model, persist the reply."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
import weakref
from typing import AsyncContextManager

from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Message, MessageRole
from . import completion
from .conversations import get_conversation, list_messages, touch_conversation
from .errors import CompletionServiceError, EmptyMessageError

logger = logging.getLogger(__name__)

_conversation_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _conversation_lock(conversation_id: uuid.UUID) -> AsyncContextManager[object]:
    """Serialise sends per conversation within this process."""

    if not settings.CHAT_SERIALIZE_SENDS:
        return contextlib.nullcontext()
    lock = _conversation_locks.get(conversation_id)
    if lock is None:
        lock = asyncio.Lock()
        _conversation_locks[conversation_id] = lock
    return lock


async def send_message(
    session: Session,
    user_id: uuid.UUID,
    conversation_id: uuid.UUID,
    content: str,
) -> Message:
    """Run one exchange and return the persisted assistant message.

    The user's message is committed before the completion call. If that call
    fails it stays persisted and :class:`CompletionServiceError` propagates
    so the caller can report the missing reply.
    """

    if not content or not content.strip():
        raise EmptyMessageError("Message content must not be empty")

    conversation = get_conversation(session, user_id, conversation_id)

    async with _conversation_lock(conversation.id):
        user_message = Message(
            conversation_id=conversation.id,
            user_id=user_id,
            role=MessageRole.USER.value,
            content=content,
        )
        session.add(user_message)
        session.commit()

        history = list_messages(
            session,
            user_id,
            conversation.id,
            limit=settings.CHAT_HISTORY_LIMIT or None,
        )
        turns = completion.turns_from_messages(history)

        try:
            reply = await completion.complete(
                turns, system_instruction=settings.CHAT_SYSTEM_INSTRUCTION
            )
        except CompletionServiceError:
            logger.exception(
                "Completion failed for conversation %s; user message %s kept",
                conversation.id,
                user_message.id,
            )
            raise

        assistant_message = Message(
            conversation_id=conversation.id,
            user_id=user_id,
            role=MessageRole.ASSISTANT.value,
            content=reply,
        )
        session.add(assistant_message)
        touch_conversation(session, conversation.id)
        session.commit()

    return assistant_message
