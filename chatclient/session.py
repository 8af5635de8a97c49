"""Compose-and-send flow with optimistic cache updates."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .api import ChatAPI
from .cache import MessageCache

logger = logging.getLogger(__name__)

TITLE_PREVIEW_LENGTH = 30


class ChatSession:
    """Client-side state of one chat window: draft text, active thread and message cache."""

    def __init__(self, api: ChatAPI, cache: Optional[MessageCache] = None) -> None:
        self.api = api
        self.cache = cache or MessageCache()
        self.draft = ""
        self.active_conversation_id: str | None = None

    @property
    def user_id(self) -> str | None:
        return (self.api.user or {}).get("id")

    def messages(self, conversation_id: str | None = None) -> List[Dict[str, Any]]:
        """Cached messages for a conversation, fetched from the server on a miss."""

        conversation_id = conversation_id or self.active_conversation_id
        if not conversation_id:
            return []
        cached = self.cache.get(conversation_id)
        if cached is not None:
            return cached
        rows = self.api.list_messages(conversation_id)
        self.cache.set(conversation_id, rows)
        return rows

    def new_chat(self) -> None:
        self.active_conversation_id = None
        self.draft = ""

    def select(self, conversation_id: str) -> None:
        self.active_conversation_id = conversation_id

    def submit(self) -> Optional[Dict[str, Any]]:
        """Send the draft and return the assistant message.

        Returns ``None`` for a blank draft. On failure the draft text and the
        cached messages are restored and the error is re-raised.
        """

        content = self.draft
        if not content.strip():
            return None
        self.draft = ""

        conversation_id = self.active_conversation_id
        if conversation_id is None:
            try:
                conversation = self.api.create_conversation(title=content[:TITLE_PREVIEW_LENGTH])
            except Exception:
                logger.exception("Failed to create conversation")
                self.draft = content
                raise
            conversation_id = str(conversation["id"])
            self.active_conversation_id = conversation_id

        return self.send(conversation_id, content)

    def send(self, conversation_id: str, content: str) -> Dict[str, Any]:
        pending = self.cache.apply_optimistic(conversation_id, content, self.user_id)
        try:
            reply = self.api.send_message(conversation_id, content)
        except Exception:
            self.cache.revert(pending)
            self.draft = content
            raise
        self.cache.commit(pending)
        return reply
