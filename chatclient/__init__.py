"""Python client for the chat service with optimistic message caching."""

from .api import APIError, AssistantUnavailableError, ChatAPI
from .cache import MessageCache, PendingSend
from .session import ChatSession

__all__ = [
    "APIError",
    "AssistantUnavailableError",
    "ChatAPI",
    "ChatSession",
    "MessageCache",
    "PendingSend",
]
