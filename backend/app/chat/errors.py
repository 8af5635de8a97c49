"""Domain errors raised by the chat services and mapped to HTTP by the routes."""
from __future__ import annotations


class ChatError(Exception):
    """Base class for chat domain failures."""


class EmptyMessageError(ChatError, ValueError):
    """Message content was empty or whitespace only."""


class ConversationNotFoundError(ChatError, LookupError):
    """Conversation does not exist or belongs to someone else."""


class ProfileNotProvisionedError(ChatError):
    """A write referenced a user id with no profile row yet."""


class ProfileProvisioningError(ChatError):
    """The profile could not be created or read back."""


class CompletionServiceError(ChatError):
    """The completion service failed, timed out or returned nothing."""
