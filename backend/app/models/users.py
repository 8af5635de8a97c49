"""User model definition."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from . import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Profile row for an identity issued by the auth provider, OIDC or a guest session."""

    __tablename__ = "users"

    # Assigned by the identity source, never generated here.
    id = Column(UUID(as_uuid=True), primary_key=True)
    email = Column(String(255), nullable=True, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    is_anonymous = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    conversations = relationship(
        "Conversation",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"User(id={self.id!s}, email={self.email!r}, anonymous={self.is_anonymous!r})"
