"""Idempotent provisioning of user profile rows."""
from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.identity import Identity
from ..models import User
from .errors import ProfileProvisioningError

logger = logging.getLogger(__name__)


def _load(session: Session, user_id: uuid.UUID) -> User | None:
    stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    return session.execute(stmt).scalar_one_or_none()


def _pending_changes(user: User, identity: Identity) -> dict[str, object]:
    changes: dict[str, object] = {}
    if identity.email and identity.email != user.email:
        changes["email"] = identity.email
    if identity.name and identity.name != user.display_name:
        changes["display_name"] = identity.name
    # Only a registered identity flips the flag; a guest never downgrades a row.
    if not identity.is_anonymous and user.is_anonymous:
        changes["is_anonymous"] = False
    return changes


def _reconcile(session: Session, user: User, identity: Identity) -> User:
    changes = _pending_changes(user, identity)
    if not changes:
        return user

    for field, value in changes.items():
        setattr(user, field, value)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        if "email" not in changes:
            raise
        logger.warning(
            "Email %s already belongs to another profile; keeping previous email for %s",
            changes["email"],
            identity.id,
        )
        changes.pop("email")
        user = _load(session, identity.id)
        if user is None:
            raise ProfileProvisioningError(f"Profile {identity.id} vanished during update")
        for field, value in changes.items():
            setattr(user, field, value)
        session.commit()
    return user


def _insert(session: Session, identity: Identity, *, email: str | None) -> User | None:
    """Insert a profile; return ``None`` when a uniqueness conflict was hit."""

    user = User(
        id=identity.id,
        email=email,
        display_name=identity.name,
        is_anonymous=identity.is_anonymous,
    )
    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return None
    return user


def ensure_profile(session: Session, identity: Identity) -> User:
    """Guarantee exactly one profile row exists for ``identity`` and return it.

    Safe to call concurrently for the same identity: a losing insert rolls
    back and reads the winner's row instead of surfacing the conflict. If the
    conflict came from the email of a different row, the profile is created
    without an email.
    """

    try:
        existing = _load(session, identity.id)
        if existing is not None:
            return _reconcile(session, existing, identity)

        logger.info("Creating profile for %s (anonymous=%s)", identity.id, identity.is_anonymous)
        user = _insert(session, identity, email=identity.email)
        if user is not None:
            return user

        existing = _load(session, identity.id)
        if existing is not None:
            logger.warning("Concurrent profile creation detected for %s; using existing row", identity.id)
            return _reconcile(session, existing, identity)

        if identity.email:
            logger.warning(
                "Email %s is held by another profile; creating %s without email",
                identity.email,
                identity.id,
            )
            user = _insert(session, identity, email=None)
            if user is not None:
                return user
            existing = _load(session, identity.id)
            if existing is not None:
                return existing
    except ProfileProvisioningError:
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Failed to ensure profile for %s", identity.id)
        raise ProfileProvisioningError(f"Failed to ensure profile for {identity.id}") from exc

    raise ProfileProvisioningError(f"Failed to ensure profile for {identity.id}")
