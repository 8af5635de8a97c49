"""Reconcile the credentials session and guest sessions into one identity."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping, MutableMapping, Union

from . import provider as provider_module
from .provider import AuthProviderError, ProviderUser

logger = logging.getLogger(__name__)

SESSION_USER_ID = "user_id"
SESSION_EMAIL = "email"
SESSION_DISPLAY_NAME = "display_name"
SESSION_GUEST_TOKEN = "guest_token"
SESSION_CSRF_TOKEN = "csrf_token"


@dataclass(frozen=True, slots=True)
class RegisteredIdentity:
    """Identity backed by a durable credentials session."""

    id: uuid.UUID
    email: str | None = None
    name: str | None = None

    is_anonymous: ClassVar[bool] = False


@dataclass(frozen=True, slots=True)
class GuestIdentity:
    """Identity backed by an anonymous guest session."""

    id: uuid.UUID

    email: ClassVar[str | None] = None
    name: ClassVar[str | None] = None
    is_anonymous: ClassVar[bool] = True


Identity = Union[RegisteredIdentity, GuestIdentity]


@dataclass(frozen=True, slots=True)
class Resolution:
    """Outcome of a resolution; ``guest_token`` is set only for newly issued guests."""

    identity: Identity | None
    guest_token: str | None = None


def identity_from_provider(user: ProviderUser) -> Identity:
    if user.is_anonymous:
        return GuestIdentity(id=user.id)
    return RegisteredIdentity(id=user.id, email=user.email, name=user.name)


def session_identity(session_data: Mapping[str, Any]) -> RegisteredIdentity | None:
    """Read the credentials identity stored in the signed session cookie."""

    raw_user_id = session_data.get(SESSION_USER_ID)
    if not raw_user_id:
        return None
    try:
        user_id = uuid.UUID(str(raw_user_id))
    except (TypeError, ValueError):
        logger.warning("Ignoring session with malformed user id %r", raw_user_id)
        return None
    return RegisteredIdentity(
        id=user_id,
        email=session_data.get(SESSION_EMAIL) or None,
        name=session_data.get(SESSION_DISPLAY_NAME) or None,
    )


def store_credentials_session(session_data: MutableMapping[str, Any], identity: RegisteredIdentity) -> None:
    """Replace whatever the session held with a credentials identity."""

    session_data.clear()
    session_data[SESSION_USER_ID] = str(identity.id)
    if identity.email:
        session_data[SESSION_EMAIL] = identity.email
    if identity.name:
        session_data[SESSION_DISPLAY_NAME] = identity.name


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def resolve_identity(
    session_data: Mapping[str, Any],
    bearer: str | None = None,
    *,
    create_guest: bool = False,
) -> Resolution:
    """Return the canonical identity for a request.

    Precedence is the credentials session, then an existing guest token (the
    ``Authorization`` bearer first, then the token kept in the session), then
    a freshly issued guest when ``create_guest`` is set. Provider failures
    yield no identity instead of raising so callers can treat them as
    unauthenticated.
    """

    identity = session_identity(session_data)
    if identity is not None:
        return Resolution(identity)

    client = provider_module.get_auth_provider()

    token = bearer or session_data.get(SESSION_GUEST_TOKEN)
    if token:
        try:
            user = await client.get_user(token)
        except AuthProviderError as exc:
            logger.warning("Guest session could not be verified: %s", exc)
        else:
            return Resolution(identity_from_provider(user))

    if not create_guest:
        return Resolution(None)

    try:
        grant = await client.sign_in_anonymously()
    except AuthProviderError as exc:
        logger.warning("Anonymous sign-in failed: %s", exc)
        return Resolution(None)

    logger.info("Issued guest identity %s", grant.user.id)
    return Resolution(identity_from_provider(grant.user), guest_token=grant.access_token)
