"""Authentication helpers and clients."""

from .identity import GuestIdentity, Identity, RegisteredIdentity, Resolution, resolve_identity
from .oidc import get_oidc_client, subject_user_id
from .provider import AuthProviderClient, AuthProviderError, get_auth_provider

__all__ = [
    "AuthProviderClient",
    "AuthProviderError",
    "GuestIdentity",
    "Identity",
    "RegisteredIdentity",
    "Resolution",
    "get_auth_provider",
    "get_oidc_client",
    "resolve_identity",
    "subject_user_id",
]
