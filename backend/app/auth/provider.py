"""HTTP client for the external auth provider (GoTrue-compatible REST API).

The provider owns credentials and anonymous guest accounts. This module only
translates its responses into :class:`ProviderUser` / :class:`ProviderGrant`
values; sessions are persisted by the routes.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)


class AuthProviderError(Exception):
    """Raised when the auth provider is unreachable or rejects a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True, frozen=True)
class ProviderUser:
    """User record as asserted by the auth provider."""

    id: uuid.UUID
    email: str | None
    name: str | None
    is_anonymous: bool


@dataclass(slots=True, frozen=True)
class ProviderGrant:
    """Access token issued together with the user it belongs to."""

    access_token: str
    user: ProviderUser


def _parse_user(payload: Dict[str, Any]) -> ProviderUser:
    try:
        user_id = uuid.UUID(str(payload["id"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthProviderError("Auth provider returned a user without a valid id") from exc

    metadata = payload.get("user_metadata") or {}
    return ProviderUser(
        id=user_id,
        email=payload.get("email") or None,
        name=metadata.get("full_name") or metadata.get("name") or None,
        is_anonymous=bool(payload.get("is_anonymous", False)),
    )


def _parse_grant(payload: Dict[str, Any]) -> ProviderGrant:
    token = payload.get("access_token")
    user = payload.get("user")
    if not token or not isinstance(user, dict):
        raise AuthProviderError("Auth provider did not return a session")
    return ProviderGrant(access_token=token, user=_parse_user(user))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"Auth provider responded with {response.status_code}"
    for key in ("error_description", "msg", "message", "error"):
        value = body.get(key) if isinstance(body, dict) else None
        if value:
            return str(value)
    return f"Auth provider responded with {response.status_code}"


class AuthProviderClient:
    """Thin async wrapper around the provider's ``/auth/v1`` endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        params: Dict[str, str] | None = None,
        token: str | None = None,
    ) -> Dict[str, Any]:
        headers = {"apikey": self.api_key}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise AuthProviderError(f"Auth provider unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise AuthProviderError(_error_message(response), status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise AuthProviderError("Auth provider returned malformed JSON") from exc

    async def sign_up(self, email: str, password: str, name: str | None = None) -> ProviderUser:
        """Register a credentials account."""

        body: Dict[str, Any] = {"email": email, "password": password}
        if name:
            body["data"] = {"full_name": name}
        payload = await self._request("POST", "/auth/v1/signup", json=body)
        # Depending on email confirmation settings the user is either nested or top level.
        user = payload.get("user") if isinstance(payload.get("user"), dict) else payload
        return _parse_user(user)

    async def sign_in_with_password(self, email: str, password: str) -> ProviderGrant:
        payload = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return _parse_grant(payload)

    async def sign_in_anonymously(self) -> ProviderGrant:
        """Create a new anonymous guest account and return its session."""

        payload = await self._request("POST", "/auth/v1/signup", json={})
        return _parse_grant(payload)

    async def get_user(self, access_token: str) -> ProviderUser:
        """Validate an access token and return the user it asserts."""

        payload = await self._request("GET", "/auth/v1/user", token=access_token)
        return _parse_user(payload)

    async def update_user(
        self,
        access_token: str,
        *,
        email: str | None = None,
        password: str | None = None,
        name: str | None = None,
    ) -> ProviderUser:
        """Attach credentials to the account behind ``access_token`` (guest conversion)."""

        body: Dict[str, Any] = {}
        if email:
            body["email"] = email
        if password:
            body["password"] = password
        if name:
            body["data"] = {"full_name": name}
        payload = await self._request("PUT", "/auth/v1/user", json=body, token=access_token)
        return _parse_user(payload)


@lru_cache(maxsize=1)
def get_auth_provider() -> AuthProviderClient:
    """Return the configured auth provider client."""

    return AuthProviderClient(
        settings.AUTH_PROVIDER_URL,
        settings.AUTH_PROVIDER_ANON_KEY,
        timeout=settings.AUTH_PROVIDER_TIMEOUT,
    )
