"""Authentication endpoints: credentials, guest sessions, OIDC and local login."""
from __future__ import annotations

import logging
import secrets
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_oidc_client, subject_user_id
from ..auth import identity as identity_module
from ..auth import provider as provider_module
from ..auth.identity import GuestIdentity, Identity, RegisteredIdentity
from ..auth.provider import AuthProviderError
from ..chat.errors import ProfileProvisioningError
from ..chat.profiles import ensure_profile
from ..core.config import settings
from ..core.db import get_session
from ..models import User

router = APIRouter()

logger = logging.getLogger(__name__)


class LocalLoginRequest(BaseModel):
    """Request payload for the development local login flow."""

    email: str
    password: str


class SignInRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class SignUpRequest(SignInRequest):
    confirm_password: str
    name: str | None = None


class UpgradeRequest(SignUpRequest):
    """Credentials attached to the current guest account."""


def _csrf_token(request: Request) -> str:
    token = request.session.get(identity_module.SESSION_CSRF_TOKEN)
    if not token:
        token = secrets.token_urlsafe(32)
        request.session[identity_module.SESSION_CSRF_TOKEN] = token
    return token


def _profile_payload(user: User) -> dict[str, Any]:
    return {
        "id": str(user.id),
        "email": user.email,
        "display_name": user.display_name,
        "is_anonymous": user.is_anonymous,
    }


def _provision(session: Session, identity: Identity) -> User:
    try:
        return ensure_profile(session, identity)
    except ProfileProvisioningError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to ensure user profile.",
        ) from exc


def _establish_session(request: Request, identity: RegisteredIdentity) -> str:
    identity_module.store_credentials_session(request.session, identity)
    token = secrets.token_urlsafe(32)
    request.session[identity_module.SESSION_CSRF_TOKEN] = token
    return token


def _session_response(user: User, csrf_token: str, **extra: Any) -> dict[str, Any]:
    return {"user": _profile_payload(user), "csrf_token": csrf_token, **extra}


@router.post("/signup", summary="Create a credentials account")
async def signup(
    payload: SignUpRequest,
    request: Request,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    """Register with the auth provider and open a credentials session."""

    if payload.password != payload.confirm_password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Passwords do not match.")

    provider = provider_module.get_auth_provider()
    try:
        provider_user = await provider.sign_up(payload.email.strip(), payload.password, payload.name)
    except AuthProviderError as exc:
        logger.warning("Sign up rejected for %s: %s", payload.email, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    identity = RegisteredIdentity(
        id=provider_user.id,
        email=provider_user.email or payload.email.strip(),
        name=payload.name or provider_user.name,
    )
    user = _provision(session, identity)
    return _session_response(user, _establish_session(request, identity))


@router.post("/signin", summary="Sign in with email and password")
async def signin(
    payload: SignInRequest,
    request: Request,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    provider = provider_module.get_auth_provider()
    try:
        grant = await provider.sign_in_with_password(payload.email.strip(), payload.password)
    except AuthProviderError as exc:
        logger.info("Sign in rejected for %s: %s", payload.email, exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password") from exc

    identity = RegisteredIdentity(
        id=grant.user.id,
        email=grant.user.email,
        name=grant.user.name or grant.user.email,
    )
    user = _provision(session, identity)
    return _session_response(user, _establish_session(request, identity))


@router.post("/guest", summary="Resume or start a session, issuing a guest if needed")
async def guest(request: Request, session: Session = Depends(get_session)) -> dict[str, Any]:
    """Resolve the caller's identity, creating an anonymous guest when there is none.

    A new guest token is kept in the session and also returned so clients
    may present it as a bearer token instead.
    """

    bearer = identity_module.bearer_token(request.headers.get("Authorization"))
    resolution = await identity_module.resolve_identity(request.session, bearer, create_guest=True)
    if resolution.identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Guest sign-in is unavailable right now. Please retry.",
        )

    if resolution.guest_token:
        request.session[identity_module.SESSION_GUEST_TOKEN] = resolution.guest_token

    user = _provision(session, resolution.identity)
    return _session_response(user, _csrf_token(request), access_token=resolution.guest_token)


@router.post("/upgrade", summary="Convert the current guest into a registered account")
async def upgrade(
    payload: UpgradeRequest,
    request: Request,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    """Attach credentials to the guest account in place, keeping its id and history."""

    if payload.password != payload.confirm_password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Passwords do not match.")

    bearer = identity_module.bearer_token(request.headers.get("Authorization"))
    token = bearer or request.session.get(identity_module.SESSION_GUEST_TOKEN)
    resolution = await identity_module.resolve_identity(request.session, bearer)
    if not token or not isinstance(resolution.identity, GuestIdentity):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No guest session to upgrade")

    provider = provider_module.get_auth_provider()
    try:
        provider_user = await provider.update_user(
            token, email=payload.email.strip(), password=payload.password, name=payload.name
        )
    except AuthProviderError as exc:
        logger.warning("Guest upgrade rejected for %s: %s", resolution.identity.id, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    identity = RegisteredIdentity(
        id=provider_user.id,
        email=provider_user.email or payload.email.strip(),
        name=payload.name or provider_user.name,
    )
    user = _provision(session, identity)
    logger.info("Guest %s converted to registered account", identity.id)
    return _session_response(user, _establish_session(request, identity))


@router.get("/me", summary="Current user profile")
async def read_current_user(
    request: Request, session: Session = Depends(get_session)
) -> dict[str, Any]:
    """Return the resolved identity's profile, provisioning it on first use."""

    bearer = identity_module.bearer_token(request.headers.get("Authorization"))
    resolution = await identity_module.resolve_identity(request.session, bearer)
    if resolution.identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = _provision(session, resolution.identity)
    return _session_response(user, _csrf_token(request))


@router.post("/logout", summary="Terminate the current session")
async def logout(request: Request) -> JSONResponse:
    """Clear the session cookie for the authenticated user."""

    request.session.clear()
    response = JSONResponse({"detail": "Logged out"})
    response.delete_cookie(
        settings.SESSION_COOKIE_NAME,
        path="/",
        secure=settings.SESSION_COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )
    return response


@router.post("/local-login", summary="Authenticate with a development account")
async def local_login(
    payload: LocalLoginRequest,
    request: Request,
    session: Session = Depends(get_session),
) -> JSONResponse:
    """Allow development logins using static credentials."""

    if not settings.LOCAL_LOGIN_ENABLED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    provided_email = payload.email.strip().lower()
    provided_password = payload.password.strip()

    expected_email = settings.LOCAL_LOGIN_EMAIL.strip().lower()
    expected_password = settings.LOCAL_LOGIN_PASSWORD.strip()
    if provided_email != expected_email or provided_password != expected_password:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    identity = RegisteredIdentity(
        id=subject_user_id(provided_email, issuer="local"),
        email=provided_email,
        name=payload.email.strip(),
    )
    _provision(session, identity)
    csrf_token = _establish_session(request, identity)

    return JSONResponse({"detail": "Logged in", "csrf_token": csrf_token})


@router.get("/login", summary="Initiate OIDC login")
async def oidc_login(request: Request) -> Any:
    """Redirect the user to the OIDC provider for authentication."""

    oauth = get_oidc_client()
    return await oauth.oidc.authorize_redirect(request, settings.OIDC_REDIRECT_URI)


@router.get("/callback", summary="OIDC redirect URI")
async def oidc_callback(request: Request, session: Session = Depends(get_session)) -> RedirectResponse:
    """Process the authorization code callback and establish a session."""

    oauth = get_oidc_client()

    try:
        token = await oauth.oidc.authorize_access_token(request)
        claims = await _extract_claims(oauth, request, token)
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("OIDC callback failed: %s", exc)
        return RedirectResponse(
            url=f"{settings.FRONTEND_URL.rstrip('/')}/login?error=oidc",
            status_code=status.HTTP_303_SEE_OTHER,
        )

    sub = claims.get("sub")
    if not sub:
        logger.error("OIDC callback missing subject claim")
        return RedirectResponse(
            url=f"{settings.FRONTEND_URL.rstrip('/')}/login?error=profile",
            status_code=status.HTTP_303_SEE_OTHER,
        )

    email = claims.get("email")
    display_name = (
        claims.get("name")
        or claims.get("preferred_username")
        or claims.get("given_name")
        or email
    )
    identity = RegisteredIdentity(id=subject_user_id(sub), email=email, name=display_name)
    _provision(session, identity)
    _establish_session(request, identity)

    return RedirectResponse(
        url=f"{settings.FRONTEND_URL.rstrip('/')}/callback",
        status_code=status.HTTP_303_SEE_OTHER,
    )


async def _extract_claims(oauth: Any, request: Request, token: dict[str, Any]) -> dict[str, Any]:
    """Resolve user claims from the ID token or userinfo endpoint."""

    userinfo = await oauth.oidc.userinfo(token=token)
    if userinfo:
        return dict(userinfo)
    return dict(oauth.oidc.parse_id_token(request, token))
