"""Chat endpoints: conversations, messages and the send pipeline."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.identity import Identity
from ..chat import conversations as store
from ..chat import pipeline
from ..chat.errors import (
    CompletionServiceError,
    ConversationNotFoundError,
    EmptyMessageError,
    ProfileNotProvisionedError,
    ProfileProvisioningError,
)
from ..chat.profiles import ensure_profile
from ..core.config import settings
from ..core.db import get_session

logger = logging.getLogger(__name__)

router = APIRouter()

AI_SERVICE_FAILED = {
    "code": "ai_service_failed",
    "message": "Your message was saved but the assistant didn't respond.",
}


class ConversationCreateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=1000)


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    title: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    user_id: uuid.UUID
    role: str
    content: str
    created_at: datetime


class SendMessageRequest(BaseModel):
    conversation_id: uuid.UUID
    content: str = Field(..., min_length=1)


class SendMessageResponse(BaseModel):
    assistant_message: MessageResponse


class ProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str | None
    display_name: str | None
    is_anonymous: bool


def _require_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return identity


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")


def _internal_error(exc: Exception) -> HTTPException:
    logger.error("Persistence failure: %s", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


@router.post("/profile", response_model=ProfileResponse, summary="Ensure a profile exists")
async def ensure_user_profile(request: Request, session: Session = Depends(get_session)) -> ProfileResponse:
    identity = _require_identity(request)
    try:
        user = ensure_profile(session, identity)
    except ProfileProvisioningError as exc:
        raise _internal_error(exc) from exc
    return ProfileResponse.model_validate(user)


@router.get(
    "/conversations",
    response_model=List[ConversationResponse],
    summary="List the caller's conversations",
)
async def list_conversations(
    request: Request, session: Session = Depends(get_session)
) -> List[ConversationResponse]:
    """Most recently active first. Guests get an empty list unless guest history is enabled."""

    identity = _require_identity(request)
    if identity.is_anonymous and not settings.GUEST_HISTORY_ENABLED:
        return []
    rows = store.list_conversations(session, identity.id)
    return [ConversationResponse.model_validate(row) for row in rows]


@router.post(
    "/conversations",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a conversation",
)
async def create_conversation(
    payload: ConversationCreateRequest,
    request: Request,
    session: Session = Depends(get_session),
) -> ConversationResponse:
    identity = _require_identity(request)
    try:
        conversation = store.create_conversation(session, identity.id, payload.title)
    except ProfileNotProvisionedError:
        logger.info("Provisioning profile for %s before creating a conversation", identity.id)
        try:
            ensure_profile(session, identity)
            conversation = store.create_conversation(session, identity.id, payload.title)
        except (ProfileProvisioningError, ProfileNotProvisionedError) as exc:
            raise _internal_error(exc) from exc
    return ConversationResponse.model_validate(conversation)


@router.delete("/conversations/{conversation_id}", summary="Delete a conversation")
async def delete_conversation(
    conversation_id: uuid.UUID,
    request: Request,
    session: Session = Depends(get_session),
) -> dict[str, bool]:
    identity = _require_identity(request)
    try:
        store.delete_conversation(session, identity.id, conversation_id)
    except ConversationNotFoundError as exc:
        raise _not_found() from exc
    return {"success": True}


@router.get("/messages", response_model=List[MessageResponse], summary="List a conversation's messages")
async def list_messages(
    request: Request,
    conversation_id: uuid.UUID | None = Query(default=None),
    session: Session = Depends(get_session),
) -> List[MessageResponse]:
    identity = _require_identity(request)
    if conversation_id is None:
        return []
    try:
        rows = store.list_messages(session, identity.id, conversation_id)
    except ConversationNotFoundError as exc:
        raise _not_found() from exc
    return [MessageResponse.model_validate(row) for row in rows]


@router.post("/messages", response_model=SendMessageResponse, summary="Send a message and get the reply")
async def send_message(
    payload: SendMessageRequest,
    request: Request,
    session: Session = Depends(get_session),
) -> SendMessageResponse:
    """Persist the user's turn, ask the completion service and persist its reply.

    A completion failure answers 502 with ``ai_service_failed``; the user's
    message is already saved at that point.
    """

    identity = _require_identity(request)
    try:
        assistant = await pipeline.send_message(
            session, identity.id, payload.conversation_id, payload.content
        )
    except EmptyMessageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConversationNotFoundError as exc:
        raise _not_found() from exc
    except CompletionServiceError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=AI_SERVICE_FAILED) from exc
    except SQLAlchemyError as exc:
        logger.exception("Send pipeline failed for conversation %s", payload.conversation_id)
        raise _internal_error(exc) from exc
    return SendMessageResponse(assistant_message=MessageResponse.model_validate(assistant))
