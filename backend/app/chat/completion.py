"""HTTP client helpers for the chat completion service."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from ..core.config import settings
from ..core.metrics import record_completion_result
from ..models import MessageRole
from .errors import CompletionServiceError

logger = logging.getLogger(__name__)

# Role names each provider uses for the model's own turns.
_MODEL_ROLES = {"ollama": "assistant", "gemini": "model"}


@dataclass(slots=True, frozen=True)
class ChatTurn:
    """One persisted turn handed to the completion service."""

    role: str
    text: str


def turns_from_messages(messages: Iterable[Any]) -> List[ChatTurn]:
    """Build ordered turns from message rows, skipping blank content."""

    turns: List[ChatTurn] = []
    for message in messages:
        text = (message.content or "").strip()
        if not text:
            continue
        turns.append(ChatTurn(role=message.role, text=text))
    return turns


def _provider_role(role: str, provider: str) -> str:
    if role == MessageRole.ASSISTANT.value:
        return _MODEL_ROLES[provider]
    return "user"


def ollama_payload(turns: Sequence[ChatTurn], system_instruction: str | None, model: str) -> Dict[str, Any]:
    messages: List[Dict[str, str]] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for turn in turns:
        messages.append({"role": _provider_role(turn.role, "ollama"), "content": turn.text})
    return {"model": model, "messages": messages, "stream": False}


def gemini_payload(turns: Sequence[ChatTurn], system_instruction: str | None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "contents": [
            {"role": _provider_role(turn.role, "gemini"), "parts": [{"text": turn.text}]}
            for turn in turns
        ]
    }
    if system_instruction:
        payload["system_instruction"] = {"parts": [{"text": system_instruction}]}
    return payload


def _ollama_text(data: Any) -> str:
    message = data.get("message") if isinstance(data, dict) else None
    if not isinstance(message, dict):
        raise ValueError(f"Unexpected Ollama response: {data!r:.200}")
    return str(message.get("content") or "")


def _gemini_text(data: Any) -> str:
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected Gemini response: {data!r:.200}")
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    first = candidates[0] if isinstance(candidates, list) else None
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not all(isinstance(part, dict) for part in parts):
        raise ValueError(f"Unexpected Gemini response: {data!r:.200}")
    return "".join(str(part.get("text") or "") for part in parts)


async def _post_json(
    host: str,
    path: str,
    payload: Dict[str, Any],
    *,
    params: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    async with httpx.AsyncClient(
        base_url=host, timeout=settings.COMPLETION_TIMEOUT, transport=transport
    ) as client:
        response = await client.post(path, json=payload, params=params)
        response.raise_for_status()
        return response.json()


async def _complete_ollama(
    turns: Sequence[ChatTurn],
    system_instruction: str | None,
    transport: Optional[httpx.AsyncBaseTransport],
) -> str:
    payload = ollama_payload(turns, system_instruction, settings.OLLAMA_MODEL)
    try:
        data = await _post_json(settings.OLLAMA_HOST, "/api/chat", payload, transport=transport)
    except httpx.TransportError as primary_error:
        fallback_host = settings.OLLAMA_FALLBACK_HOST
        if not fallback_host or fallback_host == settings.OLLAMA_HOST:
            raise
        logger.warning(
            "Primary Ollama host %s unreachable (%s); retrying with fallback %s",
            settings.OLLAMA_HOST,
            primary_error,
            fallback_host,
        )
        data = await _post_json(fallback_host, "/api/chat", payload, transport=transport)
    return _ollama_text(data)


async def _complete_gemini(
    turns: Sequence[ChatTurn],
    system_instruction: str | None,
    transport: Optional[httpx.AsyncBaseTransport],
) -> str:
    payload = gemini_payload(turns, system_instruction)
    data = await _post_json(
        settings.GEMINI_API_BASE,
        f"/models/{settings.GEMINI_MODEL}:generateContent",
        payload,
        params={"key": settings.GEMINI_API_KEY},
        transport=transport,
    )
    return _gemini_text(data)


async def complete(
    turns: Sequence[ChatTurn],
    *,
    system_instruction: str | None = None,
    provider: str | None = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Send the ordered turns to the completion service and return its reply text.

    Raises :class:`CompletionServiceError` on transport errors, timeouts,
    error statuses, malformed bodies and empty replies.
    """

    provider = provider or settings.COMPLETION_PROVIDER
    if provider not in _MODEL_ROLES:
        raise CompletionServiceError(f"Unknown completion provider {provider!r}")
    if not turns:
        raise CompletionServiceError("No message to send")

    try:
        if provider == "gemini":
            text = await _complete_gemini(turns, system_instruction, transport)
        else:
            text = await _complete_ollama(turns, system_instruction, transport)
    except (httpx.HTTPError, ValueError) as exc:
        record_completion_result(provider, "error")
        raise CompletionServiceError(f"{provider} completion failed: {exc}") from exc

    text = text.strip()
    if not text:
        record_completion_result(provider, "error")
        raise CompletionServiceError(f"{provider} returned an empty reply")

    record_completion_result(provider, "ok")
    return text
