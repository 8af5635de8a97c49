"""HTTP client for the chat service API."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

AI_SERVICE_FAILED = "ai_service_failed"


class APIError(Exception):
    """Non-success response from the chat service."""

    def __init__(self, status_code: int, detail: Any) -> None:
        message = detail.get("message") if isinstance(detail, dict) else detail
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.detail = detail


class AssistantUnavailableError(APIError):
    """The user's message was stored but the assistant did not reply."""


class ChatAPI:
    """Synchronous client that keeps the session cookie and CSRF token between calls."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 130.0,
        transport: Optional[httpx.BaseTransport] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self.csrf_token: str | None = None
        self.guest_token: str | None = None
        self.user: Dict[str, Any] | None = None

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ChatAPI":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _headers(self, method: str) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.guest_token:
            headers["Authorization"] = f"Bearer {self.guest_token}"
        if method not in {"GET", "HEAD", "OPTIONS"} and self.csrf_token:
            headers["X-CSRF-Token"] = self.csrf_token
        return headers

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._client.request(method, path, headers=self._headers(method), **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("detail") if isinstance(body, dict) else response.text
            if isinstance(detail, dict) and detail.get("code") == AI_SERVICE_FAILED:
                raise AssistantUnavailableError(response.status_code, detail)
            raise APIError(response.status_code, detail)
        return response.json()

    def _remember_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.user = payload.get("user")
        self.csrf_token = payload.get("csrf_token") or self.csrf_token
        if payload.get("access_token"):
            self.guest_token = payload["access_token"]
        return payload

    def bootstrap(self) -> Dict[str, Any]:
        """Resume the current session or start a guest one."""

        return self._remember_session(self._request("POST", "/auth/guest"))

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        self.guest_token = None
        return self._remember_session(
            self._request("POST", "/auth/signin", json={"email": email, "password": password})
        )

    def me(self) -> Dict[str, Any]:
        return self._remember_session(self._request("GET", "/auth/me"))

    def list_conversations(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/chat/conversations")

    def create_conversation(self, title: str | None = None) -> Dict[str, Any]:
        return self._request("POST", "/api/chat/conversations", json={"title": title})

    def delete_conversation(self, conversation_id: str) -> None:
        self._request("DELETE", f"/api/chat/conversations/{conversation_id}")

    def list_messages(self, conversation_id: str | None) -> List[Dict[str, Any]]:
        if not conversation_id:
            return []
        return self._request("GET", "/api/chat/messages", params={"conversation_id": conversation_id})

    def send_message(self, conversation_id: str, content: str) -> Dict[str, Any]:
        """Return the assistant's reply."""

        payload = self._request(
            "POST",
            "/api/chat/messages",
            json={"conversation_id": conversation_id, "content": content},
        )
        return payload["assistant_message"]
