"""Application configuration powered by Pydantic settings."""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are an enthusiastic and helpful AI assistant who loves to help people! "
    "Your goal is to be concise and get straight to the point. "
    "Keep your answers to a few sentences unless the user asks for more detail. "
    "Always format code snippets, lists and other special text using Markdown. "
    'If you are unsure about an answer, say "Sorry, I\'m not sure how to help with that."'
)


class Settings(BaseSettings):
    """Global application settings loaded from environment variables."""

    PROJECT_NAME: str = Field(default="Parley Chat")
    VERSION: str = Field(default="0.1.0")
    LOG_LEVEL: str = Field(default="INFO")

    DATABASE_URL: str = Field(default="postgresql+psycopg://postgres:postgres@db:5432/postgres")

    OIDC_CLIENT_ID: str = Field(default="client-id")
    OIDC_CLIENT_SECRET: str = Field(default="client-secret")
    OIDC_ISSUER: str = Field(default="https://example.com/oidc")
    OIDC_REDIRECT_URI: str = Field(default="http://localhost:8000/auth/callback")

    FRONTEND_URL: str = Field(default="http://localhost:3000")

    SESSION_SECRET: str = Field(default="change-me")
    SESSION_COOKIE_NAME: str = Field(default="parley_session")
    SESSION_COOKIE_SECURE: bool = Field(default=False)

    LOCAL_LOGIN_ENABLED: bool = Field(default=True)
    LOCAL_LOGIN_EMAIL: str = Field(default="dev@example.com")
    LOCAL_LOGIN_PASSWORD: str = Field(default="devdevdev")

    AUTH_PROVIDER_URL: str = Field(default="http://localhost:54321")
    AUTH_PROVIDER_ANON_KEY: str = Field(default="anon-key")
    AUTH_PROVIDER_TIMEOUT: float = Field(default=10.0)

    COMPLETION_PROVIDER: Literal["ollama", "gemini"] = Field(default="ollama")
    COMPLETION_TIMEOUT: float = Field(default=120.0)
    OLLAMA_HOST: str = Field(default="http://host.docker.internal:11434")
    OLLAMA_FALLBACK_HOST: str | None = Field(default=None)
    OLLAMA_MODEL: str = Field(default="llama3.1")
    GEMINI_API_BASE: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    GEMINI_API_KEY: str = Field(default="")
    GEMINI_MODEL: str = Field(default="gemini-1.5-flash-latest")

    CHAT_SYSTEM_INSTRUCTION: str | None = Field(default=DEFAULT_SYSTEM_INSTRUCTION)
    # 0 sends the full conversation history to the completion service.
    CHAT_HISTORY_LIMIT: int = Field(default=0)
    CHAT_SERIALIZE_SENDS: bool = Field(default=True)
    GUEST_HISTORY_ENABLED: bool = Field(default=False)
    DEFAULT_CONVERSATION_TITLE: str = Field(default="New Chat")
    CONVERSATION_TITLE_MAX_LENGTH: int = Field(default=255)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> Settings:
    """Return cached settings instance to avoid repeated parsing."""

    if overrides:
        return Settings(**overrides)
    return Settings()


settings = get_settings()
