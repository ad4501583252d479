from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Settings:
    """Process-wide settings read once from the environment.

    Tests override individual attributes with monkeypatch.
    """

    # AI gateway selection: "demo" (default, offline) or "openai".
    ai_backend: str = os.getenv("AI_BACKEND", "demo")
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    llm_model: str = os.getenv("LLM_MODEL", "gpt-4.1-mini")

    # Bounded wait for a single gateway call, and the retry policy applied to
    # failures that happened before any response bytes were received.
    ai_timeout_seconds: float = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))
    ai_max_attempts: int = int(os.getenv("AI_MAX_ATTEMPTS", "3"))
    ai_backoff_seconds: float = float(os.getenv("AI_BACKOFF_SECONDS", "0.5"))
    # Threads available for blocking gateway calls.
    ai_workers: int = int(os.getenv("AI_WORKERS", "4"))

    # Retries for transient storage failures inside SessionStore.save.
    storage_max_attempts: int = int(os.getenv("STORAGE_MAX_ATTEMPTS", "3"))
    storage_backoff_seconds: float = float(os.getenv("STORAGE_BACKOFF_SECONDS", "0.05"))

    # Session lifecycle. Inactive sessions are soft-expired after
    # SESSION_TTL_DAYS and purged SESSION_PURGE_AFTER_DAYS after that.
    session_ttl_days: int = int(os.getenv("SESSION_TTL_DAYS", "30"))
    session_purge_after_days: int = int(os.getenv("SESSION_PURGE_AFTER_DAYS", "30"))
    reaper_enabled: bool = os.getenv("REAPER_ENABLED", "false").lower() == "true"
    reaper_interval_seconds: float = float(os.getenv("REAPER_INTERVAL_SECONDS", "3600"))
    reaper_batch_size: int = int(os.getenv("REAPER_BATCH_SIZE", "100"))

    autosave_interval_seconds: float = float(os.getenv("AUTOSAVE_INTERVAL_SECONDS", "30"))
    # Clean working copies are dropped after this much inactivity.
    autosave_idle_minutes: float = float(os.getenv("AUTOSAVE_IDLE_MINUTES", "30"))

    # Request limits at the session boundary.
    max_message_chars: int = int(os.getenv("MAX_MESSAGE_CHARS", "10000"))
    max_message_history: int = int(os.getenv("MAX_MESSAGE_HISTORY", "1000"))

    # Entity host where generated courses are materialized: "memory" (default)
    # or "rest" for a content-management backend reachable over HTTP.
    entity_host_backend: str = os.getenv("ENTITY_HOST_BACKEND", "memory")
    entity_host_url: Optional[str] = os.getenv("ENTITY_HOST_URL")
    entity_host_token: Optional[str] = os.getenv("ENTITY_HOST_TOKEN")
    entity_host_timeout_seconds: float = float(os.getenv("ENTITY_HOST_TIMEOUT_SECONDS", "10"))

    # SQL persistence; off unless USE_SQL_REPOS=true.
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    use_sql_repos: bool = os.getenv("USE_SQL_REPOS", "false").lower() == "true"

    # X-API-Key check on every /api/v1 route.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated.
    api_keys: Optional[str] = os.getenv("API_KEYS")

    # Comma-separated browser origins allowed by CORS.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
