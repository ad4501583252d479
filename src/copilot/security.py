from __future__ import annotations

import hashlib
import hmac
from contextvars import ContextVar
from typing import Optional, Tuple

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.copilot.config import settings

API_KEY_HEADER = "X-API-Key"

_api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)

# Hashed identity of the authenticated caller for the in-flight request. The
# audit log records it and ownership falls back to it when no owner header
# is sent.
_current_subject: ContextVar[Optional[str]] = ContextVar("current_subject", default=None)


def get_current_subject() -> Optional[str]:
    return _current_subject.get()


def configured_api_keys() -> Tuple[str, ...]:
    """API_KEYS split on commas, blanks dropped."""

    raw = settings.api_keys or ""
    return tuple(key.strip() for key in raw.split(",") if key.strip())


def subject_for_key(api_key: str) -> str:
    """Stable, non-reversible caller id derived from an API key."""

    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    return f"api-key:{digest[:16]}"


def _is_known_key(candidate: str, keys: Tuple[str, ...]) -> bool:
    return any(hmac.compare_digest(candidate.encode("utf-8"), key.encode("utf-8")) for key in keys)


async def get_api_key(api_key: Optional[str] = Security(_api_key_header)) -> str:
    """Authenticate the request when ENABLE_API_AUTH is on.

    With auth off every request passes and no subject is recorded. With auth
    on, the X-API-Key header must carry one of API_KEYS; an empty key list is
    treated as a misconfiguration and rejects everything.
    """

    if not settings.enable_api_auth:
        _current_subject.set(None)
        return ""

    keys = configured_api_keys()
    if not keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API authentication is enabled but API_KEYS is empty.",
        )
    if not api_key or not _is_known_key(api_key, keys):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"A valid {API_KEY_HEADER} header is required.",
        )

    _current_subject.set(subject_for_key(api_key))
    return api_key
