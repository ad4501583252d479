from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from src.copilot.security import get_api_key, get_current_subject

ANONYMOUS_OWNER = "anonymous"
MAX_OWNER_ID_LENGTH = 255


async def owner_dependency(
    x_owner_id: Optional[str] = Header(None, alias="X-Owner-ID"),
    _api_key: str = Depends(get_api_key),
) -> str:
    """Resolve the opaque owner id for the request.

    Precedence: the X-Owner-ID header, then the authenticated API-key subject,
    then "anonymous". The value is passed explicitly into every service call.
    """

    if x_owner_id is not None:
        owner_id = x_owner_id.strip()
        if not owner_id or len(owner_id) > MAX_OWNER_ID_LENGTH:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-Owner-ID must be a non-empty string of at most 255 characters",
            )
        return owner_id
    return get_current_subject() or ANONYMOUS_OWNER
