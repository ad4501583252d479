from __future__ import annotations

from fastapi import HTTPException, status

from src.copilot.errors import (
    AIUnavailableError,
    ConflictError,
    CopilotError,
    GenerationInProgressError,
    InvalidRequestError,
    SessionBusyError,
    SessionExpiredError,
    SessionNotFoundError,
    StorageError,
)


def to_http_error(exc: CopilotError) -> HTTPException:
    """Translate a domain error into the HTTPException returned to clients."""

    if isinstance(exc, InvalidRequestError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, SessionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if isinstance(exc, SessionExpiredError):
        return HTTPException(status_code=status.HTTP_410_GONE, detail="Session has expired")
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Session was modified concurrently; reload and retry",
                "expected_revision": exc.expected_revision,
                "actual_revision": exc.actual_revision,
            },
        )
    if isinstance(exc, (SessionBusyError, GenerationInProgressError)):
        return HTTPException(status_code=status.HTTP_423_LOCKED, detail=str(exc))
    if isinstance(exc, AIUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(exc), "session_id": exc.session_id, "stage": exc.stage},
        )
    if isinstance(exc, StorageError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Storage failure", "correlation_id": exc.correlation_id},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
