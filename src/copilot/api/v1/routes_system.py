from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends

from src.copilot.api.v1.errors import to_http_error
from src.copilot.config import settings
from src.copilot.errors import CopilotError
from src.copilot.security import get_api_key
from src.copilot.services.audit.service import audit_service
from src.copilot.services.sessions.reaper import session_reaper

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {
        "status": "ok",
        "version": "v1",
        "ai_backend": settings.ai_backend,
        "storage": "sql" if settings.use_sql_repos else "memory",
    }


@router.post("/system/reaper/run", dependencies=[Depends(get_api_key)])
def run_reaper() -> dict:
    """Run one session-reaper pass immediately and report what it did."""

    try:
        report = session_reaper.run_once()
    except CopilotError as exc:
        raise to_http_error(exc) from exc

    audit_service.log_event(action="run_reaper", resource_type="system", extra=asdict(report))
    return asdict(report)
