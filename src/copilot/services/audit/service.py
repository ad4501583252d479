from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.copilot.security import get_current_subject

logger = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """One line of the audit trail.

    Ids, stages and counts only: chat text and lesson content never appear
    here.
    """

    timestamp: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    owner_id: Optional[str] = None
    subject: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class AuditService:
    """Writes audit events as single-line JSON on the ``audit`` logger."""

    def log_event(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        subject: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            owner_id=owner_id,
            subject=subject if subject is not None else get_current_subject(),
            extra=extra,
        )
        record = asdict(event)
        try:
            line = json.dumps(record)
        except TypeError:
            record["extra"] = None
            line = json.dumps(record)
        logger.info(line)
        return event


audit_service = AuditService()
