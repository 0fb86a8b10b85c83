# teamhub/services/audit.py
"""
Audit collaborator.

The core hands every successful mutation to an AuditSink after the commit.
Recording is best-effort: a failing sink is logged and never undoes or fails
the mutation it describes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from teamhub.core.timeutils import utcnow

logger = logging.getLogger(__name__)


class AuditAction:
    INVITE_MEMBER = "invite_member"
    RESEND_INVITATION = "resend_invitation"
    REVOKE_INVITATION = "revoke_invitation"
    ACCEPT_INVITATION = "accept_invitation"
    UPDATE_MEMBER = "update_member"
    UPDATE_ROLE = "update_role"
    REMOVE_MEMBER = "remove_member"
    TRANSFER_OWNERSHIP = "transfer_ownership"
    BOOTSTRAP_OWNER = "bootstrap_owner"


@dataclass(frozen=True)
class AuditEvent:
    actor_id: uuid.UUID
    business_id: uuid.UUID
    action: str
    target_user_id: Optional[uuid.UUID] = None
    target_email: Optional[str] = None
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("actor_id", "business_id", "target_user_id"):
            if data[key] is not None:
                data[key] = str(data[key])
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the `teamhub.audit` logger."""

    def __init__(self, logger_name: str = "teamhub.audit"):
        self._logger = logging.getLogger(logger_name)

    async def record(self, event: AuditEvent) -> None:
        self._logger.info("audit %s", event.action, extra={"audit": event.as_dict()})


async def emit_audit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Fire-and-forget delivery to the sink; failures are logged, not raised."""
    if sink is None:
        return
    try:
        await sink.record(event)
    except Exception:
        logger.exception(
            "Audit sink failed for action=%s business=%s actor=%s",
            event.action,
            event.business_id,
            event.actor_id,
        )
