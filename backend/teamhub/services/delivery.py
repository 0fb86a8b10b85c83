# teamhub/services/delivery.py
"""
Invitation delivery collaborator.

Delivery happens after the invitation row is committed; a DeliveryFailed from a
sender is reported back to the caller as `email_sent=False`, never as a failed
invitation.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx

from teamhub.core.errors import DeliveryFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvitationMessage:
    email: str
    token: str
    expires_at: datetime
    business_id: uuid.UUID
    role: str
    accept_url: str
    message: Optional[str] = None
    is_resend: bool = False

    @property
    def link(self) -> str:
        sep = "&" if "?" in self.accept_url else "?"
        return f"{self.accept_url}{sep}token={self.token}&business_id={self.business_id}"


class InvitationSender(Protocol):
    async def send(self, invitation: InvitationMessage) -> None: ...


class LoggingInvitationSender:
    """Development sender: logs the invitation link instead of sending it."""

    async def send(self, invitation: InvitationMessage) -> None:
        logger.info(
            "Invitation for %s to business %s as %s (expires %s): %s",
            invitation.email,
            invitation.business_id,
            invitation.role,
            invitation.expires_at.isoformat(),
            invitation.link,
        )


class WebhookInvitationSender:
    """
    Hands invitations to an external mail/notification service over HTTP.

    The receiving service renders and sends the email; we only need a 2xx back.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    def _payload(self, invitation: InvitationMessage) -> dict[str, Any]:
        return {
            "type": "business_membership_invitation",
            "email": invitation.email,
            "token": invitation.token,
            "expires_at": invitation.expires_at.isoformat(),
            "accept_url": invitation.link,
            "business_id": str(invitation.business_id),
            "role": invitation.role,
            "message": invitation.message,
            "is_resend": invitation.is_resend,
        }

    async def send(self, invitation: InvitationMessage) -> None:
        payload = self._payload(invitation)
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Invitation webhook rejected delivery to %s: HTTP %s",
                invitation.email,
                e.response.status_code,
            )
            raise DeliveryFailed(f"Delivery service returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("Invitation webhook unreachable for %s: %s", invitation.email, e)
            raise DeliveryFailed(f"Delivery service unreachable: {e}") from e
