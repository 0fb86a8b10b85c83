import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.core.config import settings
from teamhub.db.session import get_db
from teamhub.services.audit import AuditSink, LoggingAuditSink
from teamhub.services.authorization import AuthorizationService
from teamhub.services.delivery import InvitationSender, LoggingInvitationSender, WebhookInvitationSender
from teamhub.services.invitations import InvitationService


async def get_business_id(
    x_business_id: Optional[str] = Header(default=None, alias="X-Business-Id"),
) -> uuid.UUID:
    """
    Resolve the target business from the X-Business-Id header.
    Membership is checked by the services, not here.
    """
    if not x_business_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Business-Id header is required",
        )

    try:
        return uuid.UUID(x_business_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="X-Business-Id must be a valid UUID",
        )


def get_audit_sink() -> AuditSink:
    return LoggingAuditSink()


def get_invitation_sender() -> InvitationSender:
    if settings.INVITATION_WEBHOOK_URL:
        return WebhookInvitationSender(
            settings.INVITATION_WEBHOOK_URL,
            timeout=settings.INVITATION_WEBHOOK_TIMEOUT_SECONDS,
        )
    return LoggingInvitationSender()


def get_authorization_service(
    db: AsyncSession = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink),
) -> AuthorizationService:
    return AuthorizationService(db, audit=audit)


def get_invitation_service(
    db: AsyncSession = Depends(get_db),
    authz: AuthorizationService = Depends(get_authorization_service),
    sender: InvitationSender = Depends(get_invitation_sender),
    audit: AuditSink = Depends(get_audit_sink),
) -> InvitationService:
    return InvitationService(db, authz=authz, sender=sender, audit=audit)
