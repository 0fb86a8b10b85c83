# teamhub/services/invitations.py
"""
Invitation lifecycle.

    (none) --create--> pending --accept--> accepted
                       pending --revoke--> revoked
                       pending --read after expires_at--> expired
                       pending/expired --resend--> pending (new expires_at, resent_count + 1)

Expiry is lazy: an invitation becomes `expired` the first time it is read after
its deadline. Accepted and revoked invitations never change again.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.auth.permissions import PERM, normalize_permissions
from teamhub.core.config import settings
from teamhub.core.errors import (
    AlreadyMember,
    DeliveryFailed,
    InsufficientRank,
    InvitationAlreadyPending,
    InvitationEmailMismatch,
    InvitationExpired,
    InvitationNotFound,
    InvitationNotPending,
)
from teamhub.core.roles import InvitationStatus, MembershipStatus, Role, normalize_role
from teamhub.core.timeutils import as_utc, normalize_email, utcnow
from teamhub.crud.membership import get_membership_by_email
from teamhub.db.scope import BusinessScope
from teamhub.models.invitation import Invitation
from teamhub.models.membership import Membership
from teamhub.models.user import User
from teamhub.services.audit import AuditAction, AuditEvent, AuditSink, emit_audit
from teamhub.services.authorization import ActorContext, AuthorizationService
from teamhub.services.delivery import InvitationMessage, InvitationSender, LoggingInvitationSender

logger = logging.getLogger(__name__)

STATUS_NONE = "none"


@dataclass(frozen=True)
class InviteResult:
    invitation: Invitation
    email_sent: bool
    delivery_error: Optional[str] = None

    @property
    def invitation_created(self) -> bool:
        return True


@dataclass(frozen=True)
class InvitationStatusResult:
    business_id: uuid.UUID
    email: str
    status: str  # none | pending | expired | accepted | revoked
    role: Optional[Role] = None
    invited_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    resent_count: int = 0


def _generate_token() -> str:
    return secrets.token_urlsafe(48)


def is_due(invitation: Invitation, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return invitation.status == InvitationStatus.PENDING and as_utc(invitation.expires_at) <= now


def expire_if_due(invitation: Invitation, now: Optional[datetime] = None) -> bool:
    """
    Apply the lazy pending -> expired transition to a row read FOR UPDATE inside
    `scope.locked()`. Returns True if it happened.
    """
    if is_due(invitation, now):
        invitation.status = InvitationStatus.EXPIRED
        return True
    return False


class InvitationService:
    def __init__(
        self,
        db: AsyncSession,
        *,
        authz: Optional[AuthorizationService] = None,
        sender: Optional[InvitationSender] = None,
        audit: Optional[AuditSink] = None,
        expiry_hours: Optional[int] = None,
        max_expiry_hours: Optional[int] = None,
        accept_url: Optional[str] = None,
    ):
        self.db = db
        self.audit = audit
        self.authz = authz or AuthorizationService(db, audit=audit)
        self.sender = sender or LoggingInvitationSender()
        self.expiry_hours = expiry_hours or settings.INVITATION_EXPIRY_HOURS
        self.max_expiry_hours = max_expiry_hours or settings.INVITATION_MAX_EXPIRY_HOURS
        self.accept_url = accept_url or settings.INVITATION_ACCEPT_URL

    # =========================================================
    # Helpers
    # =========================================================
    def _expires_at(self, expires_in_hours: Optional[int]) -> datetime:
        hours = expires_in_hours if expires_in_hours is not None else self.expiry_hours
        if not 1 <= hours <= self.max_expiry_hours:
            raise ValueError(f"expires_in_hours must be between 1 and {self.max_expiry_hours}")
        return utcnow() + timedelta(hours=hours)

    async def _deliver(self, invitation: Invitation, *, is_resend: bool) -> InviteResult:
        message = InvitationMessage(
            email=invitation.email,
            token=invitation.token,
            expires_at=as_utc(invitation.expires_at),
            business_id=invitation.business_id,
            role=invitation.role.value,
            accept_url=self.accept_url,
            message=invitation.message,
            is_resend=is_resend,
        )
        try:
            await self.sender.send(message)
        except DeliveryFailed as e:
            logger.warning("Invitation %s saved but not delivered: %s", invitation.id, e.message)
            return InviteResult(invitation=invitation, email_sent=False, delivery_error=e.message)
        except Exception:
            logger.exception("Invitation sender crashed for invitation %s", invitation.id)
            return InviteResult(invitation=invitation, email_sent=False, delivery_error="Delivery failed")
        return InviteResult(invitation=invitation, email_sent=True)

    async def _expire_overdue(self, scope: BusinessScope, invitations: List[Invitation]) -> None:
        """
        Lazy expiry for reads that hold no lock. The write re-checks status and
        deadline, so an invitation resent after our read keeps its new deadline.
        """
        now = utcnow()
        due = {inv.id for inv in invitations if is_due(inv, now)}
        if not due:
            return
        await self.db.execute(
            scope.update_invitations(
                Invitation.id.in_(due),
                Invitation.status == InvitationStatus.PENDING,
                Invitation.expires_at <= now,
            ).values(status=InvitationStatus.EXPIRED)
        )
        await self.db.commit()
        for inv in invitations:
            if inv.id in due:
                await self.db.refresh(inv)

    async def _latest_for_email(self, scope: BusinessScope, email: str, *, for_update: bool = False) -> Optional[Invitation]:
        stmt = (
            scope.invitations(Invitation.email == email)
            .order_by(Invitation.created_at.desc(), Invitation.resent_count.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    def _require_invite_rights(self, ctx: ActorContext, role: Role, extras: FrozenSet[str]) -> None:
        self.authz.require_permission(ctx, PERM.TEAM_INVITE)
        self.authz.require_can_assign(ctx, role)
        ungrantable = sorted(p for p in extras if not ctx.can(p))
        if ungrantable:
            raise InsufficientRank("You cannot grant permissions you do not hold", permissions=ungrantable)

    # =========================================================
    # create
    # =========================================================
    async def invite_member(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        email: str,
        role: Role | str,
        *,
        permissions: Optional[Iterable[str]] = None,
        message: Optional[str] = None,
        expires_in_hours: Optional[int] = None,
    ) -> InviteResult:
        email = normalize_email(email)
        if "@" not in email:
            raise ValueError("Invalid email")
        role = normalize_role(role)
        extras = normalize_permissions(permissions)
        expires_at = self._expires_at(expires_in_hours)

        self._require_invite_rights(await self.authz.actor_context(actor_id, business_id), role, extras)

        scope = BusinessScope(self.db, business_id)
        async with scope.locked():
            ctx = await self.authz.actor_context(actor_id, business_id, locked=True)
            self._require_invite_rights(ctx, role, extras)
            existing = await get_membership_by_email(scope, email)
            if existing is not None and existing.status == MembershipStatus.ACTIVE:
                raise AlreadyMember()

            pending = (
                await self.db.execute(
                    scope.invitations(
                        Invitation.email == email,
                        Invitation.status == InvitationStatus.PENDING,
                    ).with_for_update().execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            if pending is not None:
                if not expire_if_due(pending):
                    raise InvitationAlreadyPending(email)
                # free the pending slot before inserting the new row
                await self.db.flush()

            now = utcnow()
            invitation = Invitation(
                business_id=business_id,
                email=email,
                role=role,
                permissions=sorted(extras),
                message=message,
                token=_generate_token(),
                status=InvitationStatus.PENDING,
                expires_at=expires_at,
                created_by=actor_id,
                resent_count=0,
                last_sent_at=now,
                created_at=now,
            )
            self.db.add(invitation)
            await self.db.flush()

        logger.info("Invitation created: business=%s email=%s role=%s by %s", business_id, email, role.value, actor_id)
        result = await self._deliver(invitation, is_resend=False)
        await emit_audit(
            self.audit,
            AuditEvent(
                actor_id=actor_id,
                business_id=business_id,
                action=AuditAction.INVITE_MEMBER,
                target_email=email,
                after={"role": role.value, "expires_at": as_utc(invitation.expires_at).isoformat()},
            ),
        )
        return result

    # =========================================================
    # resend
    # =========================================================
    async def resend_invitation(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        email: str,
        *,
        expires_in_hours: Optional[int] = None,
    ) -> InviteResult:
        """
        Re-send the latest invitation for an email: same row, fresh deadline.

        A pending or expired invitation goes back to pending; accepted and revoked
        ones cannot be revived.
        """
        email = normalize_email(email)
        expires_at = self._expires_at(expires_in_hours)

        ctx = await self.authz.actor_context(actor_id, business_id)
        self.authz.require_permission(ctx, PERM.TEAM_INVITE)

        scope = BusinessScope(self.db, business_id)
        async with scope.locked():
            ctx = await self.authz.actor_context(actor_id, business_id, locked=True)
            self.authz.require_permission(ctx, PERM.TEAM_INVITE)
            invitation = await self._latest_for_email(scope, email, for_update=True)
            if invitation is None:
                raise InvitationNotFound("No pending invitation found for this email")
            if invitation.status not in (InvitationStatus.PENDING, InvitationStatus.EXPIRED):
                raise InvitationNotPending(invitation.status.value)

            # re-authorize against the invited role
            self.authz.require_can_assign(ctx, invitation.role)

            existing = await get_membership_by_email(scope, email)
            if existing is not None and existing.status == MembershipStatus.ACTIVE:
                raise AlreadyMember()

            before = {"status": invitation.status.value, "expires_at": as_utc(invitation.expires_at).isoformat()}
            invitation.status = InvitationStatus.PENDING
            invitation.expires_at = expires_at
            invitation.resent_count = (invitation.resent_count or 0) + 1
            invitation.last_sent_at = utcnow()
            await self.db.flush()

        logger.info(
            "Invitation resent: business=%s email=%s count=%d",
            business_id,
            email,
            invitation.resent_count,
        )
        result = await self._deliver(invitation, is_resend=True)
        await emit_audit(
            self.audit,
            AuditEvent(
                actor_id=actor_id,
                business_id=business_id,
                action=AuditAction.RESEND_INVITATION,
                target_email=email,
                before=before,
                after={"status": invitation.status.value, "expires_at": as_utc(invitation.expires_at).isoformat()},
            ),
        )
        return result

    # =========================================================
    # revoke
    # =========================================================
    async def revoke_invitation(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        invitation_id: uuid.UUID,
    ) -> Invitation:
        ctx = await self.authz.actor_context(actor_id, business_id)
        self.authz.require_permission(ctx, PERM.TEAM_INVITE)

        scope = BusinessScope(self.db, business_id)
        expired_now = False
        async with scope.locked():
            ctx = await self.authz.actor_context(actor_id, business_id, locked=True)
            self.authz.require_permission(ctx, PERM.TEAM_INVITE)
            stmt = scope.invitations(Invitation.id == invitation_id).with_for_update()
            invitation = (
                await self.db.execute(stmt.execution_options(populate_existing=True))
            ).scalar_one_or_none()
            if invitation is None:
                raise InvitationNotFound()

            if expire_if_due(invitation):
                # the expiry is persisted; the revoke itself is refused below
                expired_now = True
            elif invitation.status != InvitationStatus.PENDING:
                raise InvitationNotPending(invitation.status.value)
            else:
                self.authz.require_can_assign(ctx, invitation.role)
                invitation.status = InvitationStatus.REVOKED
                invitation.revoked_at = utcnow()
                invitation.revoked_by = actor_id
            await self.db.flush()

        if expired_now:
            raise InvitationNotPending(InvitationStatus.EXPIRED.value)

        logger.info("Invitation revoked: business=%s id=%s by %s", business_id, invitation_id, actor_id)
        await emit_audit(
            self.audit,
            AuditEvent(
                actor_id=actor_id,
                business_id=business_id,
                action=AuditAction.REVOKE_INVITATION,
                target_email=invitation.email,
                before={"status": InvitationStatus.PENDING.value},
                after={"status": InvitationStatus.REVOKED.value},
            ),
        )
        return invitation

    # =========================================================
    # accept
    # =========================================================
    async def accept_invitation(
        self,
        user: User,
        business_id: uuid.UUID,
        token: str,
    ) -> Membership:
        """
        Turn a pending invitation into an active membership.

        The membership write and the invitation's move to `accepted` commit
        together or not at all.
        """
        token = (token or "").strip()
        if not token:
            raise InvitationNotFound("Invalid invitation token")

        scope = BusinessScope(self.db, business_id)
        expired_now = False
        membership: Optional[Membership] = None
        async with scope.locked():
            # Lock invitation row to prevent concurrent accepts
            stmt = scope.invitations(Invitation.token == token).with_for_update()
            invitation = (
                await self.db.execute(stmt.execution_options(populate_existing=True))
            ).scalar_one_or_none()
            if invitation is None:
                raise InvitationNotFound("Invalid invitation token")

            if expire_if_due(invitation):
                expired_now = True
            elif invitation.status != InvitationStatus.PENDING:
                raise InvitationNotPending(invitation.status.value)
            else:
                if normalize_email(user.email) != normalize_email(invitation.email):
                    raise InvitationEmailMismatch()

                membership = await self.authz.resolver.resolve(user.id, business_id, for_update=True)
                now = utcnow()
                if membership is None:
                    membership = Membership(
                        business_id=business_id,
                        user_id=user.id,
                        role=invitation.role,
                        status=MembershipStatus.ACTIVE,
                        permissions_allow=list(invitation.permissions or []),
                        permissions_deny=[],
                        invited_by=invitation.created_by,
                        invited_at=invitation.created_at,
                        joined_at=now,
                    )
                    self.db.add(membership)
                elif membership.status == MembershipStatus.ACTIVE:
                    raise AlreadyMember()
                else:
                    # suspended/pending rows are reactivated, never duplicated
                    membership.role = invitation.role
                    membership.status = MembershipStatus.ACTIVE
                    membership.permissions_allow = list(invitation.permissions or [])
                    membership.permissions_deny = []
                    membership.invited_by = invitation.created_by
                    membership.invited_at = invitation.created_at
                    membership.joined_at = now

                invitation.status = InvitationStatus.ACCEPTED
                invitation.accepted_at = now
                invitation.accepted_by_user_id = user.id
            await self.db.flush()

        if expired_now:
            raise InvitationExpired()

        await self.db.refresh(membership)
        logger.info(
            "Invitation accepted: business=%s user=%s role=%s",
            business_id,
            user.id,
            membership.role.value,
        )
        await emit_audit(
            self.audit,
            AuditEvent(
                actor_id=user.id,
                business_id=business_id,
                action=AuditAction.ACCEPT_INVITATION,
                target_user_id=user.id,
                target_email=invitation.email,
                after={"role": membership.role.value, "status": membership.status.value},
            ),
        )
        return membership

    # =========================================================
    # read side
    # =========================================================
    async def check_invitation_status(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        email: str,
    ) -> InvitationStatusResult:
        email = normalize_email(email)
        ctx = await self.authz.actor_context(actor_id, business_id)
        self.authz.require_permission(ctx, PERM.TEAM_READ)

        scope = BusinessScope(self.db, business_id)
        invitation = await self._latest_for_email(scope, email)
        if invitation is None:
            return InvitationStatusResult(business_id=business_id, email=email, status=STATUS_NONE)

        await self._expire_overdue(scope, [invitation])

        return InvitationStatusResult(
            business_id=business_id,
            email=email,
            status=invitation.status.value,
            role=invitation.role,
            invited_at=as_utc(invitation.created_at),
            expires_at=as_utc(invitation.expires_at),
            resent_count=invitation.resent_count,
        )

    async def list_invitations(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        *,
        status: Optional[InvitationStatus] = None,
    ) -> List[Invitation]:
        ctx = await self.authz.actor_context(actor_id, business_id)
        self.authz.require_permission(ctx, PERM.TEAM_INVITE)

        scope = BusinessScope(self.db, business_id)
        stmt = scope.invitations().order_by(Invitation.created_at.desc())
        invitations = list((await self.db.execute(stmt)).scalars().all())

        await self._expire_overdue(scope, invitations)

        if status is not None:
            invitations = [inv for inv in invitations if inv.status == status]
        return invitations
