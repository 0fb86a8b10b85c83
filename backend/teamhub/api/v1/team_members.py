# teamhub/api/v1/team_members.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.api.deps.auth import get_current_user
from teamhub.api.deps.business import (
    get_authorization_service,
    get_business_id,
    get_invitation_service,
)
from teamhub.core.roles import MembershipStatus, Role
from teamhub.db.session import get_db
from teamhub.models.membership import Membership
from teamhub.models.user import User
from teamhub.schemas.invitation import (
    InvitationOut,
    InvitationStatusOut,
    InviteCreate,
    InviteResend,
    InviteResultOut,
)
from teamhub.schemas.membership import (
    BulkUpdateOut,
    BulkUpdateRequest,
    RemovedMemberOut,
    RoleResolutionOut,
    SortField,
    SortOrder,
    TeamMemberList,
    TeamMemberOut,
    TeamMemberUpdate,
    TeamStatsOut,
    TransferOwnershipOut,
    TransferOwnershipRequest,
)
from teamhub.services.authorization import AuthorizationService, BulkMemberUpdate
from teamhub.services.invitations import InvitationService, InviteResult

router = APIRouter(prefix="/team-members", tags=["team-members"])


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------
def _member_out(membership: Membership, user: User) -> TeamMemberOut:
    return TeamMemberOut(
        id=membership.id,
        business_id=membership.business_id,
        user_id=membership.user_id,
        email=user.email,
        display_name=user.display_name,
        role=membership.role,
        status=membership.status,
        permissions_allow=list(membership.permissions_allow or []),
        permissions_deny=list(membership.permissions_deny or []),
        invited_by=membership.invited_by,
        invited_at=membership.invited_at,
        joined_at=membership.joined_at,
        created_at=membership.created_at,
    )


def _invite_out(result: InviteResult) -> InviteResultOut:
    return InviteResultOut(
        invitation=InvitationOut.model_validate(result.invitation),
        invitation_created=result.invitation_created,
        email_sent=result.email_sent,
        delivery_error=result.delivery_error,
    )


# ---------------------------------------------------------
# Read side
# ---------------------------------------------------------
@router.get("/me/role", response_model=RoleResolutionOut)
async def get_my_role(
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    resolution = await authz.resolve_role(user.id, business_id)
    return RoleResolutionOut(
        business_id=resolution.business_id,
        user_id=resolution.user_id,
        role=resolution.role,
        rank=resolution.rank,
        status=resolution.status,
        permissions=sorted(resolution.permissions),
        display_name=resolution.display_name,
    )


@router.get("", response_model=TeamMemberList)
async def list_team_members(
    role: Optional[Role] = None,
    member_status: Optional[MembershipStatus] = Query(default=None, alias="status"),
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    sort_by: SortField = "joined_at",
    sort_order: SortOrder = "desc",
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    rows, total = await authz.list_members(
        user.id,
        business_id,
        role=role,
        status=member_status,
        search=search,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return TeamMemberList(
        items=[_member_out(m, u) for m, u in rows],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=TeamStatsOut)
async def get_team_stats(
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    stats = await authz.team_stats(user.id, business_id)
    return TeamStatsOut(
        total_members=stats.total_members,
        active_members=stats.active_members,
        suspended_members=stats.suspended_members,
        pending_invitations=stats.pending_invitations,
        role_distribution=stats.role_distribution,
        recent_joiners=stats.recent_joiners,
    )


# =========================================================
# INVITATIONS (by email)
# =========================================================
@router.post("/invite", response_model=InviteResultOut, status_code=status.HTTP_201_CREATED)
async def invite_team_member(
    payload: InviteCreate,
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    invitations: InvitationService = Depends(get_invitation_service),
):
    """
    Invite someone to the business. The invitation is saved even when delivery
    fails; `email_sent` reports whether it went out.
    """
    try:
        result = await invitations.invite_member(
            user.id,
            business_id,
            str(payload.email),
            payload.role,
            permissions=payload.permissions,
            message=payload.message,
            expires_in_hours=payload.expires_in_hours,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return _invite_out(result)


@router.post("/resend-invitation", response_model=InviteResultOut)
async def resend_team_invitation(
    payload: InviteResend,
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    invitations: InvitationService = Depends(get_invitation_service),
):
    try:
        result = await invitations.resend_invitation(
            user.id,
            business_id,
            str(payload.email),
            expires_in_hours=payload.expires_in_hours,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return _invite_out(result)


@router.get("/invitation-status", response_model=InvitationStatusOut)
async def get_invitation_status(
    email: str = Query(..., min_length=3, max_length=320),
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    invitations: InvitationService = Depends(get_invitation_service),
):
    result = await invitations.check_invitation_status(user.id, business_id, str(email))
    return InvitationStatusOut(
        business_id=result.business_id,
        email=result.email,
        status=result.status,
        role=result.role,
        invited_at=result.invited_at,
        expires_at=result.expires_at,
        resent_count=result.resent_count,
    )


# =========================================================
# MUTATIONS
# =========================================================
@router.post("/transfer-ownership", response_model=TransferOwnershipOut)
async def transfer_ownership(
    payload: TransferOwnershipRequest,
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    transfer = await authz.transfer_ownership(
        user.id,
        business_id,
        payload.new_owner_id,
        payload.confirmation_message,
    )
    return TransferOwnershipOut(
        business_id=transfer.business_id,
        previous_owner_id=transfer.previous_owner.user_id,
        previous_owner_role=transfer.previous_owner.role,
        new_owner_id=transfer.new_owner.user_id,
        new_owner_role=transfer.new_owner.role,
    )


@router.post("/bulk-update", response_model=BulkUpdateOut)
async def bulk_update_team_members(
    payload: BulkUpdateRequest,
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    """
    Apply one change to many members. Each member succeeds or fails on its own;
    failures are listed, never raised.
    """
    result = await authz.bulk_update_members(
        user.id,
        business_id,
        payload.member_ids,
        BulkMemberUpdate(
            role=payload.updates.role,
            status=payload.updates.status,
            remove=payload.updates.remove,
        ),
    )
    return BulkUpdateOut(
        succeeded=result.succeeded,
        failed=[{"user_id": f.user_id, "error": f.error, "message": f.message} for f in result.failed],
        success_count=result.success_count,
        failure_count=result.failure_count,
    )


@router.patch("/{user_id}", response_model=TeamMemberOut)
async def update_team_member(
    user_id: uuid.UUID,
    payload: TeamMemberUpdate,
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    membership = await authz.update_member(
        user.id,
        business_id,
        user_id,
        role=payload.role,
        status=payload.status,
        permissions_allow=payload.permissions_allow,
        permissions_deny=payload.permissions_deny,
    )
    member_user = await db.get(User, membership.user_id)
    return _member_out(membership, member_user)


@router.delete("/{user_id}", response_model=RemovedMemberOut)
async def remove_team_member(
    user_id: uuid.UUID,
    reason: Optional[str] = Query(default=None, max_length=500),
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    removed = await authz.remove_member(user.id, business_id, user_id, reason=reason)
    return RemovedMemberOut(business_id=removed.business_id, user_id=removed.user_id, role=removed.role)
