# teamhub/api/v1/invitations.py
from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends

from teamhub.api.deps.auth import get_current_user
from teamhub.api.deps.business import get_business_id, get_invitation_service
from teamhub.core.roles import InvitationStatus
from teamhub.models.user import User
from teamhub.schemas.invitation import AcceptInvite, AcceptInviteOut, InvitationOut
from teamhub.services.invitations import InvitationService

router = APIRouter(prefix="/invitations", tags=["invitations"])


# =========================================================
# LIST + REVOKE (business-scoped; needs team.invite)
# =========================================================
@router.get("", response_model=List[InvitationOut])
async def list_invitations(
    status: Optional[InvitationStatus] = None,
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    invitations: InvitationService = Depends(get_invitation_service),
):
    """
    Invitations of the current business, newest first. Overdue pending
    invitations are reported (and stored) as expired.
    """
    return await invitations.list_invitations(user.id, business_id, status=status)


@router.post("/{invitation_id}/revoke", response_model=InvitationOut)
async def revoke_invitation(
    invitation_id: uuid.UUID,
    business_id: uuid.UUID = Depends(get_business_id),
    user: User = Depends(get_current_user),
    invitations: InvitationService = Depends(get_invitation_service),
):
    return await invitations.revoke_invitation(user.id, business_id, invitation_id)


# =========================================================
# ACCEPT (authenticated; invitee)
# =========================================================
@router.post("/accept", response_model=AcceptInviteOut)
async def accept_invitation(
    payload: AcceptInvite,
    user: User = Depends(get_current_user),
    invitations: InvitationService = Depends(get_invitation_service),
):
    """
    Accept an invitation by token.
    - Requires JWT; the signed-in email must match the invitation email.
    - Creates or reactivates the membership and marks the invitation accepted.
    """
    membership = await invitations.accept_invitation(user, payload.business_id, payload.token)
    return AcceptInviteOut(
        business_id=membership.business_id,
        user_id=membership.user_id,
        role=membership.role,
    )
