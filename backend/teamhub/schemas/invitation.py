from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from teamhub.core.roles import InvitationStatus, Role


class InviteCreate(BaseModel):
    email: EmailStr
    role: Role = Field(default=Role.STAFF, description="Any role at or below your own")
    permissions: List[str] = Field(default_factory=list, max_length=20)
    message: Optional[str] = Field(default=None, max_length=500)
    expires_in_hours: Optional[int] = Field(default=None, ge=1, le=168)


class InviteResend(BaseModel):
    email: EmailStr
    expires_in_hours: Optional[int] = Field(default=None, ge=1, le=168)


class InvitationOut(BaseModel):
    id: UUID
    business_id: UUID
    email: str
    role: Role
    permissions: List[str]
    message: Optional[str] = None
    status: InvitationStatus
    expires_at: datetime
    created_by: Optional[UUID] = None
    resent_count: int
    last_sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    accepted_by_user_id: Optional[UUID] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InviteResultOut(BaseModel):
    invitation: InvitationOut
    invitation_created: bool = True
    email_sent: bool
    delivery_error: Optional[str] = None


class InvitationStatusOut(BaseModel):
    business_id: UUID
    email: str
    status: str = Field(description="none | pending | expired | accepted | revoked")
    role: Optional[Role] = None
    invited_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    resent_count: int = 0


class AcceptInvite(BaseModel):
    token: str = Field(..., min_length=1, description="Invitation token")
    business_id: UUID = Field(..., description="Business named in the invitation link")


class AcceptInviteOut(BaseModel):
    status: str = "ok"
    business_id: UUID
    user_id: UUID
    role: Role
