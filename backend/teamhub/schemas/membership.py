from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from teamhub.core.roles import MembershipStatus, Role


class TeamMemberOut(BaseModel):
    id: UUID
    business_id: UUID
    user_id: UUID
    email: str
    display_name: Optional[str] = None
    role: Role
    status: MembershipStatus
    permissions_allow: List[str] = []
    permissions_deny: List[str] = []
    invited_by: Optional[UUID] = None
    invited_at: Optional[datetime] = None
    joined_at: Optional[datetime] = None
    created_at: datetime


class TeamMemberList(BaseModel):
    items: List[TeamMemberOut]
    total: int
    page: int
    limit: int


class TeamMemberUpdate(BaseModel):
    # Optional updates; send any combination
    role: Optional[Role] = None
    status: Optional[MembershipStatus] = None
    permissions_allow: Optional[List[str]] = Field(default=None, max_length=20)
    permissions_deny: Optional[List[str]] = Field(default=None, max_length=20)

    @model_validator(mode="after")
    def _at_least_one(self):
        if self.role is None and self.status is None and self.permissions_allow is None and self.permissions_deny is None:
            raise ValueError("No fields provided to update")
        return self


class RemovedMemberOut(BaseModel):
    business_id: UUID
    user_id: UUID
    role: Role


class TransferOwnershipRequest(BaseModel):
    new_owner_id: UUID
    confirmation_message: str = Field(
        ...,
        min_length=10,
        max_length=200,
        description="Free-text confirmation, at least 10 characters.",
    )


class TransferOwnershipOut(BaseModel):
    business_id: UUID
    previous_owner_id: UUID
    previous_owner_role: Role
    new_owner_id: UUID
    new_owner_role: Role


class BulkUpdateFields(BaseModel):
    role: Optional[Role] = None
    status: Optional[MembershipStatus] = None
    remove: bool = False

    @model_validator(mode="after")
    def _one_operation(self):
        if not self.remove and self.role is None and self.status is None:
            raise ValueError("Provide a role, a status or remove=true")
        return self


class BulkUpdateRequest(BaseModel):
    member_ids: List[UUID] = Field(..., min_length=1, max_length=50)
    updates: BulkUpdateFields


class BulkFailureOut(BaseModel):
    user_id: UUID
    error: str
    message: str


class BulkUpdateOut(BaseModel):
    succeeded: List[UUID]
    failed: List[BulkFailureOut]
    success_count: int
    failure_count: int


class TeamStatsOut(BaseModel):
    total_members: int
    active_members: int
    suspended_members: int
    pending_invitations: int
    role_distribution: Dict[str, int]
    recent_joiners: int


class RoleResolutionOut(BaseModel):
    business_id: UUID
    user_id: UUID
    role: Role
    rank: int
    status: MembershipStatus
    permissions: List[str]
    display_name: str


SortField = Literal["joined_at", "role", "email", "created_at"]
SortOrder = Literal["asc", "desc"]
