# teamhub/crud/membership.py
from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import aliased

from teamhub.core.roles import MembershipStatus, Role
from teamhub.db.scope import BusinessScope
from teamhub.models.membership import Membership
from teamhub.models.user import User


def other_active_owners(scope: BusinessScope, exclude_membership_id: uuid.UUID):
    """
    Scalar subquery: active owners of the business other than the given membership.

    Meant to be embedded in the WHERE clause of the write itself, so the last-owner
    check is evaluated at write time rather than at validation time.
    """
    other = aliased(Membership)
    return (
        select(func.count(other.id))
        .where(other.business_id == scope.business_id)
        .where(other.role == Role.OWNER)
        .where(other.status == MembershipStatus.ACTIVE)
        .where(other.id != exclude_membership_id)
        .scalar_subquery()
    )


async def count_active_owners(
    scope: BusinessScope,
    exclude_membership_id: Optional[uuid.UUID] = None,
) -> int:
    stmt = (
        select(func.count(Membership.id))
        .where(Membership.business_id == scope.business_id)
        .where(Membership.role == Role.OWNER)
        .where(Membership.status == MembershipStatus.ACTIVE)
    )
    if exclude_membership_id is not None:
        stmt = stmt.where(Membership.id != exclude_membership_id)
    res = await scope.db.execute(stmt)
    return int(res.scalar() or 0)


async def get_membership_by_email(scope: BusinessScope, email: str) -> Optional[Membership]:
    stmt = scope.memberships().join(User, User.id == Membership.user_id).where(User.email == email)
    return (await scope.db.execute(stmt)).scalar_one_or_none()
