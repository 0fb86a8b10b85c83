# teamhub/services/membership_resolver.py
from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.core.errors import NotAMember
from teamhub.core.roles import MembershipStatus
from teamhub.db.scope import BusinessScope
from teamhub.models.business import Business
from teamhub.models.membership import Membership


class MembershipResolver:
    """
    Looks up a user's membership in one business.

    "Business does not exist" and "user is not a member" are deliberately the same
    answer (None / NotAMember) so responses never reveal which businesses exist.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def scope(self, business_id: uuid.UUID) -> BusinessScope:
        return BusinessScope(self.db, business_id)

    async def resolve(
        self,
        user_id: uuid.UUID,
        business_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Optional[Membership]:
        scope = self.scope(business_id)
        # inactive businesses behave as if they did not exist
        stmt = scope.memberships(Membership.user_id == user_id).join(
            Business,
            (Business.id == Membership.business_id) & Business.is_active.is_(True),
        )
        if for_update:
            # a locked read must not be answered from the identity map
            stmt = stmt.with_for_update(of=Membership).execution_options(populate_existing=True)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def require_active(
        self,
        user_id: uuid.UUID,
        business_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Membership:
        membership = await self.resolve(user_id, business_id, for_update=for_update)
        if membership is None or membership.status != MembershipStatus.ACTIVE:
            raise NotAMember()
        return membership
