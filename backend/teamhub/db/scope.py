# teamhub/db/scope.py
"""
Business-scoped statement builders.

Team-management code never writes `select(Membership)` or `select(Invitation)`
directly: it asks a BusinessScope, which always attaches the business filter.
A statement over another tenant's rows cannot be built from a scope.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import Delete, Select, Update, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.core.errors import NotAMember
from teamhub.models.business import Business
from teamhub.models.invitation import Invitation
from teamhub.models.membership import Membership


class BusinessScope:
    __slots__ = ("db", "business_id")

    def __init__(self, db: AsyncSession, business_id: uuid.UUID):
        if business_id is None:
            raise ValueError("business_id is required for a BusinessScope")
        self.db = db
        self.business_id = business_id

    def __repr__(self) -> str:
        return f"BusinessScope(business_id={self.business_id})"

    # -----------------------------
    # Memberships
    # -----------------------------
    def memberships(self, *criteria: Any) -> Select:
        return select(Membership).where(Membership.business_id == self.business_id, *criteria)

    def update_memberships(self, *criteria: Any) -> Update:
        return (
            update(Membership)
            .where(Membership.business_id == self.business_id, *criteria)
            .execution_options(synchronize_session=False)
        )

    def delete_memberships(self, *criteria: Any) -> Delete:
        return (
            delete(Membership)
            .where(Membership.business_id == self.business_id, *criteria)
            .execution_options(synchronize_session=False)
        )

    # -----------------------------
    # Invitations
    # -----------------------------
    def invitations(self, *criteria: Any) -> Select:
        return select(Invitation).where(Invitation.business_id == self.business_id, *criteria)

    def update_invitations(self, *criteria: Any) -> Update:
        return (
            update(Invitation)
            .where(Invitation.business_id == self.business_id, *criteria)
            .execution_options(synchronize_session=False)
        )

    # -----------------------------
    # Business row
    # -----------------------------
    async def get_business(self) -> Business | None:
        stmt = select(Business).where(Business.id == self.business_id, Business.is_active.is_(True))
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def lock_business(self) -> Business | None:
        """
        Row-lock the business for the rest of the transaction.

        Serializes concurrent membership mutations of one business on PostgreSQL;
        SQLite has no row locks and serializes writers on its own.
        """
        stmt = (
            select(Business)
            .where(Business.id == self.business_id, Business.is_active.is_(True))
            .with_for_update()
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[Business]:
        """
        One all-or-nothing mutation of this business.

        Locks the business row, runs the block and commits; any exception rolls the
        whole transaction back. A missing or inactive business is reported exactly
        like a missing membership.
        """
        try:
            business = await self.lock_business()
            if business is None:
                raise NotAMember()
            yield business
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
