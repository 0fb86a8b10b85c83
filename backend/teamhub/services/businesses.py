# teamhub/services/businesses.py
from __future__ import annotations

import logging
import re
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.core.errors import NotAMember
from teamhub.core.roles import MembershipStatus, Role
from teamhub.core.timeutils import utcnow
from teamhub.models.business import Business
from teamhub.models.membership import Membership
from teamhub.models.organization import Organization
from teamhub.models.user import User
from teamhub.services.audit import AuditAction, AuditEvent, AuditSink, emit_audit

logger = logging.getLogger(__name__)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    slug = _SLUG_STRIP.sub("-", (value or "").strip().lower()).strip("-")
    return slug[:100] or "business"


async def create_business(
    db: AsyncSession,
    user: User,
    name: str,
    *,
    slug: Optional[str] = None,
    organization_id: Optional[uuid.UUID] = None,
    audit: Optional[AuditSink] = None,
) -> Business:
    """
    Create a business with the calling user as its first active owner.

    Without an organization_id a one-business organization is created for it.
    Adding a business to an existing organization requires being an active owner
    of one of that organization's businesses.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Business name is required")
    slug = slugify(slug or name)

    if organization_id is None:
        organization = Organization(name=name, slug=f"{slug}-{uuid.uuid4().hex[:8]}")
        db.add(organization)
        await db.flush()
        organization_id = organization.id
    else:
        stmt = (
            select(Membership.id)
            .join(Business, Business.id == Membership.business_id)
            .where(
                Business.organization_id == organization_id,
                Membership.user_id == user.id,
                Membership.role == Role.OWNER,
                Membership.status == MembershipStatus.ACTIVE,
            )
            .limit(1)
        )
        if (await db.execute(stmt)).scalar_one_or_none() is None:
            raise NotAMember()

        taken = select(Business.id).where(Business.organization_id == organization_id, Business.slug == slug)
        if (await db.execute(taken)).scalar_one_or_none() is not None:
            raise ValueError(f"Slug {slug!r} is already used in this organization")

    business = Business(organization_id=organization_id, name=name, slug=slug, is_active=True)
    db.add(business)
    await db.flush()

    now = utcnow()
    membership = Membership(
        business_id=business.id,
        user_id=user.id,
        role=Role.OWNER,
        status=MembershipStatus.ACTIVE,
        permissions_allow=[],
        permissions_deny=[],
        invited_at=now,
        joined_at=now,
    )
    db.add(membership)
    await db.commit()
    await db.refresh(business)

    logger.info("Business created: id=%s org=%s owner=%s", business.id, organization_id, user.id)
    await emit_audit(
        audit,
        AuditEvent(
            actor_id=user.id,
            business_id=business.id,
            action=AuditAction.BOOTSTRAP_OWNER,
            target_user_id=user.id,
            after={"role": Role.OWNER.value, "status": MembershipStatus.ACTIVE.value},
        ),
    )
    return business


async def list_my_businesses(db: AsyncSession, user: User) -> List[Business]:
    """Businesses where the user holds an active membership."""
    stmt = (
        select(Business)
        .join(Membership, Membership.business_id == Business.id)
        .where(Membership.user_id == user.id)
        .where(Membership.status == MembershipStatus.ACTIVE)
        .where(Business.is_active.is_(True))
        .order_by(Business.created_at.desc())
    )
    res = await db.execute(stmt)
    return list(res.scalars().unique().all())
