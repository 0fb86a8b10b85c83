# backend/teamhub/models/membership.py

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, UniqueConstraint, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from teamhub.core.roles import MembershipStatus, Role
from teamhub.db.base import Base


def _enum_values(enum_cls):
    return [m.value for m in enum_cls]


class Membership(Base):
    __tablename__ = "business_memberships"
    __table_args__ = (
        UniqueConstraint("business_id", "user_id", name="uq_business_memberships_business_user"),
        # owner-count checks run on every membership mutation
        Index("ix_business_memberships_business_role_status", "business_id", "role", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role: Mapped[Role] = mapped_column(
        Enum(Role, native_enum=False, length=30, values_callable=_enum_values, name="membership_role"),
        nullable=False,
        default=Role.STAFF,
    )
    status: Mapped[MembershipStatus] = mapped_column(
        Enum(MembershipStatus, native_enum=False, length=20, values_callable=_enum_values, name="membership_status"),
        nullable=False,
        default=MembershipStatus.ACTIVE,
    )

    # Overrides layered on the role defaults; never affect hierarchy rank
    permissions_allow: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    permissions_deny: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    invited_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    invited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    joined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
