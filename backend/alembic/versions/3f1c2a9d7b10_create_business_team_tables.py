"""create organizations, businesses, users, memberships and invitations

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import text

# revision identifiers, used by Alembic.
revision = "3f1c2a9d7b10"
down_revision = None
branch_labels = None
depends_on = None

ROLES = ("owner", "admin", "manager", "staff", "viewer")
MEMBERSHIP_STATUSES = ("active", "suspended", "pending")
INVITATION_STATUSES = ("pending", "accepted", "expired", "revoked")

PENDING_INDEX = "uq_business_invitations_pending_business_email"


def _timestamps(with_updated: bool = True):
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if with_updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False))
    return cols


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_organizations_slug", "organizations", ["slug"], unique=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "businesses",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "slug", name="uq_businesses_organization_slug"),
    )
    op.create_index("ix_businesses_organization_id", "businesses", ["organization_id"])

    op.create_table(
        "business_memberships",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("business_id", sa.Uuid(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.Enum(*ROLES, name="membership_role", native_enum=False, length=30), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*MEMBERSHIP_STATUSES, name="membership_status", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("permissions_allow", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("permissions_deny", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("invited_by", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("business_id", "user_id", name="uq_business_memberships_business_user"),
    )
    op.create_index("ix_business_memberships_user_id", "business_memberships", ["user_id"])
    op.create_index(
        "ix_business_memberships_business_role_status",
        "business_memberships",
        ["business_id", "role", "status"],
    )

    op.create_table(
        "business_invitations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("business_id", sa.Uuid(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("role", sa.Enum(*ROLES, name="invitation_role", native_enum=False, length=30), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("message", sa.String(500), nullable=True),
        sa.Column("token", sa.String(200), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*INVITATION_STATUSES, name="invitation_status", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_by_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint("token", name="uq_business_invitations_token"),
    )
    op.create_index(
        "ix_business_invitations_business_email",
        "business_invitations",
        ["business_id", "email"],
    )
    op.create_index(
        "ix_business_invitations_business_created_at",
        "business_invitations",
        ["business_id", "created_at"],
    )
    op.create_index(
        PENDING_INDEX,
        "business_invitations",
        ["business_id", "email"],
        unique=True,
        postgresql_where=text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index(PENDING_INDEX, table_name="business_invitations")
    op.drop_index("ix_business_invitations_business_created_at", table_name="business_invitations")
    op.drop_index("ix_business_invitations_business_email", table_name="business_invitations")
    op.drop_table("business_invitations")

    op.drop_index("ix_business_memberships_business_role_status", table_name="business_memberships")
    op.drop_index("ix_business_memberships_user_id", table_name="business_memberships")
    op.drop_table("business_memberships")

    op.drop_index("ix_businesses_organization_id", table_name="businesses")
    op.drop_table("businesses")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_organizations_slug", table_name="organizations")
    op.drop_table("organizations")
