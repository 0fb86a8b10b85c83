# teamhub/core/roles.py

import enum


class Role(str, enum.Enum):
    OWNER = "owner"      # accountable for the business; exactly one path to transfer it
    ADMIN = "admin"      # full team + data management, cannot transfer ownership
    MANAGER = "manager"  # runs day-to-day domain records
    STAFF = "staff"
    VIEWER = "viewer"    # read-only


class MembershipStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING = "pending"


class InvitationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


# Strict total order for hierarchy comparisons
ROLE_RANKS = {
    Role.OWNER: 5,
    Role.ADMIN: 4,
    Role.MANAGER: 3,
    Role.STAFF: 2,
    Role.VIEWER: 1,
}

ROLE_DISPLAY_NAMES = {
    Role.OWNER: "Business Owner",
    Role.ADMIN: "Administrator",
    Role.MANAGER: "Manager",
    Role.STAFF: "Staff Member",
    Role.VIEWER: "Viewer",
}

TERMINAL_INVITATION_STATUSES = frozenset(
    {InvitationStatus.ACCEPTED, InvitationStatus.EXPIRED, InvitationStatus.REVOKED}
)


def normalize_role(role) -> Role:
    """Accept a Role or a case-insensitive role name; raise ValueError for anything else."""
    if isinstance(role, Role):
        return role
    return Role((role or "").strip().lower())


def rank(role) -> int:
    return ROLE_RANKS[normalize_role(role)]


def can_assign(actor_rank: int, target_role) -> bool:
    """An actor may confer any role at or below its own rank."""
    return actor_rank >= rank(target_role)


def can_manage(actor_rank: int, target_role) -> bool:
    """Removal needs strict superiority: never peers, never superiors."""
    return actor_rank > rank(target_role)


def role_display_name(role) -> str:
    return ROLE_DISPLAY_NAMES[normalize_role(role)]
