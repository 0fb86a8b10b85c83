# teamhub/services/authorization.py
"""
Authorization and team-membership mutations.

Every public operation follows the same protocol:

1. resolve the actor's own membership (fail closed with NotAMember),
2. derive the actor's rank from its role (never from permission overrides),
3. check the action's permission gate and its invariant,
4. lock the business row, re-read the actor under the lock and repeat the
   rank checks, then apply the change as ONE conditional statement,
5. commit, refresh and return the new state,
6. hand an audit event to the sink (best-effort, after commit).

Invariant violations are raised before anything is written. The last-owner
check is repeated inside the write statement itself, so two concurrent
requests cannot both remove the final owner.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.auth.permissions import PERM, effective_permissions, is_permitted, normalize_permissions
from teamhub.core.errors import (
    ConflictingUpdate,
    InsufficientRank,
    LastOwnerViolation,
    NotAMember,
    PermissionDenied,
    SelfEscalationDenied,
    TeamError,
    TransferNotConfirmed,
)
from teamhub.core.roles import (
    InvitationStatus,
    MembershipStatus,
    Role,
    can_assign,
    can_manage,
    normalize_role,
    rank,
    role_display_name,
)
from teamhub.core.timeutils import as_utc, utcnow
from teamhub.crud.membership import count_active_owners, other_active_owners
from teamhub.db.scope import BusinessScope
from teamhub.models.invitation import Invitation
from teamhub.models.membership import Membership
from teamhub.models.user import User
from teamhub.services.audit import AuditAction, AuditEvent, AuditSink, emit_audit
from teamhub.services.membership_resolver import MembershipResolver

logger = logging.getLogger(__name__)

MAX_BULK_TARGETS = 50
MIN_CONFIRMATION_LENGTH = 10
RECENT_JOINER_DAYS = 7


@dataclass(frozen=True)
class ActorContext:
    membership: Membership
    role: Role
    rank: int
    grants: FrozenSet[str]
    denied: FrozenSet[str]

    @property
    def user_id(self) -> uuid.UUID:
        return self.membership.user_id

    @property
    def business_id(self) -> uuid.UUID:
        return self.membership.business_id

    def can(self, permission: str) -> bool:
        return is_permitted(role=self.role, grants=self.grants, required=permission, denied=self.denied)


@dataclass(frozen=True)
class RoleResolution:
    business_id: uuid.UUID
    user_id: uuid.UUID
    role: Role
    rank: int
    status: MembershipStatus
    permissions: FrozenSet[str]
    display_name: str


@dataclass(frozen=True)
class RemovedMember:
    business_id: uuid.UUID
    user_id: uuid.UUID
    role: Role


@dataclass(frozen=True)
class OwnershipTransfer:
    business_id: uuid.UUID
    previous_owner: Membership
    new_owner: Membership


@dataclass(frozen=True)
class BulkMemberUpdate:
    role: Optional[Role] = None
    status: Optional[MembershipStatus] = None
    remove: bool = False


@dataclass(frozen=True)
class BulkItemFailure:
    user_id: uuid.UUID
    error: str
    message: str


@dataclass
class BulkResult:
    succeeded: List[uuid.UUID] = field(default_factory=list)
    failed: List[BulkItemFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


@dataclass(frozen=True)
class TeamStats:
    total_members: int
    active_members: int
    suspended_members: int
    pending_invitations: int
    role_distribution: Dict[str, int]
    recent_joiners: int


def membership_snapshot(m: Membership) -> Dict[str, Any]:
    return {
        "role": m.role.value,
        "status": m.status.value,
        "permissions_allow": list(m.permissions_allow or []),
        "permissions_deny": list(m.permissions_deny or []),
    }


class AuthorizationService:
    def __init__(self, db: AsyncSession, *, audit: Optional[AuditSink] = None):
        self.db = db
        self.audit = audit
        self.resolver = MembershipResolver(db)

    # =========================================================
    # Actor resolution / gates
    # =========================================================
    async def actor_context(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        *,
        locked: bool = False,
    ) -> ActorContext:
        """
        Resolve the acting member. With `locked=True` (inside `scope.locked()`) the
        membership row is re-read FOR UPDATE, so rank checks use the role the actor
        holds at write time rather than the one seen before the business lock.
        """
        membership = await self.resolver.require_active(actor_id, business_id, for_update=locked)
        return ActorContext(
            membership=membership,
            role=membership.role,
            rank=rank(membership.role),
            grants=effective_permissions(
                role=membership.role,
                allow=membership.permissions_allow,
                deny=membership.permissions_deny,
            ),
            denied=normalize_permissions(membership.permissions_deny),
        )

    @staticmethod
    def require_permission(ctx: ActorContext, permission: str) -> None:
        if not ctx.can(permission):
            raise PermissionDenied(permission)

    @staticmethod
    def require_can_assign(ctx: ActorContext, role: Role) -> None:
        if not can_assign(ctx.rank, role):
            raise InsufficientRank(
                f"You cannot assign the {role.value} role",
                actor_role=ctx.role.value,
                requested_role=role.value,
            )

    async def resolve_role(self, user_id: uuid.UUID, business_id: uuid.UUID) -> RoleResolution:
        ctx = await self.actor_context(user_id, business_id)
        return RoleResolution(
            business_id=business_id,
            user_id=user_id,
            role=ctx.role,
            rank=ctx.rank,
            status=ctx.membership.status,
            permissions=ctx.grants,
            display_name=role_display_name(ctx.role),
        )

    async def check_permission(self, user_id: uuid.UUID, business_id: uuid.UUID, permission: str) -> bool:
        """Answer "may this user do X in this business" without raising for non-members."""
        try:
            ctx = await self.actor_context(user_id, business_id)
        except NotAMember:
            return False
        return ctx.can(permission)

    # =========================================================
    # Helpers
    # =========================================================
    async def _load_target(self, scope: BusinessScope, user_id: uuid.UUID) -> Membership:
        stmt = scope.memberships(Membership.user_id == user_id).execution_options(populate_existing=True)
        target = (await self.db.execute(stmt)).scalar_one_or_none()
        if target is None:
            raise NotAMember()
        return target

    @staticmethod
    def _is_active_owner(m: Membership) -> bool:
        return m.role == Role.OWNER and m.status == MembershipStatus.ACTIVE

    async def _guard_last_owner(
        self,
        scope: BusinessScope,
        target: Membership,
        next_role: Optional[Role],
        next_status: Optional[MembershipStatus],
    ) -> bool:
        """
        Raise LastOwnerViolation if the change would leave the business without an
        active owner. `next_role=None` means the membership is being deleted.
        Returns whether the change takes an active owner away (the write must then
        carry the owner-count predicate).
        """
        if not self._is_active_owner(target):
            return False
        stays_owner = next_role == Role.OWNER and next_status == MembershipStatus.ACTIVE
        if stays_owner:
            return False
        if await count_active_owners(scope, exclude_membership_id=target.id) < 1:
            raise LastOwnerViolation()
        return True

    async def _diagnose_failed_write(self, scope: BusinessScope, target_id: uuid.UUID) -> TeamError:
        stmt = scope.memberships(Membership.id == target_id).execution_options(populate_existing=True)
        current = (await self.db.execute(stmt)).scalar_one_or_none()
        if current is None:
            return NotAMember()
        if self._is_active_owner(current) and await count_active_owners(scope, exclude_membership_id=current.id) < 1:
            return LastOwnerViolation()
        return ConflictingUpdate()

    # =========================================================
    # Update role / status / overrides
    # =========================================================
    async def update_member_role(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        target_user_id: uuid.UUID,
        new_role: Role | str,
    ) -> Membership:
        return await self.update_member(actor_id, business_id, target_user_id, role=new_role)

    async def update_member(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        target_user_id: uuid.UUID,
        *,
        role: Role | str | None = None,
        status: MembershipStatus | str | None = None,
        permissions_allow: Optional[Iterable[str]] = None,
        permissions_deny: Optional[Iterable[str]] = None,
        last_owner_first: bool = False,
    ) -> Membership:
        """
        Change a member's role, status and/or permission overrides.

        With `last_owner_first` the last-owner invariant is reported ahead of the
        hierarchy checks (bulk updates report business-level violations first).
        """
        new_role = normalize_role(role) if role is not None else None
        new_status = MembershipStatus(status) if status is not None else None
        if new_role is None and new_status is None and permissions_allow is None and permissions_deny is None:
            raise ValueError("No fields provided to update")

        ctx = await self.actor_context(actor_id, business_id)

        # Nobody edits their own membership through this path, owners included.
        if target_user_id == actor_id:
            raise SelfEscalationDenied()

        self.require_permission(ctx, PERM.TEAM_ROLES)

        drops_owner = False
        scope = BusinessScope(self.db, business_id)
        async with scope.locked():
            ctx = await self.actor_context(actor_id, business_id, locked=True)
            self.require_permission(ctx, PERM.TEAM_ROLES)
            target = await self._load_target(scope, target_user_id)
            before = membership_snapshot(target)

            next_role = new_role or target.role
            next_status = new_status or target.status

            if last_owner_first:
                drops_owner = await self._guard_last_owner(scope, target, next_role, next_status)

            if not can_assign(ctx.rank, target.role):
                raise InsufficientRank(
                    f"You cannot modify members with the {target.role.value} role",
                    actor_role=ctx.role.value,
                    target_role=target.role.value,
                )
            if new_role is not None:
                self.require_can_assign(ctx, new_role)

            allow = normalize_permissions(permissions_allow) if permissions_allow is not None else None
            deny = normalize_permissions(permissions_deny) if permissions_deny is not None else None
            if allow:
                ungrantable = sorted(p for p in allow if not ctx.can(p))
                if ungrantable:
                    raise InsufficientRank(
                        "You cannot grant permissions you do not hold",
                        permissions=ungrantable,
                    )

            if not last_owner_first:
                drops_owner = await self._guard_last_owner(scope, target, next_role, next_status)

            values: Dict[str, Any] = {"role": next_role, "status": next_status}
            if allow is not None:
                values["permissions_allow"] = sorted(allow)
            if deny is not None:
                values["permissions_deny"] = sorted(deny)
            if next_status == MembershipStatus.ACTIVE and target.joined_at is None:
                values["joined_at"] = utcnow()

            stmt = scope.update_memberships(
                Membership.id == target.id,
                Membership.role == target.role,
                Membership.status == target.status,
            )
            if drops_owner:
                stmt = stmt.where(other_active_owners(scope, target.id) >= 1)

            result = await self.db.execute(stmt.values(**values))
            if result.rowcount != 1:
                raise await self._diagnose_failed_write(scope, target.id)

        await self.db.refresh(target)
        after = membership_snapshot(target)
        logger.info(
            "Member updated: business=%s target=%s %s -> %s by %s",
            business_id,
            target_user_id,
            before["role"],
            after["role"],
            actor_id,
        )
        await emit_audit(
            self.audit,
            AuditEvent(
                actor_id=actor_id,
                business_id=business_id,
                action=AuditAction.UPDATE_ROLE if new_role is not None else AuditAction.UPDATE_MEMBER,
                target_user_id=target_user_id,
                before=before,
                after=after,
            ),
        )
        return target

    # =========================================================
    # Remove
    # =========================================================
    async def remove_member(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        target_user_id: uuid.UUID,
        *,
        reason: Optional[str] = None,
    ) -> RemovedMember:
        ctx = await self.actor_context(actor_id, business_id)
        self.require_permission(ctx, PERM.TEAM_REMOVE)

        scope = BusinessScope(self.db, business_id)
        async with scope.locked():
            ctx = await self.actor_context(actor_id, business_id, locked=True)
            self.require_permission(ctx, PERM.TEAM_REMOVE)
            target = await self._load_target(scope, target_user_id)
            before = membership_snapshot(target)

            # Reported ahead of rank: removing the sole owner is never possible for anyone.
            drops_owner = await self._guard_last_owner(scope, target, None, None)

            if not can_manage(ctx.rank, target.role):
                raise InsufficientRank(
                    "You can only remove members ranked below you",
                    actor_role=ctx.role.value,
                    target_role=target.role.value,
                )

            stmt = scope.delete_memberships(
                Membership.id == target.id,
                Membership.role == target.role,
                Membership.status == target.status,
            )
            if drops_owner:
                stmt = stmt.where(other_active_owners(scope, target.id) >= 1)

            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                raise await self._diagnose_failed_write(scope, target.id)

        self.db.expunge(target)
        logger.info(
            "Member removed: business=%s target=%s role=%s by %s reason=%s",
            business_id,
            target_user_id,
            before["role"],
            actor_id,
            reason or "No reason provided",
        )
        await emit_audit(
            self.audit,
            AuditEvent(
                actor_id=actor_id,
                business_id=business_id,
                action=AuditAction.REMOVE_MEMBER,
                target_user_id=target_user_id,
                before=before,
                after={"reason": reason} if reason else {},
            ),
        )
        return RemovedMember(business_id=business_id, user_id=target_user_id, role=target.role)

    # =========================================================
    # Ownership transfer
    # =========================================================
    @staticmethod
    def _require_owner(ctx: ActorContext) -> None:
        if ctx.role != Role.OWNER:
            raise InsufficientRank(
                "Only the current owner can transfer ownership",
                actor_role=ctx.role.value,
            )

    async def transfer_ownership(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        target_user_id: uuid.UUID,
        confirmation: str,
    ) -> OwnershipTransfer:
        """
        Demote the acting owner to admin and promote the target to owner.

        Both rows change in a single UPDATE, so no reader ever sees the business
        with zero owners or with both users as owner because of this operation.
        """
        self._require_owner(await self.actor_context(actor_id, business_id))
        if not confirmation or len(confirmation.strip()) < MIN_CONFIRMATION_LENGTH:
            raise TransferNotConfirmed()
        if target_user_id == actor_id:
            raise SelfEscalationDenied("You already own this business")

        scope = BusinessScope(self.db, business_id)
        async with scope.locked():
            ctx = await self.actor_context(actor_id, business_id, locked=True)
            self._require_owner(ctx)
            actor = ctx.membership
            target = await self._load_target(scope, target_user_id)
            if target.status != MembershipStatus.ACTIVE:
                raise NotAMember()
            before = {"previous_owner": actor.role.value, "new_owner": target.role.value}

            stmt = scope.update_memberships(
                Membership.status == MembershipStatus.ACTIVE,
                or_(
                    and_(Membership.user_id == actor_id, Membership.role == Role.OWNER),
                    Membership.user_id == target_user_id,
                ),
            ).values(
                role=case(
                    (Membership.user_id == actor_id, Role.ADMIN.value),
                    else_=Role.OWNER.value,
                )
            )
            result = await self.db.execute(stmt)
            if result.rowcount != 2:
                # rolled back by scope.locked(); someone changed one of the two rows first
                raise ConflictingUpdate("Ownership changed while the transfer was processed; retry")

        await self.db.refresh(actor)
        await self.db.refresh(target)
        logger.info(
            "Ownership transferred: business=%s from %s to %s",
            business_id,
            actor_id,
            target_user_id,
        )
        await emit_audit(
            self.audit,
            AuditEvent(
                actor_id=actor_id,
                business_id=business_id,
                action=AuditAction.TRANSFER_OWNERSHIP,
                target_user_id=target_user_id,
                before=before,
                after={
                    "previous_owner": actor.role.value,
                    "new_owner": target.role.value,
                    "confirmation": confirmation.strip(),
                },
            ),
        )
        return OwnershipTransfer(business_id=business_id, previous_owner=actor, new_owner=target)

    # =========================================================
    # Bulk
    # =========================================================
    async def bulk_update_members(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        target_user_ids: Sequence[uuid.UUID],
        update: BulkMemberUpdate,
    ) -> BulkResult:
        """
        Apply one update to many members, each in its own transaction.

        A failing target is itemized in the result and never stops the others.
        """
        if not target_user_ids:
            raise ValueError("At least one member id is required")
        if len(target_user_ids) > MAX_BULK_TARGETS:
            raise ValueError(f"Too many member ids (max {MAX_BULK_TARGETS})")
        if not update.remove and update.role is None and update.status is None:
            raise ValueError("Bulk update needs a role, a status or remove=true")

        result = BulkResult()
        for user_id in dict.fromkeys(target_user_ids):
            try:
                if update.remove:
                    await self.remove_member(actor_id, business_id, user_id, reason="bulk update")
                else:
                    await self.update_member(
                        actor_id,
                        business_id,
                        user_id,
                        role=update.role,
                        status=update.status,
                        last_owner_first=True,
                    )
            except TeamError as e:
                result.failed.append(BulkItemFailure(user_id=user_id, error=e.code, message=e.message))
            except SQLAlchemyError:
                logger.exception("Bulk update store failure: business=%s target=%s", business_id, user_id)
                result.failed.append(
                    BulkItemFailure(user_id=user_id, error="STORE_ERROR", message="Failed to update member")
                )
            else:
                result.succeeded.append(user_id)

        logger.info(
            "Bulk member update: business=%s ok=%d failed=%d",
            business_id,
            result.success_count,
            result.failure_count,
        )
        return result

    # =========================================================
    # Read side
    # =========================================================
    async def list_members(
        self,
        actor_id: uuid.UUID,
        business_id: uuid.UUID,
        *,
        role: Optional[Role] = None,
        status: Optional[MembershipStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "joined_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Tuple[Membership, User]], int]:
        ctx = await self.actor_context(actor_id, business_id)
        self.require_permission(ctx, PERM.TEAM_READ)

        page = max(page, 1)
        limit = min(max(limit, 1), 50)

        scope = BusinessScope(self.db, business_id)
        criteria = []
        if role is not None:
            criteria.append(Membership.role == role)
        if status is not None:
            criteria.append(Membership.status == status)
        if search and search.strip():
            term = f"%{search.strip().lower()}%"
            criteria.append(or_(func.lower(User.email).like(term), func.lower(User.display_name).like(term)))

        base = scope.memberships(*criteria).join(User, User.id == Membership.user_id)

        total = (
            await self.db.execute(select(func.count()).select_from(base.subquery()))
        ).scalar_one()

        sort_columns = {
            "joined_at": Membership.joined_at,
            "role": Membership.role,
            "email": User.email,
            "created_at": Membership.created_at,
        }
        column = sort_columns.get(sort_by, Membership.joined_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()

        stmt = (
            base.add_columns(User)
            .order_by(ordering, Membership.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = (await self.db.execute(stmt)).all()
        return [(row[0], row[1]) for row in rows], int(total)

    async def team_stats(self, actor_id: uuid.UUID, business_id: uuid.UUID) -> TeamStats:
        ctx = await self.actor_context(actor_id, business_id)
        self.require_permission(ctx, PERM.TEAM_READ)

        scope = BusinessScope(self.db, business_id)
        members = (await self.db.execute(scope.memberships())).scalars().all()

        now = utcnow()
        week_ago = now - timedelta(days=RECENT_JOINER_DAYS)

        role_distribution: Dict[str, int] = {}
        for m in members:
            role_distribution[m.role.value] = role_distribution.get(m.role.value, 0) + 1

        invitations = (
            await self.db.execute(scope.invitations(Invitation.status == InvitationStatus.PENDING))
        ).scalars().all()

        return TeamStats(
            total_members=len(members),
            active_members=sum(1 for m in members if m.status == MembershipStatus.ACTIVE),
            suspended_members=sum(1 for m in members if m.status == MembershipStatus.SUSPENDED),
            pending_invitations=sum(1 for inv in invitations if as_utc(inv.expires_at) > now),
            role_distribution=role_distribution,
            recent_joiners=sum(1 for m in members if m.joined_at is not None and as_utc(m.joined_at) >= week_ago),
        )
