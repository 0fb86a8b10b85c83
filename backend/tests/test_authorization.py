# tests/test_authorization.py
from __future__ import annotations

import uuid
from typing import Dict, Tuple

import pytest
import pytest_asyncio
from sqlalchemy import update

from teamhub.auth.permissions import PERM
from teamhub.core.errors import (
    ConflictingUpdate,
    InsufficientRank,
    LastOwnerViolation,
    NotAMember,
    PermissionDenied,
    SelfEscalationDenied,
    TransferNotConfirmed,
)
from teamhub.core.roles import MembershipStatus, Role
from teamhub.core.timeutils import utcnow
from teamhub.crud.membership import count_active_owners
from teamhub.db.scope import BusinessScope
from teamhub.models.business import Business
from teamhub.models.membership import Membership
from teamhub.models.organization import Organization
from teamhub.models.user import User
from teamhub.services.audit import AuditAction
from teamhub.services.authorization import AuthorizationService, BulkMemberUpdate

# A failed mutation rolls the session back, which expires every loaded object,
# so tests hold on to plain ids rather than ORM instances.
Team = Tuple[uuid.UUID, Dict[Role, uuid.UUID]]


async def create_business(db, name: str = "Corner Salon") -> uuid.UUID:
    org = Organization(name=name, slug=f"org-{uuid.uuid4().hex[:8]}")
    db.add(org)
    await db.flush()
    business = Business(organization_id=org.id, name=name, slug=f"biz-{uuid.uuid4().hex[:8]}", is_active=True)
    db.add(business)
    await db.flush()
    return business.id


async def create_user(db, email: str) -> uuid.UUID:
    user = User(email=email.lower().strip(), display_name=email.split("@")[0].title(), is_active=True)
    db.add(user)
    await db.flush()
    return user.id


async def add_membership(
    db,
    business_id: uuid.UUID,
    user_id: uuid.UUID,
    role: Role,
    status: MembershipStatus = MembershipStatus.ACTIVE,
    allow=None,
    deny=None,
) -> None:
    db.add(
        Membership(
            business_id=business_id,
            user_id=user_id,
            role=role,
            status=status,
            permissions_allow=list(allow or []),
            permissions_deny=list(deny or []),
            joined_at=utcnow(),
        )
    )
    await db.flush()


async def member(db, business_id: uuid.UUID, user_id: uuid.UUID) -> Membership | None:
    stmt = BusinessScope(db, business_id).memberships(Membership.user_id == user_id)
    return (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()


async def owners(db, business_id: uuid.UUID) -> int:
    return await count_active_owners(BusinessScope(db, business_id))


@pytest.fixture()
def authz(db, audit_sink) -> AuthorizationService:
    return AuthorizationService(db, audit=audit_sink)


@pytest_asyncio.fixture()
async def team(db) -> Team:
    """One business with one active member per role; emails are `<role>@example.com`."""
    business_id = await create_business(db)
    ids = {}
    for role in Role:
        ids[role] = await create_user(db, f"{role.value}@example.com")
        await add_membership(db, business_id, ids[role], role)
    await db.commit()
    return business_id, ids


# =========================================================
# Role resolution / permission checks
# =========================================================
@pytest.mark.asyncio
async def test_resolve_role_reports_rank_and_permissions(authz, team):
    business_id, ids = team
    res = await authz.resolve_role(ids[Role.MANAGER], business_id)
    assert res.role is Role.MANAGER
    assert res.rank == 3
    assert res.display_name == "Manager"
    assert PERM.TEAM_READ in res.permissions


@pytest.mark.asyncio
async def test_non_member_and_unknown_business_look_the_same(authz, db, team):
    business_id, _ = team
    outsider = await create_user(db, "outsider@example.com")
    await db.commit()

    with pytest.raises(NotAMember) as by_membership:
        await authz.resolve_role(outsider, business_id)
    with pytest.raises(NotAMember) as by_business:
        await authz.resolve_role(outsider, uuid.uuid4())
    assert by_membership.value.message == by_business.value.message


@pytest.mark.asyncio
async def test_suspended_member_is_not_an_actor(authz, db, team):
    business_id, _ = team
    user_id = await create_user(db, "suspended@example.com")
    await add_membership(db, business_id, user_id, Role.ADMIN, status=MembershipStatus.SUSPENDED)
    await db.commit()

    with pytest.raises(NotAMember):
        await authz.resolve_role(user_id, business_id)
    assert await authz.check_permission(user_id, business_id, PERM.TEAM_READ) is False


@pytest.mark.asyncio
async def test_check_permission_honours_deny_override(authz, db, team):
    business_id, _ = team
    user_id = await create_user(db, "restricted-admin@example.com")
    await add_membership(db, business_id, user_id, Role.ADMIN, deny=["team.*"])
    await db.commit()

    assert await authz.check_permission(user_id, business_id, PERM.TEAM_INVITE) is False
    assert await authz.check_permission(user_id, business_id, PERM.CUSTOMERS_WRITE) is True


@pytest.mark.asyncio
async def test_inactive_business_behaves_as_missing(authz, db, team):
    business_id, ids = team
    await db.execute(update(Business).where(Business.id == business_id).values(is_active=False))
    await db.commit()

    with pytest.raises(NotAMember):
        await authz.resolve_role(ids[Role.OWNER], business_id)


# =========================================================
# Role updates
# =========================================================
@pytest.mark.asyncio
async def test_self_update_is_always_denied(authz, team):
    business_id, ids = team
    for role in (Role.OWNER, Role.ADMIN, Role.VIEWER):
        with pytest.raises(SelfEscalationDenied):
            await authz.update_member_role(ids[role], business_id, ids[role], Role.STAFF)


@pytest.mark.asyncio
async def test_admin_cannot_promote_to_owner(authz, db, team):
    business_id, ids = team
    with pytest.raises(InsufficientRank):
        await authz.update_member_role(ids[Role.ADMIN], business_id, ids[Role.STAFF], Role.OWNER)

    assert (await member(db, business_id, ids[Role.STAFF])).role is Role.STAFF


@pytest.mark.asyncio
async def test_admin_can_assign_its_own_rank(authz, db, team, audit_sink):
    business_id, ids = team
    updated = await authz.update_member_role(ids[Role.ADMIN], business_id, ids[Role.STAFF], "admin")
    assert updated.role is Role.ADMIN

    assert (await member(db, business_id, ids[Role.STAFF])).role is Role.ADMIN
    assert audit_sink.actions() == [AuditAction.UPDATE_ROLE]
    assert audit_sink.events[0].before["role"] == "staff"
    assert audit_sink.events[0].after["role"] == "admin"


@pytest.mark.asyncio
async def test_admin_cannot_modify_owner(authz, team):
    business_id, ids = team
    with pytest.raises(InsufficientRank):
        await authz.update_member_role(ids[Role.ADMIN], business_id, ids[Role.OWNER], Role.STAFF)


@pytest.mark.asyncio
async def test_manager_lacks_role_permission(authz, team):
    business_id, ids = team
    with pytest.raises(PermissionDenied):
        await authz.update_member_role(ids[Role.MANAGER], business_id, ids[Role.VIEWER], Role.STAFF)


@pytest.mark.asyncio
async def test_cannot_grant_permissions_actor_does_not_hold(authz, team):
    business_id, ids = team
    with pytest.raises(InsufficientRank):
        await authz.update_member(
            ids[Role.ADMIN],
            business_id,
            ids[Role.STAFF],
            permissions_allow=[PERM.BILLING_WRITE],
        )


@pytest.mark.asyncio
async def test_update_status_and_overrides(authz, team, audit_sink):
    business_id, ids = team
    updated = await authz.update_member(
        ids[Role.ADMIN],
        business_id,
        ids[Role.STAFF],
        status=MembershipStatus.SUSPENDED,
        permissions_allow=[PERM.CUSTOMERS_WRITE],
        permissions_deny=[PERM.REPORTS_READ],
    )
    assert updated.status is MembershipStatus.SUSPENDED
    assert updated.permissions_allow == [PERM.CUSTOMERS_WRITE]
    assert updated.permissions_deny == [PERM.REPORTS_READ]
    assert audit_sink.actions() == [AuditAction.UPDATE_MEMBER]


@pytest.mark.asyncio
async def test_update_requires_some_field(authz, team):
    business_id, ids = team
    with pytest.raises(ValueError):
        await authz.update_member(ids[Role.OWNER], business_id, ids[Role.STAFF])


@pytest.mark.asyncio
async def test_owner_can_demote_co_owner(authz, db, team):
    business_id, ids = team
    co_owner = await create_user(db, "co-owner@example.com")
    await add_membership(db, business_id, co_owner, Role.OWNER)
    await db.commit()
    assert await owners(db, business_id) == 2

    await authz.update_member_role(ids[Role.OWNER], business_id, co_owner, Role.ADMIN)
    assert await owners(db, business_id) == 1


@pytest.mark.asyncio
async def test_co_owners_demoting_each_other_keep_one_owner(authz, db, team, monkeypatch):
    business_id, ids = team
    alice = ids[Role.OWNER]
    bob = await create_user(db, "bob@example.com")
    await add_membership(db, business_id, bob, Role.OWNER)
    await db.commit()

    # Bob's request resolved him (still an owner) before Alice's demotion committed.
    bob_seen_as_owner = await authz.actor_context(bob, business_id)
    await authz.update_member_role(alice, business_id, bob, Role.ADMIN)

    async def stale_actor(actor_id, business_id, *, locked=False):
        return bob_seen_as_owner

    async def stale_owner_count(scope, exclude_membership_id=None):
        return 1

    monkeypatch.setattr(authz, "actor_context", stale_actor)
    monkeypatch.setattr("teamhub.services.authorization.count_active_owners", stale_owner_count)

    with pytest.raises((LastOwnerViolation, ConflictingUpdate)):
        await authz.update_member_role(bob, business_id, alice, Role.ADMIN)

    monkeypatch.undo()
    assert (await member(db, business_id, alice)).role is Role.OWNER
    assert await owners(db, business_id) == 1


@pytest.mark.asyncio
async def test_rank_is_rechecked_under_the_business_lock(authz, db, team, monkeypatch):
    business_id, ids = team
    admin = ids[Role.ADMIN]
    admin_before_demotion = await authz.actor_context(admin, business_id)
    await authz.update_member_role(ids[Role.OWNER], business_id, admin, Role.STAFF)

    fresh_actor = authz.actor_context

    async def stale_until_locked(actor_id, business_id, *, locked=False):
        if locked:
            return await fresh_actor(actor_id, business_id, locked=True)
        return admin_before_demotion

    monkeypatch.setattr(authz, "actor_context", stale_until_locked)

    with pytest.raises((PermissionDenied, InsufficientRank)):
        await authz.update_member_role(admin, business_id, ids[Role.STAFF], Role.VIEWER)
    with pytest.raises((PermissionDenied, InsufficientRank)):
        await authz.remove_member(admin, business_id, ids[Role.VIEWER])

    monkeypatch.undo()
    assert (await member(db, business_id, ids[Role.STAFF])).role is Role.STAFF
    assert await member(db, business_id, ids[Role.VIEWER]) is not None


@pytest.mark.asyncio
async def test_target_in_another_business_is_not_found(authz, db, team):
    business_id, ids = team
    other_id = await create_business(db, "Other Shop")
    stranger = await create_user(db, "stranger@example.com")
    await add_membership(db, other_id, stranger, Role.STAFF)
    await db.commit()

    with pytest.raises(NotAMember):
        await authz.update_member_role(ids[Role.OWNER], business_id, stranger, Role.VIEWER)

    assert (await member(db, other_id, stranger)).role is Role.STAFF


# =========================================================
# Removal
# =========================================================
@pytest.mark.asyncio
async def test_peer_admin_cannot_remove_sole_owner(authz, db, team):
    business_id, ids = team
    with pytest.raises(LastOwnerViolation):
        await authz.remove_member(ids[Role.ADMIN], business_id, ids[Role.OWNER])
    assert await owners(db, business_id) == 1


@pytest.mark.asyncio
async def test_remove_requires_strictly_higher_rank(authz, db, team):
    business_id, ids = team
    peer = await create_user(db, "peer-admin@example.com")
    await add_membership(db, business_id, peer, Role.ADMIN)
    await db.commit()

    with pytest.raises(InsufficientRank):
        await authz.remove_member(ids[Role.ADMIN], business_id, peer)
    assert await member(db, business_id, peer) is not None


@pytest.mark.asyncio
async def test_remove_member_deletes_row_and_audits(authz, db, team, audit_sink):
    business_id, ids = team
    removed = await authz.remove_member(
        ids[Role.ADMIN],
        business_id,
        ids[Role.STAFF],
        reason="left the company",
    )
    assert removed.role is Role.STAFF
    assert await member(db, business_id, ids[Role.STAFF]) is None
    assert audit_sink.actions() == [AuditAction.REMOVE_MEMBER]
    assert audit_sink.events[0].after == {"reason": "left the company"}


@pytest.mark.asyncio
async def test_failing_audit_sink_does_not_undo_mutation(authz, db, team, audit_sink):
    business_id, ids = team
    audit_sink.fail = True

    await authz.remove_member(ids[Role.OWNER], business_id, ids[Role.VIEWER])
    assert await member(db, business_id, ids[Role.VIEWER]) is None


@pytest.mark.asyncio
async def test_staff_cannot_remove_anyone(authz, team):
    business_id, ids = team
    with pytest.raises(PermissionDenied):
        await authz.remove_member(ids[Role.STAFF], business_id, ids[Role.VIEWER])


# =========================================================
# Ownership transfer
# =========================================================
@pytest.mark.asyncio
async def test_transfer_swaps_owner_and_admin(authz, db, team, audit_sink):
    business_id, ids = team
    alice, bob = ids[Role.OWNER], ids[Role.MANAGER]

    transfer = await authz.transfer_ownership(alice, business_id, bob, "Handing over the shop to Bob")
    assert transfer.previous_owner.role is Role.ADMIN
    assert transfer.new_owner.role is Role.OWNER

    assert (await member(db, business_id, alice)).role is Role.ADMIN
    assert (await member(db, business_id, bob)).role is Role.OWNER
    assert await owners(db, business_id) == 1
    assert audit_sink.actions() == [AuditAction.TRANSFER_OWNERSHIP]


@pytest.mark.asyncio
async def test_former_owner_cannot_demote_new_owner(authz, team):
    business_id, ids = team
    alice, bob = ids[Role.OWNER], ids[Role.ADMIN]

    await authz.transfer_ownership(alice, business_id, bob, "Retiring, Bob takes over")
    with pytest.raises(InsufficientRank):
        await authz.update_member_role(alice, business_id, bob, Role.STAFF)


@pytest.mark.asyncio
async def test_only_owner_can_transfer(authz, team):
    business_id, ids = team
    with pytest.raises(InsufficientRank):
        await authz.transfer_ownership(ids[Role.ADMIN], business_id, ids[Role.STAFF], "Please take it over")


@pytest.mark.asyncio
async def test_transfer_needs_confirmation(authz, team):
    business_id, ids = team
    with pytest.raises(TransferNotConfirmed):
        await authz.transfer_ownership(ids[Role.OWNER], business_id, ids[Role.ADMIN], "ok")


@pytest.mark.asyncio
async def test_transfer_to_self_is_denied(authz, team):
    business_id, ids = team
    owner = ids[Role.OWNER]
    with pytest.raises(SelfEscalationDenied):
        await authz.transfer_ownership(owner, business_id, owner, "Transfer to myself please")


@pytest.mark.asyncio
async def test_transfer_to_suspended_member_fails(authz, db, team):
    business_id, ids = team
    on_leave = await create_user(db, "on-leave@example.com")
    await add_membership(db, business_id, on_leave, Role.ADMIN, status=MembershipStatus.SUSPENDED)
    await db.commit()

    with pytest.raises(NotAMember):
        await authz.transfer_ownership(ids[Role.OWNER], business_id, on_leave, "You are the new owner")
    assert (await member(db, business_id, ids[Role.OWNER])).role is Role.OWNER


# =========================================================
# Bulk
# =========================================================
@pytest.mark.asyncio
async def test_bulk_demotion_itemizes_sole_owner_failure(authz, db, team):
    business_id, ids = team
    targets = [ids[Role.STAFF], ids[Role.OWNER], ids[Role.MANAGER]]

    result = await authz.bulk_update_members(
        ids[Role.ADMIN],
        business_id,
        targets,
        BulkMemberUpdate(role=Role.VIEWER),
    )

    assert result.success_count == 2
    assert result.failure_count == 1
    assert result.succeeded == [ids[Role.STAFF], ids[Role.MANAGER]]
    assert result.failed[0].user_id == ids[Role.OWNER]
    assert result.failed[0].error == LastOwnerViolation.code

    assert (await member(db, business_id, ids[Role.STAFF])).role is Role.VIEWER
    assert (await member(db, business_id, ids[Role.MANAGER])).role is Role.VIEWER
    assert await owners(db, business_id) == 1


@pytest.mark.asyncio
async def test_bulk_remove_continues_after_failures(authz, team):
    business_id, ids = team
    unknown = uuid.uuid4()
    targets = [ids[Role.VIEWER], unknown, ids[Role.OWNER]]

    result = await authz.bulk_update_members(
        ids[Role.ADMIN],
        business_id,
        targets,
        BulkMemberUpdate(remove=True),
    )

    assert result.succeeded == [ids[Role.VIEWER]]
    errors = {f.user_id: f.error for f in result.failed}
    assert errors == {unknown: NotAMember.code, ids[Role.OWNER]: LastOwnerViolation.code}


@pytest.mark.asyncio
async def test_bulk_rejects_oversized_batches(authz, team):
    business_id, ids = team
    with pytest.raises(ValueError):
        await authz.bulk_update_members(
            ids[Role.OWNER],
            business_id,
            [uuid.uuid4() for _ in range(51)],
            BulkMemberUpdate(role=Role.VIEWER),
        )


# =========================================================
# Read side
# =========================================================
@pytest.mark.asyncio
async def test_list_members_search_sort_and_paginate(authz, team):
    business_id, ids = team

    rows, total = await authz.list_members(ids[Role.MANAGER], business_id, search="adm")
    assert total == 1
    assert rows[0][1].email == "admin@example.com"

    rows, total = await authz.list_members(
        ids[Role.MANAGER], business_id, sort_by="email", sort_order="asc", limit=2, page=2
    )
    assert total == 5
    assert [u.email for _, u in rows] == ["owner@example.com", "staff@example.com"]


@pytest.mark.asyncio
async def test_viewer_cannot_list_members(authz, team):
    business_id, ids = team
    with pytest.raises(PermissionDenied):
        await authz.list_members(ids[Role.VIEWER], business_id)


@pytest.mark.asyncio
async def test_team_stats(authz, db, team):
    business_id, ids = team
    paused = await create_user(db, "paused@example.com")
    await add_membership(db, business_id, paused, Role.STAFF, status=MembershipStatus.SUSPENDED)
    await db.commit()

    stats = await authz.team_stats(ids[Role.OWNER], business_id)
    assert stats.total_members == 6
    assert stats.active_members == 5
    assert stats.suspended_members == 1
    assert stats.role_distribution["staff"] == 2
    assert stats.recent_joiners == 6
    assert stats.pending_invitations == 0
