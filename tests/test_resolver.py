"""Tests for the permission resolver."""

from __future__ import annotations

import asyncio

import pytest

from canopy.auth.permissions import Permission
from canopy.core.accounts import AccountDirectory
from canopy.core.membership import MembershipRegistry
from canopy.core.resolver import AccessRule, Decision, PermissionResolver
from canopy.core.tree import CommunityTree
from canopy.models.account import GlobalRole
from canopy.models.membership import AssignmentKind, MembershipStatus
from canopy.storage.base import StoreUnavailableError
from canopy.storage.sqlite_store import SQLiteStore

ALL_PERMISSIONS = list(Permission)
NODES = ["root", "team-private", "sub-project"]


@pytest.fixture
async def world(
    accounts: AccountDirectory, tree: CommunityTree, registry: MembershipRegistry
) -> None:
    """root (public) > team-private (private) > sub-project (public)."""
    await tree.create_community(name="Root", node_id="root")
    await tree.create_community(
        name="Team Private", parent_id="root", is_public=False, node_id="team-private"
    )
    await tree.create_community(name="Sub Project", parent_id="team-private", node_id="sub-project")

    await accounts.create_account("rita")
    await accounts.create_account("tess")
    await accounts.create_account("uma")
    await accounts.create_account("dora", role=GlobalRole.DEVELOPER)
    await accounts.create_account("sam", role=GlobalRole.SUPER_ADMIN)
    await accounts.create_account("cam", role=GlobalRole.COMMUNITY_ADMIN)
    await accounts.create_account("sid", role=GlobalRole.SUB_COMMUNITY_ADMIN)

    await registry.join("rita", "root")
    await registry.join("tess", "team-private")
    await registry.assign_admin("cam", "root", AssignmentKind.COMMUNITY_ADMIN, assigned_by="sam")
    await registry.assign_admin(
        "sid", "team-private", AssignmentKind.SUB_COMMUNITY_ADMIN, assigned_by="cam"
    )


# --- Scenario ---


async def test_root_member_scenario(resolver: PermissionResolver, world):
    assert await resolver.check("rita", "root", "read")
    assert await resolver.check("rita", "root", "write")
    assert not await resolver.check("rita", "team-private", "read")
    assert not await resolver.check("rita", "sub-project", "read")
    assert not await resolver.check("rita", "team-private", "write")


async def test_parent_member_reads_public_child(resolver: PermissionResolver, world):
    decision = await resolver.resolve("tess", "sub-project", Permission.READ)
    assert decision.allowed
    assert decision.rule == AccessRule.PARENT_MEMBER_LIMITED
    assert decision.limited
    assert not await resolver.check("tess", "sub-project", "write")


# --- Global bypass ---


@pytest.mark.parametrize("account_id", ["dora", "sam"])
@pytest.mark.parametrize("node_id", NODES)
@pytest.mark.parametrize("permission", ALL_PERMISSIONS)
async def test_bypass_universality(
    resolver: PermissionResolver, world, account_id, node_id, permission
):
    decision = await resolver.resolve(account_id, node_id, permission)
    assert decision == Decision(allowed=True, rule=AccessRule.GLOBAL_BYPASS)


async def test_bypass_sees_inactive_node(
    resolver: PermissionResolver, tree: CommunityTree, world
):
    await tree.deactivate("team-private")
    assert await resolver.check("sam", "team-private", "admin")
    assert not await resolver.check("tess", "team-private", "read")
    assert not await resolver.check("cam", "team-private", "admin")


@pytest.mark.parametrize("account_id", ["dora", "sam"])
async def test_bypass_unknown_node_denied(resolver: PermissionResolver, world, account_id):
    for permission in ALL_PERMISSIONS:
        assert await resolver.resolve(account_id, "nowhere", permission) == Decision(
            allowed=False
        )


async def test_inactive_node_evaluated_on_request(
    resolver: PermissionResolver, tree: CommunityTree, world
):
    await tree.deactivate("team-private")
    cam = await resolver.resolve("cam", "team-private", "admin", include_inactive=True)
    sid = await resolver.resolve("sid", "team-private", "admin", include_inactive=True)
    assert cam.rule == AccessRule.ANCESTOR_ADMIN
    assert sid.rule == AccessRule.NODE_ADMIN
    assert not await resolver.check("rita", "team-private", "admin")
    assert not (
        await resolver.resolve("rita", "team-private", "admin", include_inactive=True)
    ).allowed
    assert not await resolver.check("sid", "team-private", "admin")


# --- Admin assignments ---


@pytest.mark.parametrize("permission", ALL_PERMISSIONS)
async def test_inheritance_monotonicity(resolver: PermissionResolver, world, permission):
    on_root = await resolver.resolve("cam", "root", permission)
    assert on_root.rule == AccessRule.NODE_ADMIN
    for node_id in ("team-private", "sub-project"):
        below = await resolver.resolve("cam", node_id, permission)
        assert below.allowed
        assert below.rule == AccessRule.ANCESTOR_ADMIN


async def test_sub_community_admin_scope(resolver: PermissionResolver, world):
    assert (await resolver.resolve("sid", "team-private", "moderate")).rule == AccessRule.NODE_ADMIN
    assert (await resolver.resolve("sid", "sub-project", "admin")).rule == AccessRule.ANCESTOR_ADMIN
    assert not await resolver.check("sid", "root", "admin")
    assert await resolver.check("sid", "root", "read")


async def test_node_admin_wins_over_membership(
    resolver: PermissionResolver, registry: MembershipRegistry, world
):
    await registry.join("cam", "root")
    decision = await resolver.resolve("cam", "root", "read")
    assert decision.rule == AccessRule.NODE_ADMIN


async def test_node_admin_wins_over_ancestor_admin(
    resolver: PermissionResolver, registry: MembershipRegistry, world
):
    await registry.assign_admin("cam", "sub-project", "sub_community_admin", assigned_by="sam")
    decision = await resolver.resolve("cam", "sub-project", "admin")
    assert decision.rule == AccessRule.NODE_ADMIN


async def test_ineligible_assignment_kind_ignored(
    resolver: PermissionResolver, registry: MembershipRegistry, world
):
    await registry.assign_admin("sid", "root", AssignmentKind.COMMUNITY_ADMIN, assigned_by="sam")
    assert not await resolver.check("sid", "root", "admin")


async def test_ordinary_account_assignment_ignored(
    resolver: PermissionResolver, registry: MembershipRegistry, world
):
    await registry.assign_admin("uma", "root", AssignmentKind.SUB_COMMUNITY_ADMIN, assigned_by="x")
    assert not await resolver.check("uma", "root", "moderate")


async def test_demotion_disables_assignments(
    resolver: PermissionResolver, accounts: AccountDirectory, world
):
    await accounts.set_role("cam", GlobalRole.USER)
    assert not await resolver.check("cam", "root", "admin")
    await accounts.set_role("cam", GlobalRole.COMMUNITY_ADMIN)
    assert await resolver.check("cam", "root", "admin")


# --- Tier rules ---


async def test_write_non_leakage(resolver: PermissionResolver, registry: MembershipRegistry, world):
    await registry.join("uma", "team-private")
    assert await resolver.check("uma", "team-private", "write")
    assert not await resolver.check("uma", "sub-project", "write")
    assert not await resolver.check("uma", "root", "write")


async def test_read_leakage_does_not_skip_generations(
    resolver: PermissionResolver, tree: CommunityTree, world
):
    await tree.create_community(name="Deep", parent_id="sub-project", node_id="deep")
    assert await resolver.check("tess", "sub-project", "read")
    assert not await resolver.check("tess", "deep", "read")


async def test_private_child_blocks_parent_members(
    resolver: PermissionResolver, tree: CommunityTree, world
):
    await tree.create_community(
        name="Secret", parent_id="team-private", is_public=False, node_id="secret"
    )
    assert not await resolver.check("tess", "secret", "read")


async def test_public_chain_readable_by_anyone(
    resolver: PermissionResolver, tree: CommunityTree, world
):
    await tree.create_community(name="Open", parent_id="root", node_id="open")
    decision = await resolver.resolve("uma", "open", "read")
    assert decision.rule == AccessRule.PUBLIC
    assert not decision.limited
    assert (await resolver.resolve("uma", "root", "read")).rule == AccessRule.PUBLIC
    assert not await resolver.check("uma", "open", "write")


async def test_private_root_denies_outsiders(
    resolver: PermissionResolver, tree: CommunityTree, world
):
    await tree.create_community(name="Closed", is_public=False, node_id="closed")
    assert not await resolver.check("uma", "closed", "read")


@pytest.mark.parametrize("permission", ["moderate", "admin", "invite"])
async def test_members_never_get_admin_tiers(resolver: PermissionResolver, world, permission):
    assert not await resolver.check("rita", "root", permission)
    assert not await resolver.check("tess", "team-private", permission)


@pytest.mark.parametrize("status", [MembershipStatus.PENDING, MembershipStatus.BANNED])
async def test_inactive_membership_grants_nothing(
    resolver: PermissionResolver, registry: MembershipRegistry, world, status
):
    await registry.join("uma", "team-private", status=status)
    assert not await resolver.check("uma", "team-private", "read")
    assert not await resolver.check("uma", "sub-project", "read")


# --- Deny by default ---


@pytest.mark.parametrize("node_id", NODES)
@pytest.mark.parametrize("permission", ["write", "moderate", "admin", "invite"])
async def test_deny_by_default(resolver: PermissionResolver, world, node_id, permission):
    assert await resolver.resolve("uma", node_id, permission) == Decision(allowed=False)


async def test_unknown_account_and_node(resolver: PermissionResolver, world):
    assert not await resolver.check("ghost", "root", "read")
    assert not await resolver.check("rita", "ghost", "read")


async def test_inactive_account(resolver: PermissionResolver, accounts: AccountDirectory, world):
    await accounts.set_active("sam", False)
    assert not await resolver.check("sam", "root", "read")


async def test_invalid_permission(resolver: PermissionResolver, world):
    with pytest.raises(ValueError, match="Invalid permission"):
        await resolver.resolve("rita", "root", "delete")


# --- Path faults and reparenting ---


async def test_path_fault_blocks_inheritance(
    resolver: PermissionResolver, store: SQLiteStore, world
):
    await store.db.execute("UPDATE communities SET path = NULL WHERE id = 'sub-project'")
    await store.db.commit()

    assert not await resolver.check("cam", "sub-project", "admin")
    assert not await resolver.check("tess", "sub-project", "read")
    assert await resolver.check("sam", "sub-project", "admin")


async def test_path_fault_blocks_public_chain(
    resolver: PermissionResolver, tree: CommunityTree, store: SQLiteStore, world
):
    await tree.create_community(name="Open", parent_id="root", node_id="open")
    await store.db.execute("UPDATE communities SET path = 'elsewhere/open' WHERE id = 'open'")
    await store.db.commit()
    assert not await resolver.check("uma", "open", "read")


async def test_legacy_slash_wrapped_path(
    resolver: PermissionResolver, store: SQLiteStore, world
):
    await store.db.execute(
        "UPDATE communities SET path = '/root/team-private/sub-project/' WHERE id = 'sub-project'"
    )
    await store.db.commit()
    assert (await resolver.resolve("cam", "sub-project", "admin")).rule == AccessRule.ANCESTOR_ADMIN


async def test_reparent_moves_access(resolver: PermissionResolver, tree: CommunityTree, world):
    assert await resolver.check("sid", "sub-project", "admin")
    assert not await resolver.check("rita", "sub-project", "read")

    await tree.reparent("sub-project", "root")

    assert not await resolver.check("sid", "sub-project", "admin")
    assert (await resolver.resolve("rita", "sub-project", "read")).rule == AccessRule.PUBLIC
    assert await resolver.check("cam", "sub-project", "admin")


async def test_decisions_during_reparent_match_old_or_new_tree(
    resolver: PermissionResolver, tree: CommunityTree, world
):
    await tree.create_community(name="Other", node_id="other")

    def _checks():
        return [resolver.resolve("cam", "sub-project", "admin") for _ in range(5)]

    results = await asyncio.gather(
        *_checks(), tree.reparent("team-private", "other"), *_checks()
    )

    decisions = [r for r in results if isinstance(r, Decision)]
    assert len(decisions) == 10
    assert all(d.rule in (AccessRule.ANCESTOR_ADMIN, None) for d in decisions)
    assert await tree.get_ancestor_ids("sub-project") == ["other", "team-private"]
    assert not await resolver.check("cam", "sub-project", "admin")
    assert await resolver.check("sid", "sub-project", "admin")


# --- Failures ---


async def test_store_unavailable_propagates(
    resolver: PermissionResolver, store: SQLiteStore, world, monkeypatch
):
    async def _unavailable(*args, **kwargs):
        raise StoreUnavailableError("read failed: database is locked")

    monkeypatch.setattr(store, "get_community", _unavailable)
    with pytest.raises(StoreUnavailableError):
        await resolver.resolve("rita", "root", "read")


def test_decision_truthiness():
    assert Decision(allowed=True, rule=AccessRule.PUBLIC)
    assert not Decision(allowed=False)
    assert Decision(allowed=True, rule=AccessRule.PUBLIC).to_response() == {
        "_v": "1.0",
        "allowed": True,
        "rule": "public",
    }
