"""Tests for the membership registry and account directory."""

from __future__ import annotations

import pytest

from canopy.core.accounts import AccountDirectory
from canopy.core.membership import MembershipRegistry
from canopy.core.tree import CommunityTree
from canopy.events.bus import EventBus
from canopy.events.types import EventType
from canopy.models.account import GlobalRole
from canopy.models.membership import AssignmentKind, MembershipRole, MembershipStatus
from canopy.storage.sqlite_store import SQLiteStore


@pytest.fixture
async def seeded(accounts: AccountDirectory, tree: CommunityTree) -> None:
    await accounts.create_account("alice")
    await accounts.create_account("bob", role="community_admin")
    await tree.create_community(name="Root", node_id="root")
    await tree.create_community(name="Team", parent_id="root", node_id="team")


# --- Accounts ---


async def test_create_and_get_account(accounts: AccountDirectory):
    created = await accounts.create_account("carol", role="superadmin", email="c@example.com")
    assert created.role == GlobalRole.SUPER_ADMIN
    fetched = await accounts.get_account("carol")
    assert fetched is not None
    assert fetched.role == GlobalRole.SUPER_ADMIN
    assert fetched.email == "c@example.com"


async def test_get_account_with_unknown_stored_role(accounts: AccountDirectory, store: SQLiteStore):
    await accounts.create_account("dave")
    await store.update_account("dave", {"role": "wizard"})
    fetched = await accounts.get_account("dave")
    assert fetched.role == GlobalRole.USER


async def test_create_account_empty_id(accounts: AccountDirectory):
    with pytest.raises(ValueError, match="empty"):
        await accounts.create_account(" ")


async def test_set_role_and_deactivate(accounts: AccountDirectory):
    await accounts.create_account("erin")
    promoted = await accounts.set_role("erin", GlobalRole.DEVELOPER)
    assert promoted.role == GlobalRole.DEVELOPER
    disabled = await accounts.set_active("erin", False)
    assert disabled.is_active is False
    assert await accounts.set_role("ghost", GlobalRole.USER) is None


async def test_list_accounts(accounts: AccountDirectory):
    await accounts.create_account("a1")
    await accounts.create_account("a2", role="dev")
    listed = await accounts.list_accounts()
    assert [a.id for a in listed] == ["a1", "a2"]
    assert listed[1].role == GlobalRole.DEVELOPER


# --- Memberships ---


async def test_join_and_direct_membership(registry: MembershipRegistry, seeded):
    membership = await registry.join("alice", "team")
    assert membership.status == MembershipStatus.ACTIVE
    assert await registry.is_direct_member("alice", "team")
    assert not await registry.is_direct_member("alice", "root")
    assert await registry.is_ancestor_member("alice", "team")


async def test_join_twice(registry: MembershipRegistry, seeded):
    await registry.join("alice", "team")
    with pytest.raises(ValueError, match="already a member"):
        await registry.join("alice", "team")


async def test_pending_and_banned_are_not_members(registry: MembershipRegistry, seeded):
    await registry.join("alice", "team", status=MembershipStatus.PENDING)
    assert not await registry.is_direct_member("alice", "team")

    approved = await registry.set_status("alice", "team", MembershipStatus.ACTIVE)
    assert approved.responded_at is not None
    assert await registry.is_direct_member("alice", "team")

    await registry.set_status("alice", "team", "banned")
    assert not await registry.is_direct_member("alice", "team")


async def test_leave(registry: MembershipRegistry, seeded):
    await registry.join("alice", "team")
    assert await registry.leave("alice", "team") is True
    assert await registry.leave("alice", "team") is False
    assert not await registry.is_direct_member("alice", "team")


async def test_admin_membership_role_is_a_label(registry: MembershipRegistry, seeded):
    await registry.join("alice", "team", role=MembershipRole.ADMIN)
    assert await registry.is_node_admin_member("alice", "team")
    await registry.set_role("alice", "team", "member")
    assert not await registry.is_node_admin_member("alice", "team")


async def test_invalid_status(registry: MembershipRegistry, seeded):
    with pytest.raises(ValueError):
        await registry.join("alice", "team", status="lurking")


async def test_list_members(registry: MembershipRegistry, seeded):
    await registry.join("alice", "team")
    await registry.join("bob", "team", status="pending")
    everyone = await registry.list_members("team")
    assert {m.account_id for m in everyone} == {"alice", "bob"}
    pending = await registry.list_members("team", status="pending")
    assert [m.account_id for m in pending] == ["bob"]
    mine = await registry.list_memberships_of("alice")
    assert [m.community_id for m in mine] == ["team"]


async def test_membership_events(store: SQLiteStore, seeded):
    bus = EventBus()
    seen = []

    async def _listener(event_type, data):
        seen.append(event_type)

    bus.subscribe(_listener)
    registry = MembershipRegistry(store, bus)
    await registry.join("alice", "team")
    await registry.set_role("alice", "team", "admin")
    await registry.leave("alice", "team")
    assert seen == [EventType.MEMBER_JOINED, EventType.MEMBER_UPDATED, EventType.MEMBER_LEFT]


# --- Admin assignments ---


async def test_assign_and_find(registry: MembershipRegistry, seeded):
    await registry.assign_admin("bob", "root", AssignmentKind.COMMUNITY_ADMIN, assigned_by="ops")

    found = await registry.has_assignment(
        "bob", ["team", "root"], {AssignmentKind.COMMUNITY_ADMIN}
    )
    assert found is not None
    assert found.community_id == "root"
    assert await registry.has_assignment("bob", ["team"], {AssignmentKind.COMMUNITY_ADMIN}) is None
    assert (
        await registry.has_assignment("bob", ["root"], {AssignmentKind.SUB_COMMUNITY_ADMIN})
        is None
    )


async def test_duplicate_assignment(registry: MembershipRegistry, seeded):
    await registry.assign_admin("bob", "root", "community_admin", assigned_by="ops")
    with pytest.raises(ValueError):
        await registry.assign_admin("bob", "root", "community_admin", assigned_by="ops")


async def test_remove_and_list_admins(registry: MembershipRegistry, seeded):
    await registry.assign_admin(
        "bob", "team", "sub_community_admin", assigned_by="ops", permissions={"invite": True}
    )
    admins = await registry.list_admins("team")
    assert [a.account_id for a in admins] == ["bob"]
    assert admins[0].permissions == {"invite": True}
    assert [a.community_id for a in await registry.list_assignments("bob")] == ["team"]

    assert await registry.remove_admin("bob", "team", "sub_community_admin") is True
    assert await registry.remove_admin("bob", "team", "sub_community_admin") is False
    assert await registry.list_admins("team") == []
