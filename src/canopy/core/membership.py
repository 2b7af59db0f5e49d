"""Membership registry — direct memberships and admin assignments."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from canopy.events.bus import EventBus
from canopy.events.types import EventType
from canopy.models.membership import (
    AdminAssignment,
    AssignmentKind,
    Membership,
    MembershipRole,
    MembershipStatus,
)
from canopy.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class MembershipRegistry:
    """Manages who belongs to which node and who administers which subtree.

    A membership grants privileges on exactly one node. An admin
    assignment on a node also covers every descendant of that node; the
    resolver applies that inheritance, this registry only records it.
    """

    def __init__(self, store: StorageBackend, event_bus: EventBus) -> None:
        self._store = store
        self._event_bus = event_bus

    # --- Memberships ---

    async def join(
        self,
        account_id: str,
        community_id: str,
        *,
        role: MembershipRole | str = MembershipRole.MEMBER,
        status: MembershipStatus | str = MembershipStatus.ACTIVE,
        invited_by: str | None = None,
    ) -> Membership:
        """Record a direct membership.

        Raises:
            ValueError: If the account already has a membership on the node,
                or the role/status value is invalid.
        """
        if await self._store.get_membership(account_id, community_id):
            raise ValueError(f"Account {account_id} is already a member of {community_id}")

        membership = Membership(
            account_id=account_id,
            community_id=community_id,
            role=MembershipRole(role),
            status=MembershipStatus(status),
            invited_by=invited_by,
        )
        await self._store.insert_membership(membership.to_storage())
        logger.info(
            "Account %s joined %s as %s (%s)",
            account_id,
            community_id,
            membership.role,
            membership.status,
        )
        await self._event_bus.emit(
            EventType.MEMBER_JOINED,
            {
                "account_id": account_id,
                "community_id": community_id,
                "role": membership.role.value,
                "status": membership.status.value,
            },
        )
        return membership

    async def leave(
        self, account_id: str, community_id: str, *, actor_id: str | None = None
    ) -> bool:
        """Remove a membership. actor_id is whoever removed it, the member by default."""
        result = await self._store.delete_membership(account_id, community_id)
        if result:
            await self._event_bus.emit(
                EventType.MEMBER_LEFT,
                {
                    "account_id": account_id,
                    "community_id": community_id,
                    "actor_id": actor_id or account_id,
                },
            )
        return result

    async def get_membership(self, account_id: str, community_id: str) -> Membership | None:
        data = await self._store.get_membership(account_id, community_id)
        if not data:
            return None
        return Membership(**data)

    async def set_role(
        self,
        account_id: str,
        community_id: str,
        role: MembershipRole | str,
        *,
        actor_id: str | None = None,
    ) -> Membership | None:
        return await self._update(
            account_id, community_id, {"role": MembershipRole(role).value}, actor_id=actor_id
        )

    async def set_status(
        self,
        account_id: str,
        community_id: str,
        status: MembershipStatus | str,
        *,
        actor_id: str | None = None,
    ) -> Membership | None:
        return await self._update(
            account_id,
            community_id,
            {
                "status": MembershipStatus(status).value,
                "responded_at": datetime.now(UTC).isoformat(),
            },
            actor_id=actor_id,
        )

    async def list_members(
        self, community_id: str, *, status: MembershipStatus | str | None = None
    ) -> list[Membership]:
        rows = await self._store.list_memberships(
            community_id=community_id,
            status=MembershipStatus(status).value if status else None,
        )
        return [Membership(**row) for row in rows]

    async def list_memberships_of(self, account_id: str) -> list[Membership]:
        rows = await self._store.list_memberships(account_id=account_id)
        return [Membership(**row) for row in rows]

    async def is_direct_member(self, account_id: str, node_id: str) -> bool:
        """True only for an active membership on exactly this node."""
        membership = await self.get_membership(account_id, node_id)
        return membership is not None and membership.is_active

    async def is_ancestor_member(self, account_id: str, ancestor_id: str) -> bool:
        return await self.is_direct_member(account_id, ancestor_id)

    async def is_node_admin_member(self, account_id: str, node_id: str) -> bool:
        """Active membership with the admin role. A label only; grants no resolver rights."""
        membership = await self.get_membership(account_id, node_id)
        return (
            membership is not None
            and membership.is_active
            and membership.role == MembershipRole.ADMIN
        )

    # --- Admin assignments ---

    async def assign_admin(
        self,
        account_id: str,
        community_id: str,
        kind: AssignmentKind | str,
        *,
        assigned_by: str,
        permissions: dict | None = None,
    ) -> AdminAssignment:
        """Record an admin assignment on a node (covering its subtree).

        Raises:
            ValueError: If the same assignment already exists.
        """
        assignment = AdminAssignment(
            account_id=account_id,
            community_id=community_id,
            kind=AssignmentKind(kind),
            assigned_by=assigned_by,
            permissions=permissions or {},
        )
        await self._store.insert_assignment(assignment.to_storage())
        logger.info(
            "Assigned %s on %s to %s (by %s)",
            assignment.kind,
            community_id,
            account_id,
            assigned_by,
        )
        await self._event_bus.emit(
            EventType.ADMIN_ASSIGNED,
            {
                "account_id": account_id,
                "community_id": community_id,
                "kind": assignment.kind.value,
                "assigned_by": assigned_by,
                "actor_id": assigned_by,
            },
        )
        return assignment

    async def remove_admin(
        self,
        account_id: str,
        community_id: str,
        kind: AssignmentKind | str,
        *,
        actor_id: str | None = None,
    ) -> bool:
        kind = AssignmentKind(kind)
        result = await self._store.delete_assignment(account_id, community_id, kind.value)
        if result:
            await self._event_bus.emit(
                EventType.ADMIN_REMOVED,
                {
                    "account_id": account_id,
                    "community_id": community_id,
                    "kind": kind.value,
                    "actor_id": actor_id,
                },
            )
        return result

    async def list_admins(self, community_id: str) -> list[AdminAssignment]:
        rows = await self._store.list_assignments(community_id=community_id)
        return [AdminAssignment(**row) for row in rows]

    async def list_assignments(self, account_id: str) -> list[AdminAssignment]:
        rows = await self._store.list_assignments(account_id=account_id)
        return [AdminAssignment(**row) for row in rows]

    async def has_assignment(
        self,
        account_id: str,
        node_ids: Iterable[str],
        kinds: Iterable[AssignmentKind],
    ) -> AdminAssignment | None:
        """An assignment of the account on any of the nodes, of any of the kinds."""
        node_list = list(dict.fromkeys(node_ids))
        kind_list = sorted(kind.value for kind in kinds)
        data = await self._store.find_assignment(account_id, node_list, kind_list)
        if not data:
            return None
        return AdminAssignment(**data)

    async def _update(
        self,
        account_id: str,
        community_id: str,
        updates: dict,
        *,
        actor_id: str | None = None,
    ) -> Membership | None:
        data = await self._store.update_membership(account_id, community_id, updates)
        if not data:
            return None
        await self._event_bus.emit(
            EventType.MEMBER_UPDATED,
            {
                "account_id": account_id,
                "community_id": community_id,
                "actor_id": actor_id,
                **updates,
            },
        )
        return Membership(**data)
