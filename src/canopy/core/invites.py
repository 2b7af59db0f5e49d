"""Invite codes — admin-issued, limited-use tickets into a community."""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta

from canopy.auth.permissions import Permission
from canopy.core.resolver import PermissionResolver
from canopy.core.tree import CommunityTree, node_is_accessible
from canopy.events.bus import EventBus
from canopy.events.types import EventType
from canopy.models.invite import InviteCode
from canopy.models.membership import Membership, MembershipRole, MembershipStatus
from canopy.storage.base import StorageBackend

logger = logging.getLogger(__name__)

_CODE_BYTES = 12


class InviteService:
    """Creates, redeems and retires invite codes."""

    def __init__(
        self,
        store: StorageBackend,
        event_bus: EventBus,
        tree: CommunityTree,
        resolver: PermissionResolver,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._tree = tree
        self._resolver = resolver

    async def create(
        self,
        account_id: str,
        community_id: str,
        *,
        role: MembershipRole | str = MembershipRole.MEMBER,
        max_uses: int = 1,
        expires_in_hours: float | None = None,
    ) -> InviteCode:
        """Issue a new code for community_id.

        Raises:
            PermissionError: If the caller lacks invite permission on the node.
            ValueError: If max_uses or expires_in_hours is not positive.
        """
        if max_uses < 1:
            raise ValueError("max_uses must be at least 1")
        if expires_in_hours is not None and expires_in_hours <= 0:
            raise ValueError("expires_in_hours must be positive")
        if not await self._resolver.check(account_id, community_id, Permission.INVITE):
            raise PermissionError("Not authorized")

        expires_at = None
        if expires_in_hours is not None:
            expires_at = (datetime.now(UTC) + timedelta(hours=expires_in_hours)).isoformat()

        invite = InviteCode(
            code=secrets.token_urlsafe(_CODE_BYTES),
            community_id=community_id,
            created_by=account_id,
            role=MembershipRole(role),
            max_uses=max_uses,
            expires_at=expires_at,
        )
        await self._store.insert_invite(invite.to_storage())
        logger.info("Created invite %s for %s (max_uses=%d)", invite.id, community_id, max_uses)
        await self._event_bus.emit(
            EventType.INVITE_CREATED,
            {
                "invite_id": invite.id,
                "community_id": community_id,
                "created_by": account_id,
                "actor_id": account_id,
            },
        )
        return invite

    async def redeem(self, account_id: str, code: str) -> Membership:
        """Join the invite's community with the invite's role.

        Raises:
            ValueError: Unknown, inactive, expired or used-up code, inactive
                community, or a redeemer who is already a member.
        """
        data = await self._store.get_invite_by_code(code.strip())
        if not data:
            raise ValueError("Invalid invite code")
        invite = InviteCode(**data)
        if not invite.is_active:
            raise ValueError("Invite code is no longer active")
        if invite.is_expired():
            raise ValueError("Invite code has expired")
        if invite.is_exhausted():
            raise ValueError("Invite code has reached its usage limit")

        community = await self._tree.get_node(invite.community_id)
        if not node_is_accessible(community):
            raise ValueError("Community is no longer available")
        if await self._store.get_membership(account_id, invite.community_id):
            raise ValueError("Already a member of this community")

        membership = Membership(
            account_id=account_id,
            community_id=invite.community_id,
            role=invite.role,
            status=MembershipStatus.ACTIVE,
            invited_by=invite.created_by,
        )
        if not await self._store.redeem_invite(invite.id, membership.to_storage()):
            # Lost a race for the last use
            raise ValueError("Invite code has reached its usage limit")

        logger.info("Account %s redeemed invite %s", account_id, invite.id)
        await self._event_bus.emit(
            EventType.INVITE_REDEEMED,
            {
                "invite_id": invite.id,
                "account_id": account_id,
                "community_id": invite.community_id,
                "actor_id": account_id,
                "invited_by": invite.created_by,
            },
        )
        await self._event_bus.emit(
            EventType.MEMBER_JOINED,
            {
                "account_id": account_id,
                "community_id": invite.community_id,
                "role": membership.role.value,
                "status": membership.status.value,
            },
        )
        return membership

    async def deactivate(self, account_id: str, invite_id: str) -> bool:
        """Retire an invite. Requires invite permission on its community."""
        data = await self._store.get_invite(invite_id)
        if not data:
            return False
        if not await self._resolver.check(account_id, data["community_id"], Permission.INVITE):
            raise PermissionError("Not authorized")
        result = await self._store.deactivate_invite(invite_id)
        if result:
            await self._event_bus.emit(
                EventType.INVITE_DEACTIVATED,
                {
                    "invite_id": invite_id,
                    "community_id": data["community_id"],
                    "actor_id": account_id,
                },
            )
        return result

    async def list_active(self, community_id: str) -> list[InviteCode]:
        rows = await self._store.list_invites(community_id, active_only=True)
        return [InviteCode(**row) for row in rows]
