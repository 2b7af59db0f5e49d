"""Permission resolver — answers "may this account do X on this node?".

Rules are evaluated in a fixed order and the first match wins:

1. global bypass (developer, super_admin)
2. an eligible admin assignment on the node itself
3. an eligible admin assignment on any ancestor
4. tier rules for read and write, based on direct memberships
5. deny

Admin assignments only count when the account's global role is eligible
for the assignment kind, so demoting an account disables its assignments
without deleting them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from canopy.auth.permissions import Permission, parse_permission, requires_admin
from canopy.core.accounts import AccountDirectory
from canopy.core.membership import MembershipRegistry
from canopy.core.roles import PrivilegeTier, classify, eligible_kinds
from canopy.core.tree import CommunityTree, ancestors_of, node_is_accessible
from canopy.models.community import CommunityNode

logger = logging.getLogger(__name__)


class AccessRule(StrEnum):
    GLOBAL_BYPASS = "global_bypass"
    NODE_ADMIN = "node_admin"
    ANCESTOR_ADMIN = "ancestor_admin"
    PUBLIC = "public"
    DIRECT_MEMBER = "direct_member"
    PARENT_MEMBER_LIMITED = "parent_member_limited"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    rule: AccessRule | None = None

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def limited(self) -> bool:
        """Read granted through the parent's membership; callers may redact."""
        return self.rule == AccessRule.PARENT_MEMBER_LIMITED

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "allowed": self.allowed,
            "rule": self.rule.value if self.rule else None,
        }


DENY = Decision(allowed=False)


def _allow(rule: AccessRule) -> Decision:
    return Decision(allowed=True, rule=rule)


class PermissionResolver:
    """Stateless between calls; every decision reads current store state."""

    def __init__(
        self,
        accounts: AccountDirectory,
        tree: CommunityTree,
        registry: MembershipRegistry,
    ) -> None:
        self._accounts = accounts
        self._tree = tree
        self._registry = registry

    async def resolve(
        self,
        account_id: str,
        node_id: str,
        permission: Permission | str,
        *,
        include_inactive: bool = False,
    ) -> Decision:
        """Decide one access request.

        Missing accounts or nodes and inactive accounts are denials, never
        errors. StoreUnavailableError from the store propagates so callers
        can tell "denied" from "could not decide".

        A soft-deleted node is denied to everyone but bypass accounts unless
        ``include_inactive`` is set, in which case it is evaluated as if it
        were active (restore uses this).

        Raises:
            ValueError: If permission is not a known tier.
        """
        permission = parse_permission(permission)

        account = await self._accounts.get_account(account_id)
        if account is None or not account.is_active:
            logger.debug("Denied %s: account unavailable", permission)
            return DENY

        node = await self._tree.get_node(node_id, include_inactive=True)
        if node is None:
            logger.debug("Denied %s for %s: community unavailable", permission, account_id)
            return DENY

        tier = classify(account)
        if tier == PrivilegeTier.BYPASS_ALL:
            return _allow(AccessRule.GLOBAL_BYPASS)

        if not include_inactive and not node_is_accessible(node):
            logger.debug("Denied %s for %s: community unavailable", permission, account_id)
            return DENY

        ancestors = ancestors_of(node)
        kinds = eligible_kinds(tier)
        if kinds:
            if await self._registry.has_assignment(account_id, [node.id], kinds):
                return _allow(AccessRule.NODE_ADMIN)
            if ancestors and await self._registry.has_assignment(account_id, ancestors, kinds):
                return _allow(AccessRule.ANCESTOR_ADMIN)

        if requires_admin(permission):
            logger.debug("Denied %s for %s", permission, account_id)
            return DENY

        decision = DENY
        if permission == Permission.READ:
            decision = await self._resolve_read(account_id, node, ancestors)
        elif permission == Permission.WRITE:
            if await self._registry.is_direct_member(account_id, node.id):
                decision = _allow(AccessRule.DIRECT_MEMBER)

        if not decision.allowed:
            logger.debug("Denied %s for %s", permission, account_id)
        return decision

    async def check(self, account_id: str, node_id: str, permission: Permission | str) -> bool:
        decision = await self.resolve(account_id, node_id, permission)
        return decision.allowed

    resolve_bool = check

    async def _resolve_read(
        self, account_id: str, node: CommunityNode, ancestors: list[str]
    ) -> Decision:
        if await self._registry.is_direct_member(account_id, node.id):
            return _allow(AccessRule.DIRECT_MEMBER)
        if not node.is_public:
            return DENY

        # A faulty path on a non-root node leaves no ancestors to inspect.
        if node.parent_id is not None and not ancestors:
            return DENY

        if await self._chain_is_public(ancestors):
            return _allow(AccessRule.PUBLIC)
        if await self._registry.is_ancestor_member(account_id, ancestors[-1]):
            return _allow(AccessRule.PARENT_MEMBER_LIMITED)
        return DENY

    async def _chain_is_public(self, ancestor_ids: list[str]) -> bool:
        for ancestor_id in ancestor_ids:
            ancestor = await self._tree.get_node(ancestor_id, include_inactive=True)
            if ancestor is None or not ancestor.is_public:
                return False
        return True
