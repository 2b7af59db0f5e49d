"""Abstract storage interface for Canopy."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot answer (locked, closed, I/O failure).

    Distinct from "not found": callers may retry instead of treating the
    lookup as a denial.
    """


class StorageBackend(ABC):
    """Abstract interface for Canopy storage backends."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize database schema and connections."""

    @abstractmethod
    async def close(self) -> None:
        """Close all connections."""

    # --- Account operations ---

    @abstractmethod
    async def insert_account(self, account: dict[str, Any]) -> dict[str, Any]:
        """Insert an account. Returns the inserted account."""

    @abstractmethod
    async def get_account(self, account_id: str) -> dict[str, Any] | None:
        """Get an account by ID. Role is returned as the raw stored string."""

    @abstractmethod
    async def update_account(
        self, account_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Update an account. Returns updated account or None."""

    @abstractmethod
    async def list_accounts(self) -> list[dict[str, Any]]:
        """List all accounts."""

    # --- Community tree operations ---

    @abstractmethod
    async def insert_community(self, community: dict[str, Any]) -> dict[str, Any]:
        """Insert a community node. Returns the inserted node.

        ``path`` and ``level`` are derived from the parent chain inside the
        insert transaction; supplied values are ignored. Raises ValueError
        when the parent is missing or inactive.
        """

    @abstractmethod
    async def get_community(
        self, community_id: str, *, include_inactive: bool = False
    ) -> dict[str, Any] | None:
        """Get a node by ID. Inactive nodes are hidden unless include_inactive."""

    @abstractmethod
    async def get_community_by_slug(self, slug: str) -> dict[str, Any] | None:
        """Get a node by slug, active or not."""

    @abstractmethod
    async def update_community(
        self, community_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Update descriptive fields of a node. Path fields go through reparent_subtree."""

    @abstractmethod
    async def set_community_active(self, community_id: str, active: bool) -> bool:
        """Soft-delete or restore a node. Returns True if the flag changed."""

    @abstractmethod
    async def list_communities(
        self,
        *,
        parent_id: str | None = None,
        roots_only: bool = False,
        include_inactive: bool = False,
    ) -> list[dict[str, Any]]:
        """List nodes, optionally the children of one parent or only roots."""

    @abstractmethod
    async def get_subtree(self, community_id: str) -> list[dict[str, Any]]:
        """The node and every descendant reachable by parent pointers, inactive included."""

    @abstractmethod
    async def reparent_subtree(
        self, community_id: str, new_parent_id: str | None
    ) -> dict[str, Any]:
        """Move a node under a new parent (or to the root) and rewrite its subtree.

        The lookup, the cycle check, the parent check and the path rewrite
        run in one write transaction. Returns ``old_parent_id`` and the
        list of ``updates`` written (``id``, ``parent_id``, ``path``,
        ``level``).

        Raises:
            ValueError: Unknown node, a new parent inside the moved subtree,
                or a missing or inactive new parent.
        """

    @abstractmethod
    async def rebuild_paths(
        self, plan: Callable[[list[dict[str, Any]]], list[dict[str, Any]]]
    ) -> int:
        """Recompute stored paths in one transaction.

        ``plan`` receives every community row (``id``, ``parent_id``,
        ``path``, ``level``) and returns ``{"id", "path", "level"}`` updates.
        Either every update is written or none is. Returns rows written.
        """

    # --- Membership operations ---

    @abstractmethod
    async def insert_membership(self, membership: dict[str, Any]) -> dict[str, Any]:
        """Insert a membership. Duplicate (account, community) raises ValueError."""

    @abstractmethod
    async def get_membership(self, account_id: str, community_id: str) -> dict[str, Any] | None:
        """Get the membership of an account in one node."""

    @abstractmethod
    async def update_membership(
        self, account_id: str, community_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Update role/status of a membership."""

    @abstractmethod
    async def delete_membership(self, account_id: str, community_id: str) -> bool:
        """Remove a membership. Returns True if found."""

    @abstractmethod
    async def list_memberships(
        self,
        *,
        community_id: str | None = None,
        account_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List memberships by node, account or status."""

    # --- Admin assignment operations ---

    @abstractmethod
    async def insert_assignment(self, assignment: dict[str, Any]) -> dict[str, Any]:
        """Insert an admin assignment. Duplicate raises ValueError."""

    @abstractmethod
    async def delete_assignment(self, account_id: str, community_id: str, kind: str) -> bool:
        """Remove an admin assignment. Returns True if found."""

    @abstractmethod
    async def list_assignments(
        self, *, account_id: str | None = None, community_id: str | None = None
    ) -> list[dict[str, Any]]:
        """List admin assignments by account or node."""

    @abstractmethod
    async def find_assignment(
        self, account_id: str, community_ids: list[str], kinds: list[str]
    ) -> dict[str, Any] | None:
        """First assignment of the account on any of the nodes with any of the kinds."""

    # --- Invite operations ---

    @abstractmethod
    async def insert_invite(self, invite: dict[str, Any]) -> dict[str, Any]:
        """Insert an invite code."""

    @abstractmethod
    async def get_invite(self, invite_id: str) -> dict[str, Any] | None:
        """Get an invite by ID."""

    @abstractmethod
    async def get_invite_by_code(self, code: str) -> dict[str, Any] | None:
        """Get an invite by its code."""

    @abstractmethod
    async def list_invites(
        self, community_id: str, *, active_only: bool = True
    ) -> list[dict[str, Any]]:
        """List invites of a node; active_only also hides expired codes."""

    @abstractmethod
    async def deactivate_invite(self, invite_id: str) -> bool:
        """Deactivate an invite. Returns True if it was active."""

    @abstractmethod
    async def redeem_invite(self, invite_id: str, membership: dict[str, Any]) -> bool:
        """Consume one use and insert the membership atomically.

        Returns False when the invite has no uses left or is inactive.
        """

    # --- Audit log ---

    @abstractmethod
    async def insert_audit_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        """Append one audit entry."""

    @abstractmethod
    async def list_audit_entries(
        self, *, community_id: str | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Most recent audit entries first, optionally for one community."""

    # --- Stats ---

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
