"""Community tree — nodes, materialized ancestor paths, reparenting."""

from __future__ import annotations

import logging
import re
from collections import defaultdict, deque
from datetime import UTC, datetime
from typing import Any

from canopy.events.bus import EventBus
from canopy.events.types import EventType
from canopy.models.community import PATH_SEPARATOR, CommunityNode
from canopy.storage.base import StorageBackend

logger = logging.getLogger(__name__)

_MAX_DEPTH = 64


def parse_path(path: str | None) -> list[str]:
    """Split a stored path into ids, root first.

    Empty segments are dropped so the legacy ``/root/child/`` form parses
    the same as ``root/child``.
    """
    if not path:
        return []
    return [segment for segment in path.split(PATH_SEPARATOR) if segment]


def build_path(parent_path: str | None, node_id: str) -> str:
    return PATH_SEPARATOR.join([*parse_path(parent_path), node_id])


def ancestors_of(node: CommunityNode) -> list[str]:
    """Ancestor ids of a node (root first, self excluded) read from its path.

    A missing or inconsistent path is an integrity fault and yields ``[]``.
    """
    segments = parse_path(node.path)
    fault: str | None = None

    if not segments:
        fault = "missing path"
    elif segments[-1] != node.id:
        fault = "path does not end with node id"
    elif len(set(segments)) != len(segments):
        fault = "duplicate ids in path"
    elif node.parent_id is None and len(segments) > 1:
        fault = "root node with ancestors"
    elif node.parent_id is not None and (len(segments) < 2 or segments[-2] != node.parent_id):
        fault = "path disagrees with parent_id"

    if fault:
        logger.warning("Path integrity fault on community %s: %s", node.id, fault)
        return []
    return segments[:-1]


def node_is_accessible(node: CommunityNode | None) -> bool:
    """A node is reachable when it exists and is not soft-deleted.

    Only the node's own flag is consulted; an inactive ancestor does not
    hide its descendants.
    """
    return node is not None and node.is_active


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "community"


class CommunityTree:
    """Community hierarchy operations over the storage backend."""

    def __init__(self, store: StorageBackend, event_bus: EventBus) -> None:
        self.store = store
        self.bus = event_bus

    async def create_community(
        self,
        *,
        name: str,
        parent_id: str | None = None,
        is_public: bool = True,
        description: str | None = None,
        slug: str | None = None,
        created_by: str | None = None,
        node_id: str | None = None,
    ) -> CommunityNode:
        """Create a node under parent_id (or as a root).

        The store derives path and level from the parent chain as it
        inserts, so the new node always sees its parent's current chain.

        Raises:
            ValueError: Empty name, missing or inactive parent, or a slug
                already in use.
        """
        if not name or not name.strip():
            raise ValueError("Community name cannot be empty")

        fields: dict[str, Any] = {
            "name": name.strip(),
            "slug": "",
            "description": description,
            "parent_id": parent_id or None,
            "is_public": is_public,
            "created_by": created_by,
        }
        if node_id:
            fields["id"] = node_id
        node = CommunityNode(**fields)

        node.slug = await self._unique_slug(
            slug or slugify(node.name), node.id, explicit=bool(slug)
        )
        stored = await self.store.insert_community(node.to_storage())
        node.path = stored["path"]
        node.level = stored["level"]

        logger.info("Created community %s (id=%s, parent=%s)", node.name, node.id, node.parent_id)
        await self.bus.emit(
            EventType.COMMUNITY_CREATED,
            {
                "community_id": node.id,
                "parent_id": node.parent_id,
                "name": node.name,
                "actor_id": created_by,
            },
        )
        return node

    async def get_node(
        self, node_id: str, *, include_inactive: bool = False
    ) -> CommunityNode | None:
        """Look up a node. Inactive nodes read as not found unless asked for."""
        data = await self.store.get_community(node_id, include_inactive=include_inactive)
        if not data:
            return None
        return CommunityNode(**data)

    async def get_ancestor_ids(self, node_id: str) -> list[str]:
        """Ancestor ids root-first, excluding the node itself."""
        node = await self.get_node(node_id, include_inactive=True)
        if not node:
            return []
        return ancestors_of(node)

    async def list_children(
        self, node_id: str, *, include_inactive: bool = False
    ) -> list[CommunityNode]:
        rows = await self.store.list_communities(
            parent_id=node_id, include_inactive=include_inactive
        )
        return [CommunityNode(**row) for row in rows]

    async def list_roots(self, *, include_inactive: bool = False) -> list[CommunityNode]:
        rows = await self.store.list_communities(
            roots_only=True, include_inactive=include_inactive
        )
        return [CommunityNode(**row) for row in rows]

    async def get_descendants(self, node_id: str) -> list[CommunityNode]:
        """Every node below node_id, inactive included."""
        rows = await self.store.get_subtree(node_id)
        return [CommunityNode(**row) for row in rows if row["id"] != node_id]

    async def update(self, node_id: str, **updates: Any) -> CommunityNode | None:
        """Update name, description, slug or visibility. Use reparent() to move."""
        if {"parent_id", "path", "level"} & updates.keys():
            raise ValueError("Use reparent() to change a community's parent")
        updates["updated_at"] = datetime.now(UTC).isoformat()
        data = await self.store.update_community(node_id, updates)
        if not data:
            return None
        await self.bus.emit(EventType.COMMUNITY_UPDATED, {"community_id": node_id})
        return CommunityNode(**data)

    async def deactivate(self, node_id: str, *, actor_id: str | None = None) -> bool:
        result = await self.store.set_community_active(node_id, False)
        if result:
            await self.bus.emit(
                EventType.COMMUNITY_DEACTIVATED, {"community_id": node_id, "actor_id": actor_id}
            )
        return result

    async def restore(self, node_id: str, *, actor_id: str | None = None) -> bool:
        result = await self.store.set_community_active(node_id, True)
        if result:
            await self.bus.emit(
                EventType.COMMUNITY_RESTORED, {"community_id": node_id, "actor_id": actor_id}
            )
        return result

    async def reparent(
        self, node_id: str, new_parent_id: str | None, *, actor_id: str | None = None
    ) -> CommunityNode:
        """Move a node (and its subtree) under a new parent, or make it a root.

        The cycle check and the rewrite of every path and level in the
        subtree happen in one store transaction. Concurrent moves are
        serialized, and readers see either the old chain or the new one.

        Raises:
            ValueError: Unknown node, a new parent inside the moved subtree,
                or a missing or inactive new parent.
        """
        result = await self.store.reparent_subtree(node_id, new_parent_id)
        updates = result["updates"]
        logger.info(
            "Reparented community %s from %s to %s (%d nodes rewritten)",
            node_id,
            result["old_parent_id"],
            new_parent_id,
            len(updates),
        )
        await self.bus.emit(
            EventType.COMMUNITY_REPARENTED,
            {
                "community_id": node_id,
                "old_parent_id": result["old_parent_id"],
                "new_parent_id": new_parent_id,
                "rewritten": len(updates),
                "actor_id": actor_id,
            },
        )
        node = await self.get_node(node_id, include_inactive=True)
        if node is None:
            raise ValueError(f"Community not found: {node_id}")
        return node

    async def verify_paths(self) -> list[str]:
        """Ids of nodes whose stored path or level disagrees with the parent chain."""
        rows = await self.store.list_communities(include_inactive=True)
        expected = _expected_paths(rows)
        stale = []
        for row in rows:
            want = expected.get(row["id"])
            if want is None or (row["path"], row["level"]) != want:
                stale.append(row["id"])
        return stale

    async def backfill_paths(self) -> int:
        """Recompute every path top-down from parent pointers. Returns rows changed."""

        def _plan(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
            expected = _expected_paths(rows)
            unreachable = {row["id"] for row in rows} - set(expected)
            if unreachable:
                logger.error("Communities unreachable from any root: %s", sorted(unreachable))
            updates = []
            for row in rows:
                want = expected.get(row["id"])
                if want is not None and (row["path"], row["level"]) != want:
                    updates.append({"id": row["id"], "path": want[0], "level": want[1]})
            return updates

        written = await self.store.rebuild_paths(_plan)
        logger.info("Backfilled paths for %d communities", written)
        return written

    async def build_tree(
        self, root_id: str | None = None, *, include_inactive: bool = False
    ) -> list[dict[str, Any]]:
        """Nested ``{"node": ..., "children": [...]}`` dicts for display."""
        if root_id:
            rows = await self.store.get_subtree(root_id)
            if not include_inactive:
                rows = [row for row in rows if row["is_active"]]
            top = [row for row in rows if row["id"] == root_id]
        else:
            rows = await self.store.list_communities(include_inactive=include_inactive)
            top = [row for row in rows if row["parent_id"] is None]

        children: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in rows:
            if row["parent_id"]:
                children[row["parent_id"]].append(row)

        def _branch(row: dict[str, Any], depth: int) -> dict[str, Any]:
            node = CommunityNode(**row)
            kids = children.get(node.id, []) if depth < _MAX_DEPTH else []
            return {
                "node": node.to_response(),
                "children": [_branch(kid, depth + 1) for kid in kids],
            }

        return [_branch(row, 0) for row in top]

    async def _unique_slug(self, base: str, node_id: str, *, explicit: bool) -> str:
        if not await self.store.get_community_by_slug(base):
            return base
        if explicit:
            raise ValueError(f"Slug already in use: {base}")
        return f"{base}-{node_id}"


def _expected_paths(rows: list[dict[str, Any]]) -> dict[str, tuple[str, int]]:
    """Breadth-first from the roots: id → (path, level) implied by parent pointers."""
    children: dict[str | None, list[str]] = defaultdict(list)
    for row in rows:
        children[row["parent_id"]].append(row["id"])

    expected: dict[str, tuple[str, int]] = {}
    queue: deque[tuple[str, str, int]] = deque(
        (root_id, root_id, 0) for root_id in children.get(None, [])
    )
    while queue:
        node_id, path, level = queue.popleft()
        if node_id in expected:
            continue
        expected[node_id] = (path, level)
        for child_id in children.get(node_id, []):
            queue.append((child_id, build_path(path, child_id), level + 1))
    return expected
