"""FastMCP server — 5 consolidated tools and a status resource."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal

from fastmcp import FastMCP
from pydantic import Field

from canopy.auth.guard import AccessContext, AccessError, AccessGuard, ForbiddenError
from canopy.auth.permissions import Permission
from canopy.config import Config
from canopy.core.accounts import AccountDirectory
from canopy.core.audit import AuditLog
from canopy.core.invites import InviteService
from canopy.core.membership import MembershipRegistry
from canopy.core.resolver import PermissionResolver
from canopy.core.roles import PrivilegeTier, can_hold, classify
from canopy.core.tree import CommunityTree
from canopy.events.bus import EventBus
from canopy.models.account import GlobalRole
from canopy.models.membership import AssignmentKind, MembershipStatus
from canopy.storage.base import StoreUnavailableError
from canopy.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

_HANDLED = (AccessError, StoreUnavailableError, PermissionError, ValueError)


def _json(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str)


def _ok(data: dict[str, Any]) -> str:
    """Return a versioned JSON success response."""
    return _json({**data, "_v": "1.0"})


def _err(msg: str, status: int = 400) -> str:
    """Return a versioned JSON error response."""
    return _json({"_v": "1.0", "error": msg, "status": status})


def _fail(e: Exception) -> str:
    if isinstance(e, AccessError):
        return _err(str(e), e.status)
    if isinstance(e, StoreUnavailableError):
        logger.error("Store unavailable: %s", e)
        return _err("Service temporarily unavailable", 503)
    if isinstance(e, PermissionError):
        return _err("Not authorized", 403)
    return _err(str(e), 400)


def create_server(db_path: str, *, config: Config | None = None) -> FastMCP:
    """Create FastMCP server with 5 consolidated tools."""
    config = config or Config.load()
    mcp = FastMCP("canopy", version="0.1.0")

    state: dict[str, Any] = {}
    _lock = asyncio.Lock()

    if not config.jwt_secret:
        logger.warning("No JWT secret configured; every token will be rejected")

    async def _init() -> dict[str, Any]:
        async with _lock:
            if "init_failed" in state:
                raise RuntimeError(f"Canopy init previously failed for {db_path}")
            if "resolver" not in state:
                try:
                    store = SQLiteStore(
                        Path(db_path),
                        wal_mode=config.wal_mode,
                        busy_timeout_ms=config.busy_timeout_ms,
                    )
                    await store.initialize()
                except Exception as e:
                    state["init_failed"] = True
                    logger.error("Failed to initialize database: %s", e)
                    raise RuntimeError(f"Canopy init failed: {db_path}") from e
                bus = EventBus()
                audit = AuditLog(store)
                audit.attach(bus)
                accounts = AccountDirectory(store, bus)
                tree = CommunityTree(store, bus)
                registry = MembershipRegistry(store, bus)
                resolver = PermissionResolver(accounts, tree, registry)
                state["store"] = store
                state["bus"] = bus
                state["audit"] = audit
                state["accounts"] = accounts
                state["tree"] = tree
                state["registry"] = registry
                state["invites"] = InviteService(store, bus, tree, resolver)
                state["guard"] = AccessGuard(
                    resolver,
                    secret=config.jwt_secret or "",
                    algorithm=config.jwt_algorithm,
                )
                state["resolver"] = resolver
        return state

    async def _authorize(
        s: dict[str, Any],
        token: str | None,
        permission: Permission,
        community_id: str | None,
        *,
        include_inactive: bool = False,
    ) -> AccessContext:
        return await s["guard"].authorize(
            token,
            permission,
            params={"communityId": community_id},
            include_inactive=include_inactive,
        )

    async def _require_root_creator(s: dict[str, Any], account_id: str) -> GlobalRole:
        account = await s["accounts"].get_account(account_id)
        if account is None or not account.is_active:
            raise ForbiddenError()
        if classify(account) != PrivilegeTier.BYPASS_ALL and (
            account.role != GlobalRole.COMMUNITY_ADMIN
        ):
            raise ForbiddenError()
        return account.role

    async def _readable(
        s: dict[str, Any], account_id: str, branches: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        kept = []
        for branch in branches:
            if not await s["resolver"].check(account_id, branch["node"]["id"], Permission.READ):
                continue
            kept.append(
                {
                    "node": branch["node"],
                    "children": await _readable(s, account_id, branch["children"]),
                }
            )
        return kept

    # ── cm_community ──────────────────────────────────────────

    @mcp.tool()
    async def cm_community(
        action: Annotated[
            Literal["create", "get", "ancestors", "reparent", "deactivate", "restore", "tree"],
            Field(description="create | get | ancestors | reparent | deactivate | restore | tree"),
        ],
        token: Annotated[str, Field(description="Bearer token of the caller")],
        community_id: Annotated[
            str | None,
            Field(description="Target community ID (all actions except create)"),
        ] = None,
        name: Annotated[str | None, Field(description="Community name (create)")] = None,
        parent_id: Annotated[
            str | None,
            Field(description="Parent community ID; omit for a root (create)"),
        ] = None,
        new_parent_id: Annotated[
            str | None,
            Field(description="New parent ID; omit to make a root (reparent)"),
        ] = None,
        description: Annotated[str | None, Field(description="Description (create)")] = None,
        slug: Annotated[str | None, Field(description="URL slug (create)")] = None,
        is_public: Annotated[bool, Field(description="Visibility (create)")] = True,
    ) -> str:
        """Create, inspect, move and soft-delete communities in the hierarchy."""
        s = await _init()
        try:
            if action == "create":
                if not name or not name.strip():
                    return _err("name is required for create")
                role: GlobalRole | None = None
                if parent_id:
                    ctx = await _authorize(s, token, Permission.ADMIN, parent_id)
                    creator = ctx.account_id
                else:
                    creator = s["guard"].authenticate(token)
                    role = await _require_root_creator(s, creator)
                node = await s["tree"].create_community(
                    name=name,
                    parent_id=parent_id,
                    is_public=is_public,
                    description=description,
                    slug=slug,
                    created_by=creator,
                )
                if role == GlobalRole.COMMUNITY_ADMIN:
                    await s["registry"].assign_admin(
                        creator, node.id, AssignmentKind.COMMUNITY_ADMIN, assigned_by=creator
                    )
                return _ok(node.to_response(detail="full"))

            if action == "restore":
                if not community_id:
                    return _err("community_id is required for restore")
                ctx = await _authorize(
                    s, token, Permission.ADMIN, community_id, include_inactive=True
                )
                restored = await s["tree"].restore(community_id, actor_id=ctx.account_id)
                return _ok({"community_id": community_id, "restored": restored})

            if not community_id:
                return _err(f"community_id is required for {action}")

            if action == "get":
                ctx = await _authorize(s, token, Permission.READ, community_id)
                node = await s["tree"].get_node(community_id)
                if node is None:
                    raise ForbiddenError()
                detail = "summary" if ctx.limited else "full"
                return _ok(
                    {
                        **node.to_response(detail=detail),
                        "access": {"rule": ctx.rule.value, "limited": ctx.limited},
                    }
                )

            if action == "ancestors":
                await _authorize(s, token, Permission.READ, community_id)
                ancestors = await s["tree"].get_ancestor_ids(community_id)
                return _ok({"community_id": community_id, "ancestors": ancestors})

            if action == "reparent":
                ctx = await _authorize(s, token, Permission.ADMIN, community_id)
                if new_parent_id:
                    await _authorize(s, token, Permission.ADMIN, new_parent_id)
                else:
                    await _require_root_creator(s, ctx.account_id)
                node = await s["tree"].reparent(
                    community_id, new_parent_id, actor_id=ctx.account_id
                )
                return _ok(node.to_response(detail="full"))

            if action == "deactivate":
                ctx = await _authorize(s, token, Permission.ADMIN, community_id)
                deactivated = await s["tree"].deactivate(community_id, actor_id=ctx.account_id)
                return _ok({"community_id": community_id, "deactivated": deactivated})

            if action == "tree":
                ctx = await _authorize(s, token, Permission.READ, community_id)
                branches = await s["tree"].build_tree(community_id)
                return _ok(
                    {"tree": await _readable(s, ctx.account_id, branches)}
                )

            return _err(f"Unknown action: {action}")
        except _HANDLED as e:
            return _fail(e)

    # ── cm_member ─────────────────────────────────────────────

    @mcp.tool()
    async def cm_member(
        action: Annotated[
            Literal["join", "leave", "approve", "ban", "role", "list"],
            Field(description="join | leave | approve | ban | role | list"),
        ],
        token: Annotated[str, Field(description="Bearer token of the caller")],
        community_id: Annotated[str, Field(description="Community ID")],
        account_id: Annotated[
            str | None,
            Field(description="Member account ID (leave by moderator, approve, ban, role)"),
        ] = None,
        role: Annotated[
            str | None,
            Field(description="member or admin (role)"),
        ] = None,
        status: Annotated[
            str | None,
            Field(description="Filter by pending, active or banned (list)"),
        ] = None,
    ) -> str:
        """Join and leave communities and manage their members."""
        s = await _init()
        try:
            if action == "join":
                caller = s["guard"].authenticate(token)
                node = await s["tree"].get_node(community_id)
                if node is None or not node.is_public:
                    return _err("An invite is required to join this community", 403)
                if not await s["resolver"].check(caller, community_id, Permission.READ):
                    return _err("An invite is required to join this community", 403)
                membership = await s["registry"].join(caller, community_id)
                return _ok(membership.to_response())

            if action == "leave":
                caller = s["guard"].authenticate(token)
                target = account_id or caller
                if target != caller:
                    await _authorize(s, token, Permission.MODERATE, community_id)
                removed = await s["registry"].leave(target, community_id, actor_id=caller)
                return _ok({"account_id": target, "community_id": community_id, "left": removed})

            if action in ("approve", "ban"):
                if not account_id:
                    return _err(f"account_id is required for {action}")
                ctx = await _authorize(s, token, Permission.MODERATE, community_id)
                new_status = (
                    MembershipStatus.ACTIVE if action == "approve" else MembershipStatus.BANNED
                )
                membership = await s["registry"].set_status(
                    account_id, community_id, new_status, actor_id=ctx.account_id
                )
                if membership is None:
                    return _err(f"Membership not found: {account_id}", 404)
                return _ok(membership.to_response())

            if action == "role":
                if not account_id or not role:
                    return _err("account_id and role are required for role")
                ctx = await _authorize(s, token, Permission.ADMIN, community_id)
                membership = await s["registry"].set_role(
                    account_id, community_id, role, actor_id=ctx.account_id
                )
                if membership is None:
                    return _err(f"Membership not found: {account_id}", 404)
                return _ok(membership.to_response())

            if action == "list":
                await _authorize(s, token, Permission.MODERATE, community_id)
                members = await s["registry"].list_members(community_id, status=status)
                return _ok(
                    {"count": len(members), "members": [m.to_response() for m in members]}
                )

            return _err(f"Unknown action: {action}")
        except _HANDLED as e:
            return _fail(e)

    # ── cm_admin ──────────────────────────────────────────────

    @mcp.tool()
    async def cm_admin(
        action: Annotated[
            Literal["assign", "remove", "list", "audit"],
            Field(description="assign | remove | list | audit"),
        ],
        token: Annotated[str, Field(description="Bearer token of the caller")],
        community_id: Annotated[str, Field(description="Community ID")],
        account_id: Annotated[
            str | None, Field(description="Assignee account ID (assign, remove)")
        ] = None,
        kind: Annotated[
            str | None,
            Field(description="community_admin or sub_community_admin (assign, remove)"),
        ] = None,
        limit: Annotated[
            int, Field(description="Maximum entries, newest first (audit)", ge=1, le=500)
        ] = 50,
    ) -> str:
        """Grant and revoke subtree-wide admin rights and read a community's audit trail."""
        s = await _init()
        try:
            if action == "audit":
                await _authorize(s, token, Permission.ADMIN, community_id)
                entries = await s["audit"].list_entries(community_id, limit=limit)
                return _ok(
                    {"count": len(entries), "entries": [e.to_response() for e in entries]}
                )

            if action == "list":
                await _authorize(s, token, Permission.ADMIN, community_id)
                admins = await s["registry"].list_admins(community_id)
                return _ok({"count": len(admins), "admins": [a.to_response() for a in admins]})

            if not account_id or not kind:
                return _err(f"account_id and kind are required for {action}")
            assignment_kind = AssignmentKind(kind)
            ctx = await _authorize(s, token, Permission.ADMIN, community_id)

            if action == "assign":
                assignee = await s["accounts"].get_account(account_id)
                if assignee is None:
                    return _err(f"Account not found: {account_id}", 404)
                if not can_hold(assignee.role, assignment_kind):
                    return _err(
                        f"Role {assignee.role} cannot hold a {assignment_kind} assignment"
                    )
                assignment = await s["registry"].assign_admin(
                    account_id, community_id, assignment_kind, assigned_by=ctx.account_id
                )
                return _ok(assignment.to_response())

            if action == "remove":
                removed = await s["registry"].remove_admin(
                    account_id, community_id, assignment_kind, actor_id=ctx.account_id
                )
                return _ok({"removed": removed})

            return _err(f"Unknown action: {action}")
        except _HANDLED as e:
            return _fail(e)

    # ── cm_invite ─────────────────────────────────────────────

    @mcp.tool()
    async def cm_invite(
        action: Annotated[
            Literal["create", "redeem", "list", "deactivate"],
            Field(description="create | redeem | list | deactivate"),
        ],
        token: Annotated[str, Field(description="Bearer token of the caller")],
        community_id: Annotated[
            str | None, Field(description="Community ID (create, list)")
        ] = None,
        code: Annotated[str | None, Field(description="Invite code (redeem)")] = None,
        invite_id: Annotated[str | None, Field(description="Invite ID (deactivate)")] = None,
        role: Annotated[str, Field(description="Role granted on redeem (create)")] = "member",
        max_uses: Annotated[
            int | None, Field(description="Maximum redemptions (create)", ge=1)
        ] = None,
        expires_in_hours: Annotated[
            float | None, Field(description="Lifetime in hours (create)", gt=0)
        ] = None,
    ) -> str:
        """Issue, redeem and retire invite codes for communities."""
        s = await _init()
        try:
            caller = s["guard"].authenticate(token)

            if action == "create":
                if not community_id:
                    return _err("community_id is required for create")
                invite = await s["invites"].create(
                    caller,
                    community_id,
                    role=role,
                    max_uses=max_uses or config.invite_default_max_uses,
                    expires_in_hours=expires_in_hours or config.invite_default_ttl_hours,
                )
                return _ok(invite.to_response())

            if action == "redeem":
                if not code:
                    return _err("code is required for redeem")
                membership = await s["invites"].redeem(caller, code)
                return _ok(membership.to_response())

            if action == "list":
                await _authorize(s, token, Permission.INVITE, community_id)
                invites = await s["invites"].list_active(community_id)
                return _ok(
                    {"count": len(invites), "invites": [i.to_response() for i in invites]}
                )

            if action == "deactivate":
                if not invite_id:
                    return _err("invite_id is required for deactivate")
                if not await s["invites"].deactivate(caller, invite_id):
                    return _err(f"Invite not found or already inactive: {invite_id}", 404)
                return _ok({"invite_id": invite_id, "deactivated": True})

            return _err(f"Unknown action: {action}")
        except _HANDLED as e:
            return _fail(e)

    # ── cm_access ─────────────────────────────────────────────

    @mcp.tool()
    async def cm_access(
        action: Annotated[Literal["check"], Field(description="check")],
        token: Annotated[str, Field(description="Bearer token of the caller")],
        community_id: Annotated[str, Field(description="Community ID")],
        permission: Annotated[
            str, Field(description="read | write | moderate | admin | invite")
        ] = "read",
    ) -> str:
        """Ask whether the caller holds a permission on a community."""
        s = await _init()
        try:
            caller = s["guard"].authenticate(token)
            decision = await s["resolver"].resolve(caller, community_id, permission)
            return _ok(
                {
                    **decision.to_response(),
                    "community_id": community_id,
                    "permission": permission,
                }
            )
        except _HANDLED as e:
            return _fail(e)

    # ── Resources ─────────────────────────────────────────────

    @mcp.resource("cm://status")
    async def cm_resource_status() -> str:
        """Store statistics."""
        s = await _init()
        return _ok(await s["store"].get_stats())

    return mcp
