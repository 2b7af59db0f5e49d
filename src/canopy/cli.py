"""CLI — init, serve, status, check, tree, paths, audit, account."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from canopy.config import Config
from canopy.core.accounts import AccountDirectory
from canopy.core.audit import AuditLog
from canopy.core.membership import MembershipRegistry
from canopy.core.resolver import PermissionResolver
from canopy.core.tree import CommunityTree
from canopy.events.bus import EventBus
from canopy.models.account import GlobalRole
from canopy.storage.sqlite_store import SQLiteStore

console = Console()


def _workspace(path: str) -> tuple[Config, Path]:
    workspace = Path(path).expanduser().resolve()
    config = Config.load(workspace)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not config.db_path.exists():
        click.echo(f"Error: No database at {config.db_path}. Run 'canopy init' first.", err=True)
        sys.exit(1)
    return config, config.db_path


async def _open(config: Config) -> SQLiteStore:
    store = SQLiteStore(
        config.db_path, wal_mode=config.wal_mode, busy_timeout_ms=config.busy_timeout_ms
    )
    await store.initialize()
    return store


@click.group()
@click.version_option(package_name="canopy-access")
def main() -> None:
    """Canopy — hierarchical communities with inherited access control."""


@main.command()
@click.argument("path", type=click.Path(), default="~/.canopy")
def init(path: str) -> None:
    """Initialize a new canopy workspace."""
    workspace = Path(path).expanduser().resolve()

    async def _init() -> None:
        config = Config(workspace_path=workspace)
        store = await _open(config)
        await store.close()
        config.save()

    asyncio.run(_init())
    click.echo(f"Initialized workspace at {workspace}")
    click.echo(f"Database: {workspace / 'canopy.db'}")
    click.echo("Set CANOPY_JWT_SECRET before running 'canopy serve'.")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--transport", type=click.Choice(["stdio"]), default="stdio")
def serve(path: str, transport: str) -> None:
    """Start the MCP server."""
    config, db_path = _workspace(path)
    if not config.jwt_secret:
        click.echo("Error: CANOPY_JWT_SECRET is not set.", err=True)
        sys.exit(1)

    from canopy.server import create_server

    server = create_server(str(db_path), config=config)
    server.run(transport=transport)  # type: ignore[arg-type]


@main.command()
@click.argument("path", type=click.Path(exists=True))
def status(path: str) -> None:
    """Show workspace status."""
    config, _ = _workspace(path)

    async def _status() -> dict:
        store = await _open(config)
        try:
            return await store.get_stats()
        finally:
            await store.close()

    stats = asyncio.run(_status())
    click.echo(json.dumps(stats, indent=2))


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.argument("account_id")
@click.argument("community_id")
@click.argument(
    "permission", type=click.Choice(["read", "write", "moderate", "admin", "invite"])
)
def check(path: str, account_id: str, community_id: str, permission: str) -> None:
    """Resolve one access request and print the decision."""
    config, _ = _workspace(path)

    async def _check() -> tuple[bool, str | None]:
        store = await _open(config)
        try:
            bus = EventBus()
            resolver = PermissionResolver(
                AccountDirectory(store, bus),
                CommunityTree(store, bus),
                MembershipRegistry(store, bus),
            )
            decision = await resolver.resolve(account_id, community_id, permission)
            return decision.allowed, decision.rule.value if decision.rule else None
        finally:
            await store.close()

    allowed, rule = asyncio.run(_check())
    if allowed:
        console.print(f"[green]ALLOW[/green] {permission} via {rule}")
    else:
        console.print(f"[red]DENY[/red] {permission}")
        sys.exit(2)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--root", "root_id", default=None, help="Only show this subtree")
@click.option("--all", "include_inactive", is_flag=True, help="Include deactivated communities")
def tree(path: str, root_id: str | None, include_inactive: bool) -> None:
    """Print the community hierarchy."""
    config, _ = _workspace(path)

    async def _tree() -> list[dict[str, Any]]:
        store = await _open(config)
        try:
            return await CommunityTree(store, EventBus()).build_tree(
                root_id, include_inactive=include_inactive
            )
        finally:
            await store.close()

    branches = asyncio.run(_tree())
    if not branches:
        click.echo("No communities.")
        return

    display = Tree("[bold]communities[/bold]")

    def _add(parent: Tree, branch: dict[str, Any]) -> None:
        node = branch["node"]
        label = f"{node['name']} [dim]({node['id']})[/dim]"
        if not node["is_public"]:
            label += " [yellow]private[/yellow]"
        child = parent.add(label)
        for sub in branch["children"]:
            _add(child, sub)

    for branch in branches:
        _add(display, branch)
    console.print(display)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--verify", "mode", flag_value="verify", default=True, help="Report stale paths")
@click.option("--backfill", "mode", flag_value="backfill", help="Rewrite paths from parents")
def paths(path: str, mode: str) -> None:
    """Verify or rebuild materialized community paths."""
    config, _ = _workspace(path)

    async def _paths() -> list[str] | int:
        store = await _open(config)
        try:
            community_tree = CommunityTree(store, EventBus())
            if mode == "backfill":
                return await community_tree.backfill_paths()
            return await community_tree.verify_paths()
        finally:
            await store.close()

    result = asyncio.run(_paths())
    if mode == "backfill":
        console.print(f"[green]✓[/green] Rewrote {result} path(s)")
        return
    if result:
        console.print(f"[red]{len(result)} stale path(s):[/red] {', '.join(result)}")
        sys.exit(1)
    console.print("[green]✓[/green] All paths consistent")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--community", "community_id", default=None, help="Only this community")
@click.option("--limit", default=50, show_default=True, type=click.IntRange(1, 500))
def audit(path: str, community_id: str | None, limit: int) -> None:
    """Show recent moderation and administration actions."""
    config, _ = _workspace(path)

    async def _audit() -> list:
        store = await _open(config)
        try:
            return await AuditLog(store).list_entries(community_id, limit=limit)
        finally:
            await store.close()

    entries = asyncio.run(_audit())
    if not entries:
        click.echo("No audit entries.")
        return

    table = Table(title="Audit Log")
    table.add_column("When", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Community")
    table.add_column("Actor", style="magenta")
    table.add_column("Subject")
    for entry in entries:
        table.add_row(
            entry.created_at[:19],
            entry.event,
            entry.community_id or "-",
            entry.actor_id or "-",
            entry.subject_id or "-",
        )
    console.print(table)


@main.group()
def account() -> None:
    """Manage accounts."""


@account.command("create")
@click.argument("path", type=click.Path(exists=True))
@click.argument("account_id")
@click.option(
    "--role",
    type=click.Choice([r.value for r in GlobalRole]),
    default=GlobalRole.USER.value,
    help="Global role",
)
@click.option("--email", default=None, help="Account email")
@click.option("--name", default=None, help="Display name")
def create_account(
    path: str, account_id: str, role: str, email: str | None, name: str | None
) -> None:
    """Create an account."""
    config, _ = _workspace(path)

    async def _create() -> None:
        store = await _open(config)
        try:
            created = await AccountDirectory(store, EventBus()).create_account(
                account_id, role=role, email=email, name=name
            )
        finally:
            await store.close()
        console.print(
            Panel(
                f"[green]✓[/green] Account created: {created.id}\nRole: {created.role}",
                title="Account Created",
            )
        )

    try:
        asyncio.run(_create())
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
