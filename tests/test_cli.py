"""Tests for the command line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from click.testing import CliRunner

from canopy.cli import main
from canopy.core.audit import AuditLog
from canopy.core.membership import MembershipRegistry
from canopy.core.tree import CommunityTree
from canopy.events.bus import EventBus
from canopy.storage.sqlite_store import SQLiteStore


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "ws"
    result = CliRunner().invoke(main, ["init", str(path)])
    assert result.exit_code == 0, result.output
    return path


def _seed(db_path: Path) -> None:
    async def _run() -> None:
        store = SQLiteStore(db_path)
        await store.initialize()
        try:
            bus = EventBus()
            tree = CommunityTree(store, bus)
            await tree.create_community(name="Root", node_id="root")
            await tree.create_community(
                name="Team Private", parent_id="root", is_public=False, node_id="team"
            )
            await MembershipRegistry(store, bus).join("rita", "root")
        finally:
            await store.close()

    asyncio.run(_run())


def test_init_creates_workspace(workspace: Path):
    assert (workspace / "canopy.db").exists()
    assert (workspace / "config.yaml").exists()


def test_status(workspace: Path):
    result = CliRunner().invoke(main, ["status", str(workspace)])
    assert result.exit_code == 0
    assert '"communities": 0' in result.output


def test_account_and_check(workspace: Path):
    runner = CliRunner()
    result = runner.invoke(main, ["account", "create", str(workspace), "rita"])
    assert result.exit_code == 0, result.output
    _seed(workspace / "canopy.db")

    allowed = runner.invoke(main, ["check", str(workspace), "rita", "root", "write"])
    assert allowed.exit_code == 0
    assert "ALLOW" in allowed.output
    assert "direct_member" in allowed.output

    denied = runner.invoke(main, ["check", str(workspace), "rita", "team", "read"])
    assert denied.exit_code == 2
    assert "DENY" in denied.output


def test_duplicate_account(workspace: Path):
    runner = CliRunner()
    runner.invoke(main, ["account", "create", str(workspace), "rita"])
    result = runner.invoke(main, ["account", "create", str(workspace), "rita"])
    assert result.exit_code == 1


def test_tree(workspace: Path):
    runner = CliRunner()
    runner.invoke(main, ["account", "create", str(workspace), "rita"])
    _seed(workspace / "canopy.db")
    result = runner.invoke(main, ["tree", str(workspace)])
    assert result.exit_code == 0
    assert "Root" in result.output
    assert "Team Private" in result.output
    assert "private" in result.output


def test_paths_verify_and_backfill(workspace: Path):
    runner = CliRunner()
    runner.invoke(main, ["account", "create", str(workspace), "rita"])
    _seed(workspace / "canopy.db")

    async def _corrupt() -> None:
        store = SQLiteStore(workspace / "canopy.db")
        await store.initialize()
        await store.db.execute("UPDATE communities SET path = NULL WHERE id = 'team'")
        await store.db.commit()
        await store.close()

    asyncio.run(_corrupt())

    stale = runner.invoke(main, ["paths", str(workspace), "--verify"])
    assert stale.exit_code == 1
    assert "team" in stale.output

    fixed = runner.invoke(main, ["paths", str(workspace), "--backfill"])
    assert fixed.exit_code == 0
    assert "Rewrote 1" in fixed.output

    clean = runner.invoke(main, ["paths", str(workspace)])
    assert clean.exit_code == 0


def test_serve_requires_secret(workspace: Path, monkeypatch):
    monkeypatch.delenv("CANOPY_JWT_SECRET", raising=False)
    result = CliRunner().invoke(main, ["serve", str(workspace)])
    assert result.exit_code == 1


def test_audit(workspace: Path):
    runner = CliRunner()
    empty = runner.invoke(main, ["audit", str(workspace)])
    assert empty.exit_code == 0
    assert "No audit entries." in empty.output

    async def _run() -> None:
        store = SQLiteStore(workspace / "canopy.db")
        await store.initialize()
        try:
            bus = EventBus()
            AuditLog(store).attach(bus)
            await CommunityTree(store, bus).create_community(
                name="Root", node_id="root", created_by="ops"
            )
        finally:
            await store.close()

    asyncio.run(_run())
    result = runner.invoke(main, ["audit", str(workspace), "--community", "root"])
    assert result.exit_code == 0, result.output
    assert "community.created" in result.output
    assert "ops" in result.output
