"""Shared test fixtures for Canopy."""

from __future__ import annotations

from pathlib import Path

import pytest

from canopy.config import Config
from canopy.core.accounts import AccountDirectory
from canopy.core.membership import MembershipRegistry
from canopy.core.resolver import PermissionResolver
from canopy.core.tree import CommunityTree
from canopy.events.bus import EventBus
from canopy.storage.sqlite_store import SQLiteStore

JWT_SECRET = "test-secret-key-with-enough-bytes-for-hs256"


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
async def store(tmp_db: Path) -> SQLiteStore:
    s = SQLiteStore(tmp_db)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(workspace_path=tmp_path, jwt_secret=JWT_SECRET)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def tree(store: SQLiteStore, bus: EventBus) -> CommunityTree:
    return CommunityTree(store, bus)


@pytest.fixture
def registry(store: SQLiteStore, bus: EventBus) -> MembershipRegistry:
    return MembershipRegistry(store, bus)


@pytest.fixture
def accounts(store: SQLiteStore, bus: EventBus) -> AccountDirectory:
    return AccountDirectory(store, bus)


@pytest.fixture
def resolver(
    accounts: AccountDirectory, tree: CommunityTree, registry: MembershipRegistry
) -> PermissionResolver:
    return PermissionResolver(accounts, tree, registry)
