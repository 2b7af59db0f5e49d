"""SQLite storage backend for the community tree, memberships, invites and audit log."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from canopy.models.community import PATH_SEPARATOR
from canopy.storage.base import StorageBackend, StoreUnavailableError

logger = logging.getLogger(__name__)

# Column whitelists per table, applied to every UPDATE
_ALLOWED_COLUMNS: dict[str, set[str]] = {
    "accounts": {"email", "name", "role", "is_active"},
    "communities": {"name", "slug", "description", "is_public", "updated_at"},
    "memberships": {"role", "status", "responded_at"},
}

_BOOL_FIELDS = ("is_active", "is_public")
_JSON_FIELDS = ("permissions", "details")

_MAX_DEPTH = 64


def _validate_update_keys(table: str, updates: dict[str, Any]) -> dict[str, Any]:
    """Filter update dict to only allowed column names."""
    allowed = _ALLOWED_COLUMNS.get(table, set())
    filtered = {k: v for k, v in updates.items() if k in allowed}
    rejected = set(updates.keys()) - allowed - {"id"}
    if rejected:
        logger.warning("Rejected invalid column names for %s: %s", table, rejected)
    return filtered


@contextmanager
def _transient(operation: str) -> Iterator[None]:
    """Map connection-level failures to StoreUnavailableError."""
    try:
        yield
    except (sqlite3.OperationalError, sqlite3.InterfaceError) as e:
        logger.error("Store %s failed: %s", operation, e)
        raise StoreUnavailableError(f"{operation} failed: {e}") from e
    except ValueError as e:
        # aiosqlite raises ValueError once its connection is gone
        if "connection" not in str(e).lower():
            raise
        logger.error("Store %s failed: %s", operation, e)
        raise StoreUnavailableError(f"{operation} failed: {e}") from e


class SQLiteStore(StorageBackend):
    """SQLite-based storage with WAL mode and serialized writes."""

    def __init__(
        self, db_path: Path, *, wal_mode: bool = True, busy_timeout_ms: int = 5000
    ) -> None:
        self.db_path = db_path
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create database and apply schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        if self.wal_mode:
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")

        schema_sql = _load_sql("canopy.sql")
        await self._db.executescript(schema_sql)
        await self._db.commit()
        logger.info("Initialized SQLite store at %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._db

    # --- Low-level helpers ---

    async def _fetchone(self, sql: str, params: Any = ()) -> dict[str, Any] | None:
        with _transient("read"):
            cursor = await self.db.execute(sql, params)
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def _fetchall(self, sql: str, params: Any = ()) -> list[dict[str, Any]]:
        with _transient("read"):
            cursor = await self.db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_dict(row) for row in rows]

    async def _write(self, sql: str, params: Any = ()) -> int:
        """Run one statement and commit. Returns the affected row count."""
        async with self._write_lock:
            with _transient("write"):
                try:
                    cursor = await self.db.execute(sql, params)
                except sqlite3.IntegrityError as e:
                    await self.db.rollback()
                    raise ValueError(f"Constraint violated: {e}") from e
                await self.db.commit()
                return cursor.rowcount

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers and wrap the block in BEGIN IMMEDIATE … COMMIT."""
        async with self._write_lock:
            with _transient("transaction"):
                await self.db.execute("BEGIN IMMEDIATE")
                try:
                    yield self.db
                except BaseException:
                    await self.db.rollback()
                    raise
                await self.db.commit()

    async def _update(
        self, table: str, where: str, where_params: tuple, updates: dict[str, Any]
    ) -> int:
        updates = _validate_update_keys(table, updates)
        updates = _serialize_json_fields(updates, list(_JSON_FIELDS))
        if not updates:
            return 0
        set_clauses = [f"{key} = ?" for key in updates]
        values = list(updates.values()) + list(where_params)
        return await self._write(
            f"UPDATE {table} SET {', '.join(set_clauses)} WHERE {where}",
            values,
        )

    # --- Account operations ---

    async def insert_account(self, account: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO accounts (id, email, name, role, is_active, created_at)
               VALUES (:id, :email, :name, :role, :is_active, :created_at)""",
            account,
        )
        return account

    async def get_account(self, account_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))

    async def update_account(
        self, account_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        existing = await self.get_account(account_id)
        if not existing:
            return None
        await self._update("accounts", "id = ?", (account_id,), updates)
        return await self.get_account(account_id)

    async def list_accounts(self) -> list[dict[str, Any]]:
        return await self._fetchall("SELECT * FROM accounts ORDER BY created_at")

    # --- Community tree operations ---

    async def insert_community(self, community: dict[str, Any]) -> dict[str, Any]:
        row = dict(community)
        async with self._transaction() as db:
            if row.get("parent_id"):
                await _require_active(db, row["parent_id"])
                row["path"] = PATH_SEPARATOR.join(
                    [*await _chain_ids(db, row["parent_id"]), row["id"]]
                )
            else:
                row["path"] = row["id"]
            row["level"] = row["path"].count(PATH_SEPARATOR)
            try:
                await db.execute(_INSERT_COMMUNITY, row)
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Constraint violated: {e}") from e
        return row

    async def get_community(
        self, community_id: str, *, include_inactive: bool = False
    ) -> dict[str, Any] | None:
        if include_inactive:
            return await self._fetchone(
                "SELECT * FROM communities WHERE id = ?", (community_id,)
            )
        return await self._fetchone(
            "SELECT * FROM communities WHERE id = ? AND is_active = 1", (community_id,)
        )

    async def get_community_by_slug(self, slug: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM communities WHERE slug = ?", (slug,))

    async def update_community(
        self, community_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        existing = await self.get_community(community_id, include_inactive=True)
        if not existing:
            return None
        await self._update("communities", "id = ?", (community_id,), updates)
        return await self.get_community(community_id, include_inactive=True)

    async def set_community_active(self, community_id: str, active: bool) -> bool:
        rowcount = await self._write(
            "UPDATE communities SET is_active = ?, updated_at = ? WHERE id = ? AND is_active = ?",
            (active, _now(), community_id, not active),
        )
        return rowcount > 0

    async def list_communities(
        self,
        *,
        parent_id: str | None = None,
        roots_only: bool = False,
        include_inactive: bool = False,
    ) -> list[dict[str, Any]]:
        conditions: list[str] = []
        params: list[Any] = []

        if roots_only:
            conditions.append("parent_id IS NULL")
        elif parent_id:
            conditions.append("parent_id = ?")
            params.append(parent_id)
        if not include_inactive:
            conditions.append("is_active = 1")

        where = " AND ".join(conditions) if conditions else "1=1"
        return await self._fetchall(
            f"SELECT * FROM communities WHERE {where} ORDER BY level, created_at",
            params,
        )

    async def get_subtree(self, community_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(_SUBTREE, (community_id,))

    async def reparent_subtree(
        self, community_id: str, new_parent_id: str | None
    ) -> dict[str, Any]:
        async with self._transaction() as db:
            cursor = await db.execute(
                "SELECT parent_id FROM communities WHERE id = ?", (community_id,)
            )
            node = await cursor.fetchone()
            if node is None:
                raise ValueError(f"Community not found: {community_id}")

            cursor = await db.execute(_SUBTREE, (community_id,))
            subtree = [_row_to_dict(row) for row in await cursor.fetchall()]

            root_path = community_id
            if new_parent_id is not None:
                if new_parent_id in {row["id"] for row in subtree}:
                    raise ValueError("Cannot move a community under itself or its descendants")
                await _require_active(db, new_parent_id)
                root_path = PATH_SEPARATOR.join(
                    [*await _chain_ids(db, new_parent_id), community_id]
                )

            updates = _subtree_updates(community_id, new_parent_id, root_path, subtree)
            now = _now()
            try:
                await db.executemany(
                    """UPDATE communities SET parent_id = ?, path = ?, level = ?, updated_at = ?
                       WHERE id = ?""",
                    [(u["parent_id"], u["path"], u["level"], now, u["id"]) for u in updates],
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Constraint violated: {e}") from e
        logger.debug("Rewrote paths for %d nodes under %s", len(updates), community_id)
        return {"old_parent_id": node["parent_id"], "updates": updates}

    async def rebuild_paths(
        self, plan: Callable[[list[dict[str, Any]]], list[dict[str, Any]]]
    ) -> int:
        async with self._transaction() as db:
            cursor = await db.execute("SELECT id, parent_id, path, level FROM communities")
            updates = plan([dict(row) for row in await cursor.fetchall()])
            if updates:
                now = _now()
                await db.executemany(
                    "UPDATE communities SET path = ?, level = ?, updated_at = ? WHERE id = ?",
                    [(u["path"], u["level"], now, u["id"]) for u in updates],
                )
        logger.debug("Rebuilt paths for %d nodes", len(updates))
        return len(updates)

    # --- Membership operations ---

    async def insert_membership(self, membership: dict[str, Any]) -> dict[str, Any]:
        await self._write(_INSERT_MEMBERSHIP, membership)
        return membership

    async def get_membership(self, account_id: str, community_id: str) -> dict[str, Any] | None:
        return await self._fetchone(
            "SELECT * FROM memberships WHERE account_id = ? AND community_id = ?",
            (account_id, community_id),
        )

    async def update_membership(
        self, account_id: str, community_id: str, updates: dict[str, Any]
    ) -> dict[str, Any] | None:
        existing = await self.get_membership(account_id, community_id)
        if not existing:
            return None
        await self._update(
            "memberships",
            "account_id = ? AND community_id = ?",
            (account_id, community_id),
            updates,
        )
        return await self.get_membership(account_id, community_id)

    async def delete_membership(self, account_id: str, community_id: str) -> bool:
        rowcount = await self._write(
            "DELETE FROM memberships WHERE account_id = ? AND community_id = ?",
            (account_id, community_id),
        )
        return rowcount > 0

    async def list_memberships(
        self,
        *,
        community_id: str | None = None,
        account_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        conditions: list[str] = []
        params: list[Any] = []

        if community_id:
            conditions.append("community_id = ?")
            params.append(community_id)
        if account_id:
            conditions.append("account_id = ?")
            params.append(account_id)
        if status:
            conditions.append("status = ?")
            params.append(status)

        where = " AND ".join(conditions) if conditions else "1=1"
        return await self._fetchall(
            f"SELECT * FROM memberships WHERE {where} ORDER BY joined_at", params
        )

    # --- Admin assignment operations ---

    async def insert_assignment(self, assignment: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO admin_assignments (id, account_id, community_id, kind,
               assigned_by, permissions, assigned_at)
               VALUES (:id, :account_id, :community_id, :kind,
               :assigned_by, :permissions, :assigned_at)""",
            _serialize_json_fields(assignment, list(_JSON_FIELDS)),
        )
        return assignment

    async def delete_assignment(self, account_id: str, community_id: str, kind: str) -> bool:
        rowcount = await self._write(
            """DELETE FROM admin_assignments
               WHERE account_id = ? AND community_id = ? AND kind = ?""",
            (account_id, community_id, kind),
        )
        return rowcount > 0

    async def list_assignments(
        self, *, account_id: str | None = None, community_id: str | None = None
    ) -> list[dict[str, Any]]:
        conditions: list[str] = []
        params: list[Any] = []

        if account_id:
            conditions.append("account_id = ?")
            params.append(account_id)
        if community_id:
            conditions.append("community_id = ?")
            params.append(community_id)

        where = " AND ".join(conditions) if conditions else "1=1"
        return await self._fetchall(
            f"SELECT * FROM admin_assignments WHERE {where} ORDER BY assigned_at", params
        )

    async def find_assignment(
        self, account_id: str, community_ids: list[str], kinds: list[str]
    ) -> dict[str, Any] | None:
        if not community_ids or not kinds:
            return None
        node_marks = ",".join("?" * len(community_ids))
        kind_marks = ",".join("?" * len(kinds))
        return await self._fetchone(
            f"""SELECT * FROM admin_assignments
                WHERE account_id = ?
                AND community_id IN ({node_marks})
                AND kind IN ({kind_marks})
                LIMIT 1""",
            [account_id, *community_ids, *kinds],
        )

    # --- Invite operations ---

    async def insert_invite(self, invite: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO invites (id, code, community_id, created_by, role, max_uses,
               current_uses, expires_at, is_active, created_at, updated_at)
               VALUES (:id, :code, :community_id, :created_by, :role, :max_uses,
               :current_uses, :expires_at, :is_active, :created_at, :updated_at)""",
            invite,
        )
        return invite

    async def get_invite(self, invite_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM invites WHERE id = ?", (invite_id,))

    async def get_invite_by_code(self, code: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM invites WHERE code = ?", (code,))

    async def list_invites(
        self, community_id: str, *, active_only: bool = True
    ) -> list[dict[str, Any]]:
        if active_only:
            return await self._fetchall(
                """SELECT * FROM invites
                   WHERE community_id = ? AND is_active = 1
                   AND (expires_at IS NULL OR expires_at > ?)
                   ORDER BY created_at DESC""",
                (community_id, _now()),
            )
        return await self._fetchall(
            "SELECT * FROM invites WHERE community_id = ? ORDER BY created_at DESC",
            (community_id,),
        )

    async def deactivate_invite(self, invite_id: str) -> bool:
        rowcount = await self._write(
            "UPDATE invites SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
            (_now(), invite_id),
        )
        return rowcount > 0

    async def redeem_invite(self, invite_id: str, membership: dict[str, Any]) -> bool:
        async with self._transaction() as db:
            cursor = await db.execute(
                """UPDATE invites SET current_uses = current_uses + 1, updated_at = ?
                   WHERE id = ? AND is_active = 1 AND current_uses < max_uses""",
                (_now(), invite_id),
            )
            if cursor.rowcount == 0:
                return False
            try:
                await db.execute(_INSERT_MEMBERSHIP, membership)
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Constraint violated: {e}") from e
        return True

    # --- Audit log ---

    async def insert_audit_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        await self._write(
            """INSERT INTO audit_log (id, event, community_id, actor_id, subject_id,
               details, created_at)
               VALUES (:id, :event, :community_id, :actor_id, :subject_id,
               :details, :created_at)""",
            _serialize_json_fields(entry, list(_JSON_FIELDS)),
        )
        return entry

    async def list_audit_entries(
        self, *, community_id: str | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        if community_id:
            return await self._fetchall(
                """SELECT * FROM audit_log WHERE community_id = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT ?""",
                (community_id, limit),
            )
        return await self._fetchall(
            "SELECT * FROM audit_log ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        )

    # --- Stats ---

    async def get_stats(self) -> dict[str, Any]:
        async def _count(sql: str) -> int:
            row = await self._fetchone(sql)
            return next(iter(row.values())) if row else 0

        return {
            "accounts": await _count("SELECT COUNT(*) AS n FROM accounts"),
            "communities": await _count(
                "SELECT COUNT(*) AS n FROM communities WHERE is_active = 1"
            ),
            "roots": await _count(
                "SELECT COUNT(*) AS n FROM communities WHERE parent_id IS NULL AND is_active = 1"
            ),
            "max_depth": await _count("SELECT COALESCE(MAX(level), 0) AS n FROM communities"),
            "memberships": await _count(
                "SELECT COUNT(*) AS n FROM memberships WHERE status = 'active'"
            ),
            "admin_assignments": await _count("SELECT COUNT(*) AS n FROM admin_assignments"),
            "invites": await _count("SELECT COUNT(*) AS n FROM invites WHERE is_active = 1"),
            "audit_entries": await _count("SELECT COUNT(*) AS n FROM audit_log"),
            "db_path": str(self.db_path),
        }


_INSERT_COMMUNITY = """INSERT INTO communities (id, name, slug, description, parent_id, path,
    level, is_public, is_active, created_by, created_at, updated_at)
    VALUES (:id, :name, :slug, :description, :parent_id, :path,
    :level, :is_public, :is_active, :created_by, :created_at, :updated_at)"""

_SUBTREE = """WITH RECURSIVE subtree(id) AS (
        SELECT id FROM communities WHERE id = ?
        UNION
        SELECT c.id FROM communities c JOIN subtree s ON c.parent_id = s.id
    )
    SELECT communities.* FROM communities
    JOIN subtree ON communities.id = subtree.id"""

# Walks parent pointers upward; depth-bounded so a cycle terminates
_PARENT_CHAIN = """WITH RECURSIVE chain(id, parent_id, depth) AS (
        SELECT id, parent_id, 0 FROM communities WHERE id = ?
        UNION ALL
        SELECT c.id, c.parent_id, chain.depth + 1
        FROM communities c JOIN chain ON c.id = chain.parent_id
        WHERE chain.depth < ?
    )
    SELECT id, parent_id FROM chain ORDER BY depth DESC"""

_INSERT_MEMBERSHIP = """INSERT INTO memberships (id, account_id, community_id, role, status,
    invited_by, joined_at, responded_at)
    VALUES (:id, :account_id, :community_id, :role, :status,
    :invited_by, :joined_at, :responded_at)"""


# --- Helpers ---


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _load_sql(filename: str) -> str:
    """Load SQL file from the schema package."""
    schema_dir = Path(__file__).parent.parent / "schema"
    return (schema_dir / filename).read_text()


def _row_to_dict(row: aiosqlite.Row) -> dict[str, Any]:
    """Convert an aiosqlite Row to a dict, restoring bool and JSON fields."""
    d = dict(row)
    for key in _BOOL_FIELDS:
        if key in d and d[key] is not None:
            d[key] = bool(d[key])
    for key in _JSON_FIELDS:
        if key in d and isinstance(d[key], str):
            try:
                d[key] = json.loads(d[key])
            except (json.JSONDecodeError, TypeError):
                pass
    return d


def _serialize_json_fields(data: dict[str, Any], fields: list[str]) -> dict[str, Any]:
    """Serialize dict/list fields to JSON strings for SQLite storage."""
    result = dict(data)
    for field in fields:
        if field in result and not isinstance(result[field], str) and result[field] is not None:
            result[field] = json.dumps(result[field])
    return result


async def _require_active(db: aiosqlite.Connection, community_id: str) -> None:
    cursor = await db.execute("SELECT is_active FROM communities WHERE id = ?", (community_id,))
    row = await cursor.fetchone()
    if row is None or not row["is_active"]:
        raise ValueError(f"Parent community not found: {community_id}")


async def _chain_ids(db: aiosqlite.Connection, community_id: str) -> list[str]:
    """Ids from the root down to community_id, read from parent pointers."""
    cursor = await db.execute(_PARENT_CHAIN, (community_id, _MAX_DEPTH))
    rows = await cursor.fetchall()
    if not rows or rows[0]["parent_id"] is not None:
        raise ValueError(f"Parent chain of {community_id} is cyclic or too deep")
    return [row["id"] for row in rows]


def _subtree_updates(
    community_id: str,
    new_parent_id: str | None,
    root_path: str,
    subtree: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Breadth-first parent_id/path/level for a moved node and its descendants."""
    children: dict[str, list[str]] = defaultdict(list)
    for row in subtree:
        if row["id"] != community_id and row["parent_id"]:
            children[row["parent_id"]].append(row["id"])

    updates = [
        {
            "id": community_id,
            "parent_id": new_parent_id,
            "path": root_path,
            "level": root_path.count(PATH_SEPARATOR),
        }
    ]
    queue: deque[tuple[str, str]] = deque([(community_id, root_path)])
    while queue:
        current_id, current_path = queue.popleft()
        for child_id in children.get(current_id, []):
            child_path = f"{current_path}{PATH_SEPARATOR}{child_id}"
            updates.append(
                {
                    "id": child_id,
                    "parent_id": current_id,
                    "path": child_path,
                    "level": child_path.count(PATH_SEPARATOR),
                }
            )
            queue.append((child_id, child_path))
    return updates
