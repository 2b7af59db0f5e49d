"""Account directory — the resolver's source of global roles."""

from __future__ import annotations

import logging

from canopy.core.roles import parse_role
from canopy.events.bus import EventBus
from canopy.events.types import EventType
from canopy.models.account import Account, GlobalRole
from canopy.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class AccountDirectory:
    """Creates and loads accounts, normalizing stored roles on the way out."""

    def __init__(self, store: StorageBackend, event_bus: EventBus) -> None:
        self._store = store
        self._event_bus = event_bus

    async def create_account(
        self,
        account_id: str,
        *,
        role: GlobalRole | str = GlobalRole.USER,
        email: str | None = None,
        name: str | None = None,
    ) -> Account:
        if not account_id or not account_id.strip():
            raise ValueError("Account ID cannot be empty")
        account = Account(id=account_id.strip(), role=parse_role(role), email=email, name=name)
        await self._store.insert_account(account.to_storage())
        logger.info("Created account %s (role=%s)", account.id, account.role)
        await self._event_bus.emit(
            EventType.ACCOUNT_CREATED, {"account_id": account.id, "role": account.role.value}
        )
        return account

    async def get_account(self, account_id: str) -> Account | None:
        data = await self._store.get_account(account_id)
        if not data:
            return None
        data["role"] = parse_role(data.get("role"))
        return Account(**data)

    async def set_role(self, account_id: str, role: GlobalRole | str) -> Account | None:
        data = await self._store.update_account(account_id, {"role": parse_role(role).value})
        if not data:
            return None
        await self._event_bus.emit(EventType.ACCOUNT_UPDATED, {"account_id": account_id})
        return await self.get_account(account_id)

    async def set_active(self, account_id: str, active: bool) -> Account | None:
        data = await self._store.update_account(account_id, {"is_active": active})
        if not data:
            return None
        await self._event_bus.emit(EventType.ACCOUNT_UPDATED, {"account_id": account_id})
        return await self.get_account(account_id)

    async def list_accounts(self) -> list[Account]:
        rows = await self._store.list_accounts()
        accounts = []
        for row in rows:
            row["role"] = parse_role(row.get("role"))
            accounts.append(Account(**row))
        return accounts
