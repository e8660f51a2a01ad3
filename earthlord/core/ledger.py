"""Per-player resource ledger over the inventory_items table.

All balance changes in the system go through deduct()/credit(). Each call is
atomic across its line items: every quantity changes or none does. Mutations of
one player's holdings are serialized twice over: by the in-process lock on
``ledger:<player_id>`` and by locking that player's ledger_accounts row inside
the database transaction.

Every operation accepts an optional ``session``. Without one, the ledger opens
its own transaction and takes the in-process lock itself. With one, the call
joins the caller's transaction and the caller must already hold the ledger
locks (see LockManager); the row lock is still taken here.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Iterable, Mapping, Optional, Type

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from earthlord.core.catalog import Catalog
from earthlord.core.database import transaction
from earthlord.core.errors import GameError, InsufficientResources
from earthlord.core.locks import LockManager, ledger_key
from earthlord.core.metrics import metrics
from earthlord.core.time_utils import Clock, isoformat_utc, utc_now
from earthlord.models.database import InventoryItem, LedgerAccount
from earthlord.models.domain import ResourceCheckResult, ResourceQuantity

logger = logging.getLogger(__name__)


def normalize_quantities(amounts: Mapping[str, int]) -> ResourceQuantity:
    """Validate a quantity map and drop zero entries.

    Raises ValueError for negative or non-integer quantities.
    """
    result: ResourceQuantity = {}
    for item_id, qty in amounts.items():
        if isinstance(qty, bool) or not isinstance(qty, int):
            raise ValueError(f"quantity for {item_id!r} must be an integer, got {qty!r}")
        if qty < 0:
            raise ValueError(f"quantity for {item_id!r} must be non-negative, got {qty}")
        if qty:
            result[str(item_id)] = qty
    return result


class ResourceLedger:
    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        locks: LockManager,
        catalog: Optional[Catalog] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.locks = locks
        self.catalog = catalog
        self.clock = clock

    @asynccontextmanager
    async def _scope(self, session: Optional[AsyncSession], player_ids: Iterable[str]) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self.locks.hold(ledger_key(pid) for pid in player_ids):
            async with transaction(self.sessionmaker) as own:
                yield own

    def _validate_items(self, amounts: Mapping[str, int]) -> None:
        if self.catalog is None:
            return
        for item_id in amounts:
            self.catalog.require_item(item_id)

    async def lock_accounts(self, session: AsyncSession, player_ids: Iterable[str]) -> None:
        """Create missing ledger account rows and lock them in ascending id order."""
        ids = sorted(set(player_ids))
        if not ids:
            return
        now = self.clock()
        dialect = session.bind.dialect.name if session.bind is not None else ""
        for pid in ids:
            values = {"player_id": pid, "created_at": now, "updated_at": now}
            if dialect == "postgresql":
                await session.execute(pg_insert(LedgerAccount).values(**values).on_conflict_do_nothing(index_elements=["player_id"]))
            elif dialect == "sqlite":
                await session.execute(sqlite_insert(LedgerAccount).values(**values).on_conflict_do_nothing(index_elements=["player_id"]))
            elif await session.get(LedgerAccount, pid) is None:
                session.add(LedgerAccount(**values))
                await session.flush()
        await session.execute(
            select(LedgerAccount.player_id)
            .where(LedgerAccount.player_id.in_(ids))
            .order_by(LedgerAccount.player_id)
            .with_for_update()
        )

    async def _rows(self, session: AsyncSession, player_id: str, item_ids: Optional[Iterable[str]] = None) -> Dict[str, InventoryItem]:
        stmt = select(InventoryItem).where(InventoryItem.player_id == player_id)
        if item_ids is not None:
            stmt = stmt.where(InventoryItem.item_id.in_(list(item_ids)))
        result = await session.execute(stmt)
        return {row.item_id: row for row in result.scalars().all()}

    async def balances(self, player_id: str, session: Optional[AsyncSession] = None) -> ResourceQuantity:
        """All positive holdings of a player keyed by item id."""
        if session is not None:
            rows = await self._rows(session, player_id)
        else:
            async with transaction(self.sessionmaker) as own:
                rows = await self._rows(own, player_id)
        return {item_id: int(row.quantity) for item_id, row in sorted(rows.items())}

    async def has(self, player_id: str, required: Mapping[str, int], session: Optional[AsyncSession] = None) -> ResourceCheckResult:
        """Compare a player's holdings against ``required``.

        ``available`` reports the current quantity of every required item,
        ``missing`` the shortfall of each item the player cannot cover.
        """
        need = normalize_quantities(required)
        if not need:
            return ResourceCheckResult(sufficient=True)
        if session is not None:
            rows = await self._rows(session, player_id, need)
        else:
            async with transaction(self.sessionmaker) as own:
                rows = await self._rows(own, player_id, need)
        available = {item_id: int(rows[item_id].quantity) if item_id in rows else 0 for item_id in need}
        missing = {item_id: qty - available[item_id] for item_id, qty in need.items() if available[item_id] < qty}
        return ResourceCheckResult(sufficient=not missing, missing=missing, available=available)

    async def deduct(
        self,
        player_id: str,
        amounts: Mapping[str, int],
        session: Optional[AsyncSession] = None,
        insufficient: Callable[[ResourceQuantity], GameError] = InsufficientResources,
    ) -> None:
        """Remove ``amounts`` from the player's holdings, all or nothing.

        Raises ``insufficient(missing)`` (InsufficientResources by default)
        without touching any row when a line item cannot be covered.
        """
        need = normalize_quantities(amounts)
        if not need:
            return
        self._validate_items(need)
        async with self._scope(session, [player_id]) as s:
            await self.lock_accounts(s, [player_id])
            rows = await self._rows(s, player_id, need)
            missing = {
                item_id: qty - (int(rows[item_id].quantity) if item_id in rows else 0)
                for item_id, qty in need.items()
                if item_id not in rows or rows[item_id].quantity < qty
            }
            if missing:
                metrics.increment_event("ledger.deduct_rejected")
                raise insufficient(missing)
            now = self.clock()
            for item_id, qty in need.items():
                row = rows[item_id]
                row.quantity = int(row.quantity) - qty
                row.updated_at = now
                if row.quantity == 0:
                    await s.delete(row)
            await self._touch(s, player_id, now)
            await s.flush()
        metrics.increment_event("ledger.deducted")
        logger.debug(
            "ledger_deducted",
            extra={"action_type": "ledger_deducted", "player_id": player_id, "amounts": need, "timestamp": isoformat_utc(self.clock())},
        )

    async def credit(
        self,
        player_id: str,
        amounts: Mapping[str, int],
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Add ``amounts`` to the player's holdings."""
        add = normalize_quantities(amounts)
        if not add:
            return
        self._validate_items(add)
        async with self._scope(session, [player_id]) as s:
            await self.lock_accounts(s, [player_id])
            rows = await self._rows(s, player_id, add)
            now = self.clock()
            for item_id, qty in add.items():
                row = rows.get(item_id)
                if row is None:
                    s.add(InventoryItem(player_id=player_id, item_id=item_id, quantity=qty, updated_at=now))
                else:
                    row.quantity = int(row.quantity) + qty
                    row.updated_at = now
            await self._touch(s, player_id, now)
            await s.flush()
        metrics.increment_event("ledger.credited")
        logger.debug(
            "ledger_credited",
            extra={"action_type": "ledger_credited", "player_id": player_id, "amounts": add, "timestamp": isoformat_utc(self.clock())},
        )

    async def _touch(self, session: AsyncSession, player_id: str, now) -> None:
        account = await session.get(LedgerAccount, player_id)
        if account is not None:
            account.updated_at = now


__all__ = ["ResourceLedger", "normalize_quantities"]
