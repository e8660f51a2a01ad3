from __future__ import annotations

"""Shared application state.

Holds the service graph (catalog, ledger, managers, sweeper) wired at startup
so API routers can reach the same instances without circular imports.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from earthlord.core.catalog import Catalog, get_catalog
from earthlord.core.construction import ConstructionManager
from earthlord.core.errors import StorageError
from earthlord.core.ledger import ResourceLedger
from earthlord.core.locks import LockManager
from earthlord.core.time_utils import Clock, utc_now
from earthlord.core.trade import TradeEngine
from earthlord.systems.expiration_sweeper import ExpirationSweeper


@dataclass
class Services:
    catalog: Catalog
    locks: LockManager
    ledger: ResourceLedger
    construction: ConstructionManager
    trade: TradeEngine
    sweeper: ExpirationSweeper


def build_services(
    sessionmaker: async_sessionmaker,
    catalog: Optional[Catalog] = None,
    clock: Clock = utc_now,
    locks: Optional[LockManager] = None,
) -> Services:
    catalog = catalog or get_catalog()
    locks = locks or LockManager()
    ledger = ResourceLedger(sessionmaker, locks, catalog=catalog, clock=clock)
    return Services(
        catalog=catalog,
        locks=locks,
        ledger=ledger,
        construction=ConstructionManager(sessionmaker, locks, ledger, catalog, clock=clock),
        trade=TradeEngine(sessionmaker, locks, ledger, catalog, clock=clock),
        sweeper=ExpirationSweeper(sessionmaker, clock=clock),
    )


services: Optional[Services] = None


def set_services(value: Optional[Services]) -> None:
    global services
    services = value


def get_services() -> Services:
    if services is None:
        raise StorageError("Services are not started")
    return services


__all__ = ["Services", "build_services", "services", "set_services", "get_services"]
