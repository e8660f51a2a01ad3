"""Keyed in-process locks acquired in a global order.

Every multi-record mutation takes the locks for all records it touches before
opening its database transaction. Keys are always acquired in sorted order so
two operations contending for overlapping sets cannot deadlock. Waiting is
bounded; a timeout surfaces as StorageError.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from earthlord.core import config
from earthlord.core.errors import StorageError
from earthlord.core.metrics import metrics

logger = logging.getLogger(__name__)


def ledger_key(player_id: str) -> str:
    return f"ledger:{player_id}"


def offer_key(offer_id: str) -> str:
    return f"offer:{offer_id}"


def building_key(building_id: str) -> str:
    return f"building:{building_id}"


def history_key(history_id: str) -> str:
    return f"history:{history_id}"


def territory_key(territory_id: str, template_id: str) -> str:
    return f"territory:{territory_id}:{template_id}"


class LockManager:
    """Registry of asyncio locks keyed by record identity.

    A key's lock lives only while some ``hold`` is waiting on or holding it;
    the last user drops it from the registry.
    """

    def __init__(self, timeout_s: Optional[float] = None) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._timeout_s = timeout_s

    @property
    def timeout_s(self) -> float:
        if self._timeout_s is not None:
            return float(self._timeout_s)
        return config.get_lock_timeout_seconds()

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._users.get(key, 0) - 1
        if remaining > 0:
            self._users[key] = remaining
        else:
            self._users.pop(key, None)
            self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[List[str]]:
        """Acquire every key in sorted order; release in reverse on exit."""
        ordered = sorted(set(keys))
        checked_out: List[str] = []
        acquired: List[asyncio.Lock] = []
        started = time.perf_counter()
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout_s)
                except asyncio.TimeoutError as exc:
                    metrics.increment_event("locks.timeout")
                    logger.warning("lock_timeout", extra={"action_type": "lock_timeout", "lock_key": key})
                    raise StorageError(f"Timed out waiting for lock {key}") from exc
                acquired.append(lock)
            metrics.record_timer("locks.wait_s", time.perf_counter() - started)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)


__all__ = ["LockManager", "ledger_key", "offer_key", "building_key", "history_key", "territory_key"]
