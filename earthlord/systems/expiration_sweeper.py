from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from earthlord.core import config
from earthlord.core.construction import complete_due_buildings
from earthlord.core.database import transaction
from earthlord.core.errors import StorageError
from earthlord.core.metrics import metrics
from earthlord.core.time_utils import Clock, isoformat_utc, utc_now
from earthlord.core.trade import expire_stale_offers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    offers_expired: int
    buildings_completed: int
    swept_at: datetime

    def to_dict(self) -> dict:
        return {
            "offers_expired": self.offers_expired,
            "buildings_completed": self.buildings_completed,
            "swept_at": isoformat_utc(self.swept_at),
        }


class ExpirationSweeper:
    """Periodic pass that persists time-based transitions.

    Expires active offers past their deadline and activates buildings whose
    countdown has elapsed. Both updates are conditional on the current status,
    so a pass racing an accept, cancel or finalize changes nothing they touched.
    The same transitions are also applied lazily by the read/write paths; the
    sweeper only bounds how long a stale row can sit in storage.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        clock: Clock = utc_now,
        interval_s: Optional[float] = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.clock = clock
        self.interval_s = float(interval_s) if interval_s is not None else config.get_sweep_interval_seconds()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one pass at ``now`` (defaults to the clock) in a single transaction."""
        now = now or self.clock()
        started = time.perf_counter()
        async with transaction(self.sessionmaker) as session:
            offers = await expire_stale_offers(session, now)
            buildings = await complete_due_buildings(session, now)
        metrics.record_sweep(time.perf_counter() - started, offers_expired=offers, buildings_completed=buildings)
        if offers or buildings:
            logger.info(
                "sweep_applied",
                extra={
                    "action_type": "sweep_applied",
                    "offers_expired": offers,
                    "buildings_completed": buildings,
                    "timestamp": isoformat_utc(now),
                },
            )
        return SweepResult(offers_expired=offers, buildings_completed=buildings, swept_at=now)

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.sweep()
            except StorageError:
                # Storage hiccups are retried on the next interval
                metrics.increment_event("sweeper.failed")
                logger.warning("sweep_failed", exc_info=True, extra={"action_type": "sweep_failed"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        """Schedule the periodic pass on the running event loop. Idempotent."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(self._stop_event), name="expiration-sweeper")
        logger.info("sweeper_started", extra={"action_type": "sweeper_started", "interval_s": self.interval_s})

    async def stop(self) -> None:
        """Signal the loop to finish and wait for the in-flight pass."""
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._stop_event = None
            logger.info("sweeper_stopped", extra={"action_type": "sweeper_stopped"})


__all__ = ["ExpirationSweeper", "SweepResult"]
