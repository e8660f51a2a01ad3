"""Construction lifecycle for player buildings.

A building is created ``constructing`` with an immutable deadline
(``build_due_at``). Its progress and completion are projected from the stored
timestamps on every read; the ``constructing -> active`` transition is
persisted lazily by the first write path that observes it (finalize, upgrade,
demolish) or by the expiration sweeper.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from earthlord.core import config
from earthlord.core.catalog import Catalog
from earthlord.core.database import transaction
from earthlord.core.errors import (
    BuildingNotFound,
    InvalidStatus,
    MaxBuildingsReached,
    MaxLevelReached,
    NotActive,
    PermissionDenied,
)
from earthlord.core.ledger import ResourceLedger
from earthlord.core.locks import LockManager, building_key, ledger_key, territory_key
from earthlord.core.metrics import metrics
from earthlord.core.time_utils import Clock, ensure_aware_utc, isoformat_utc, seconds_between, utc_now
from earthlord.models.database import PlayerBuilding, TerritoryCap, new_id
from earthlord.models.domain import (
    BuildingCategory,
    BuildingSnapshot,
    BuildingStatus,
    BuildingTemplate,
    ResourceCheckResult,
    ResourceQuantity,
)

logger = logging.getLogger(__name__)


def build_progress(started_at: datetime, due_at: datetime, now: datetime) -> float:
    """Fraction of the build elapsed at ``now``, clamped to [0, 1]."""
    total = seconds_between(started_at, due_at)
    if total <= 0:
        return 1.0
    elapsed = seconds_between(started_at, now)
    return max(0.0, min(1.0, elapsed / total))


def project_building(row: PlayerBuilding, template: Optional[BuildingTemplate], now: datetime) -> BuildingSnapshot:
    """Derive the observable state of a stored building at ``now``."""
    stored = BuildingStatus(row.status)
    due_at = ensure_aware_utc(row.build_due_at)
    if stored is BuildingStatus.ACTIVE:
        progress, complete = 1.0, True
    else:
        complete = ensure_aware_utc(now) >= due_at
        progress = 1.0 if complete else build_progress(row.build_started_at, due_at, now)
    location: Optional[Tuple[float, float]] = None
    if row.location_lat is not None and row.location_lon is not None:
        location = (float(row.location_lat), float(row.location_lon))
    can_upgrade = bool(complete and template is not None and row.level < template.max_level)
    return BuildingSnapshot(
        id=row.id,
        owner_id=row.owner_id,
        territory_id=row.territory_id,
        template_id=row.template_id,
        building_name=row.building_name,
        stored_status=stored,
        level=int(row.level),
        location=location,
        build_started_at=ensure_aware_utc(row.build_started_at),
        build_due_at=due_at,
        build_completed_at=ensure_aware_utc(row.build_completed_at),
        observed_at=ensure_aware_utc(now),
        progress=progress,
        is_complete=complete,
        can_upgrade=can_upgrade,
    )


def upgrade_cost(template: BuildingTemplate, current_level: int, factor: int = 1) -> ResourceQuantity:
    """Resources needed to go from ``current_level`` to the next level."""
    return {item_id: int(qty) * int(current_level) * int(factor) for item_id, qty in template.required_resources.items()}


async def complete_due_buildings(session: AsyncSession, now: datetime, building_id: Optional[str] = None) -> int:
    """Persist ``active`` for constructing buildings whose deadline has passed.

    The UPDATE is guarded by the current status, so it never touches a row
    another writer already moved on.
    """
    stmt = (
        update(PlayerBuilding)
        .where(PlayerBuilding.status == BuildingStatus.CONSTRUCTING.value)
        .where(PlayerBuilding.build_due_at <= now)
        .values(status=BuildingStatus.ACTIVE.value, build_completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if building_id is not None:
        stmt = stmt.where(PlayerBuilding.id == building_id)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


class ConstructionManager:
    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        locks: LockManager,
        ledger: ResourceLedger,
        catalog: Catalog,
        clock: Clock = utc_now,
        upgrade_cost_factor: Optional[int] = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.locks = locks
        self.ledger = ledger
        self.catalog = catalog
        self.clock = clock
        self.upgrade_cost_factor = upgrade_cost_factor if upgrade_cost_factor is not None else config.UPGRADE_COST_FACTOR

    def _project(self, row: PlayerBuilding, now: datetime) -> BuildingSnapshot:
        return project_building(row, self.catalog.template(row.template_id), now)

    async def _load_for_update(self, session: AsyncSession, building_id: str) -> PlayerBuilding:
        result = await session.execute(
            select(PlayerBuilding).where(PlayerBuilding.id == building_id).with_for_update()
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise BuildingNotFound(building_id)
        return row

    def _mark_active(self, row: PlayerBuilding, now: datetime) -> bool:
        """Persist completion on ``row`` if its deadline has passed."""
        if row.status != BuildingStatus.CONSTRUCTING.value or now < ensure_aware_utc(row.build_due_at):
            return False
        row.status = BuildingStatus.ACTIVE.value
        row.build_completed_at = now
        row.updated_at = now
        metrics.increment_event("construction.completed")
        logger.info(
            "construction_completed",
            extra={
                "action_type": "construction_completed",
                "building_id": row.id,
                "owner_id": row.owner_id,
                "template_id": row.template_id,
                "timestamp": isoformat_utc(now),
            },
        )
        return True

    async def _lock_territory_cap(self, session: AsyncSession, territory_id: str, template_id: str) -> None:
        """Create the (territory, template) cap row if missing and lock it FOR UPDATE."""
        values = {"territory_id": territory_id, "template_id": template_id, "created_at": self.clock()}
        dialect = session.bind.dialect.name if session.bind is not None else ""
        key_columns = ["territory_id", "template_id"]
        if dialect == "postgresql":
            await session.execute(pg_insert(TerritoryCap).values(**values).on_conflict_do_nothing(index_elements=key_columns))
        elif dialect == "sqlite":
            await session.execute(sqlite_insert(TerritoryCap).values(**values).on_conflict_do_nothing(index_elements=key_columns))
        elif await session.get(TerritoryCap, (territory_id, template_id)) is None:
            session.add(TerritoryCap(**values))
            await session.flush()
        await session.execute(
            select(TerritoryCap.territory_id)
            .where(TerritoryCap.territory_id == territory_id, TerritoryCap.template_id == template_id)
            .with_for_update()
        )

    async def count_in_territory(self, territory_id: str, template_id: str, session: Optional[AsyncSession] = None) -> int:
        stmt = (
            select(func.count())
            .select_from(PlayerBuilding)
            .where(PlayerBuilding.territory_id == territory_id, PlayerBuilding.template_id == template_id)
        )
        if session is not None:
            return int((await session.execute(stmt)).scalar_one())
        async with transaction(self.sessionmaker) as own:
            return int((await own.execute(stmt)).scalar_one())

    async def check_resources(self, template_id: str, player_id: str) -> ResourceCheckResult:
        """Advisory affordability check; start_construction re-validates."""
        template = self.catalog.require_template(template_id)
        return await self.ledger.has(player_id, template.required_resources)

    async def start_construction(
        self,
        player_id: str,
        template_id: str,
        territory_id: str,
        location: Optional[Tuple[float, float]] = None,
        building_name: Optional[str] = None,
    ) -> BuildingSnapshot:
        """Deduct the template cost and create a constructing building.

        Raises TemplateNotFound, MaxBuildingsReached or InsufficientResources;
        on any failure nothing is deducted and no building exists.
        """
        template = self.catalog.require_template(template_id)
        started = time.perf_counter()
        keys = [territory_key(territory_id, template_id), ledger_key(player_id)]
        async with self.locks.hold(keys):
            async with transaction(self.sessionmaker) as session:
                await self._lock_territory_cap(session, territory_id, template_id)
                count = await self.count_in_territory(territory_id, template_id, session=session)
                if count >= template.max_per_territory:
                    metrics.increment_event("construction.rejected_cap")
                    raise MaxBuildingsReached(template.max_per_territory)
                await self.ledger.deduct(player_id, template.required_resources, session=session)
                now = self.clock()
                row = PlayerBuilding(
                    id=new_id(),
                    owner_id=player_id,
                    territory_id=territory_id,
                    template_id=template.id,
                    building_name=building_name or template.name,
                    status=BuildingStatus.CONSTRUCTING.value,
                    level=1,
                    location_lat=location[0] if location else None,
                    location_lon=location[1] if location else None,
                    build_started_at=now,
                    build_due_at=now + timedelta(seconds=template.build_time_seconds),
                    build_completed_at=None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                await session.flush()
                snapshot = self._project(row, now)
        metrics.increment_event("construction.started")
        metrics.record_timer("construction.start_s", time.perf_counter() - started)
        logger.info(
            "construction_started",
            extra={
                "action_type": "construction_started",
                "building_id": snapshot.id,
                "owner_id": player_id,
                "territory_id": territory_id,
                "template_id": template.id,
                "due_at": isoformat_utc(snapshot.build_due_at),
                "timestamp": isoformat_utc(now),
            },
        )
        return snapshot

    async def get_building(self, building_id: str) -> BuildingSnapshot:
        async with transaction(self.sessionmaker) as session:
            row = await session.get(PlayerBuilding, building_id)
            if row is None:
                raise BuildingNotFound(building_id)
            return self._project(row, self.clock())

    async def list_buildings(self, player_id: str, territory_id: Optional[str] = None) -> List[BuildingSnapshot]:
        stmt = select(PlayerBuilding).where(PlayerBuilding.owner_id == player_id)
        if territory_id is not None:
            stmt = stmt.where(PlayerBuilding.territory_id == territory_id)
        stmt = stmt.order_by(PlayerBuilding.created_at, PlayerBuilding.id)
        async with transaction(self.sessionmaker) as session:
            rows = (await session.execute(stmt)).scalars().all()
            now = self.clock()
            return [self._project(row, now) for row in rows]

    async def count_by_category(self, player_id: str, category: Union[str, BuildingCategory]) -> int:
        """Number of the player's buildings whose template is in ``category``.

        Raises ValueError for an unknown category.
        """
        template_ids = [t.id for t in self.catalog.templates(category)]
        if not template_ids:
            return 0
        stmt = (
            select(func.count())
            .select_from(PlayerBuilding)
            .where(PlayerBuilding.owner_id == player_id, PlayerBuilding.template_id.in_(template_ids))
        )
        async with transaction(self.sessionmaker) as session:
            return int((await session.execute(stmt)).scalar_one())

    async def finalize_construction(self, building_id: str, player_id: str) -> BuildingSnapshot:
        """Persist completion of a finished build.

        InvalidStatus while the countdown is still running; a no-op on a
        building that is already active.
        """
        async with self.locks.hold([building_key(building_id)]):
            async with transaction(self.sessionmaker) as session:
                row = await self._load_for_update(session, building_id)
                if row.owner_id != player_id:
                    raise PermissionDenied("Only the owner can finalize this building")
                now = self.clock()
                if row.status == BuildingStatus.CONSTRUCTING.value and not self._mark_active(row, now):
                    remaining = max(0.0, seconds_between(now, row.build_due_at))
                    raise InvalidStatus(
                        "Construction is still in progress",
                        building_id=building_id,
                        remaining_seconds=remaining,
                    )
                return self._project(row, now)

    async def upgrade_building(self, building_id: str, player_id: str) -> BuildingSnapshot:
        """Charge the upgrade cost and raise the building one level.

        A build whose countdown has elapsed is persisted as active in its own
        transaction first, so that transition survives an unaffordable upgrade.
        """
        async with self.locks.hold([building_key(building_id), ledger_key(player_id)]):
            async with transaction(self.sessionmaker) as session:
                row = await self._load_for_update(session, building_id)
                if row.owner_id != player_id:
                    raise PermissionDenied("Only the owner can upgrade this building")
                self._mark_active(row, self.clock())

            async with transaction(self.sessionmaker) as session:
                row = await self._load_for_update(session, building_id)
                if row.status != BuildingStatus.ACTIVE.value:
                    raise NotActive(building_id)
                template = self.catalog.require_template(row.template_id)
                if row.level >= template.max_level:
                    raise MaxLevelReached(template.max_level)
                cost = upgrade_cost(template, row.level, self.upgrade_cost_factor)
                await self.ledger.deduct(player_id, cost, session=session)
                now = self.clock()
                row.level = int(row.level) + 1
                row.updated_at = now
                await session.flush()
                snapshot = self._project(row, now)
        metrics.increment_event("construction.upgraded")
        logger.info(
            "building_upgraded",
            extra={
                "action_type": "building_upgraded",
                "building_id": building_id,
                "owner_id": player_id,
                "level": snapshot.level,
                "cost": cost,
                "timestamp": isoformat_utc(now),
            },
        )
        return snapshot

    async def demolish_building(self, building_id: str, player_id: str) -> BuildingSnapshot:
        """Remove a building without refund and return its final state."""
        async with self.locks.hold([building_key(building_id)]):
            async with transaction(self.sessionmaker) as session:
                row = await self._load_for_update(session, building_id)
                if row.owner_id != player_id:
                    raise PermissionDenied("Only the owner can demolish this building")
                now = self.clock()
                self._mark_active(row, now)
                snapshot = self._project(row, now)
                await session.delete(row)
        metrics.increment_event("construction.demolished")
        logger.info(
            "building_demolished",
            extra={
                "action_type": "building_demolished",
                "building_id": building_id,
                "owner_id": player_id,
                "template_id": snapshot.template_id,
                "timestamp": isoformat_utc(now),
            },
        )
        return snapshot


__all__ = [
    "ConstructionManager",
    "build_progress",
    "project_building",
    "upgrade_cost",
    "complete_due_buildings",
]
