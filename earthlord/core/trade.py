"""Trade offer settlement.

An offer moves from ``active`` to exactly one of ``completed`` (accepted),
``cancelled`` (by its owner) or ``expired`` (deadline passed). Acceptance swaps
both sides' items in one transaction while the offer row and both ledger
accounts are locked, so an offer is settled at most once and the swap is never
partial. Offers are not escrowed: the owner's holdings are checked at posting
time and again at acceptance.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from earthlord.core import config
from earthlord.core.catalog import Catalog
from earthlord.core.database import transaction
from earthlord.core.errors import (
    AlreadyRated,
    CannotAcceptOwnOffer,
    HistoryNotFound,
    InsufficientItems,
    InvalidOffer,
    InvalidRating,
    InventoryItemNotFound,
    OfferExpired,
    OfferNotActive,
    OfferNotFound,
    PermissionDenied,
)
from earthlord.core.ledger import ResourceLedger
from earthlord.core.locks import LockManager, history_key, ledger_key, offer_key
from earthlord.core.metrics import metrics
from earthlord.core.time_utils import Clock, ensure_aware_utc, isoformat_utc, utc_now
from earthlord.core.trade_events import emit_trade_event, list_trade_history, record_trade_history
from earthlord.models.database import TradeHistory, TradeOffer, new_id
from earthlord.models.domain import (
    ItemCategory,
    OfferSnapshot,
    OfferSort,
    OfferStatus,
    RatingStats,
    TradeItem,
    TradeRecord,
    TradeStats,
    total_quantities,
)
from earthlord.models.schemas import TradeItemModel

logger = logging.getLogger(__name__)

TradeItemInput = Union[TradeItem, Mapping[str, Any], BaseModel]


def offer_from_row(row: TradeOffer) -> OfferSnapshot:
    return OfferSnapshot(
        id=row.id,
        owner_id=row.owner_id,
        offering=[TradeItem.from_dict(it) for it in row.offering_items or []],
        requesting=[TradeItem.from_dict(it) for it in row.requesting_items or []],
        status=OfferStatus(row.status),
        message=row.message,
        created_at=ensure_aware_utc(row.created_at),
        expires_at=ensure_aware_utc(row.expires_at),
        completed_at=ensure_aware_utc(row.completed_at),
        completed_by=row.completed_by,
    )


def history_from_row(row: TradeHistory) -> TradeRecord:
    return TradeRecord(
        id=row.id,
        offer_id=row.offer_id,
        seller_id=row.seller_id,
        buyer_id=row.buyer_id,
        seller_items=[TradeItem.from_dict(it) for it in row.seller_items or []],
        buyer_items=[TradeItem.from_dict(it) for it in row.buyer_items or []],
        completed_at=ensure_aware_utc(row.completed_at),
        seller_rating=row.seller_rating,
        seller_comment=row.seller_comment,
        buyer_rating=row.buyer_rating,
        buyer_comment=row.buyer_comment,
    )


async def expire_stale_offers(
    session: AsyncSession,
    now: datetime,
    offer_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> int:
    """Mark active offers past their deadline as expired.

    Guarded by ``status = 'active'`` so a concurrent accept or cancel that got
    there first is never overwritten.
    """
    stmt = (
        update(TradeOffer)
        .where(TradeOffer.status == OfferStatus.ACTIVE.value)
        .where(TradeOffer.expires_at < now)
        .values(status=OfferStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    if offer_id is not None:
        stmt = stmt.where(TradeOffer.id == offer_id)
    if owner_id is not None:
        stmt = stmt.where(TradeOffer.owner_id == owner_id)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


class TradeEngine:
    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        locks: LockManager,
        ledger: ResourceLedger,
        catalog: Catalog,
        clock: Clock = utc_now,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.locks = locks
        self.ledger = ledger
        self.catalog = catalog
        self.clock = clock

    # --- Validation ---

    def _coerce_items(self, items: Optional[Iterable[TradeItemInput]], side: str) -> List[TradeItem]:
        result: List[TradeItem] = []
        for raw in items or []:
            if isinstance(raw, TradeItem):
                data: Any = raw.to_dict()
            elif isinstance(raw, BaseModel):
                data = raw.model_dump()
            else:
                data = raw
            try:
                item = TradeItemModel.model_validate(data).to_domain()
            except ValidationError as exc:
                raise InvalidOffer(
                    f"Malformed {side} item: {exc.errors(include_url=False)[0]['msg']}",
                    side=side,
                ) from exc
            self.catalog.require_item(item.item_id)
            result.append(item)
        if not result:
            raise InvalidOffer(f"{side} items must not be empty", side=side)
        if len(result) > config.MAX_TRADE_ITEMS_PER_SIDE:
            raise InvalidOffer(
                f"At most {config.MAX_TRADE_ITEMS_PER_SIDE} {side} items per offer",
                side=side,
            )
        return result

    def _ttl(self, ttl_seconds: Optional[int]) -> int:
        if ttl_seconds is None:
            return config.get_default_offer_ttl_seconds()
        if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int):
            raise InvalidOffer("ttl_seconds must be an integer")
        if not (config.MIN_OFFER_TTL_SECONDS <= ttl_seconds <= config.MAX_OFFER_TTL_SECONDS):
            raise InvalidOffer(
                f"ttl_seconds must be between {config.MIN_OFFER_TTL_SECONDS} and {config.MAX_OFFER_TTL_SECONDS}",
                ttl_seconds=ttl_seconds,
            )
        return ttl_seconds

    async def _load_offer_for_update(self, session: AsyncSession, offer_id: str) -> TradeOffer:
        result = await session.execute(select(TradeOffer).where(TradeOffer.id == offer_id).with_for_update())
        row = result.scalar_one_or_none()
        if row is None:
            raise OfferNotFound(offer_id)
        return row

    # --- Offers ---

    async def create_offer(
        self,
        owner_id: str,
        offering: Sequence[TradeItemInput],
        requesting: Sequence[TradeItemInput],
        message: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> OfferSnapshot:
        """Post an active offer. The owner must currently hold ``offering``."""
        offer_items = self._coerce_items(offering, "offering")
        request_items = self._coerce_items(requesting, "requesting")
        ttl = self._ttl(ttl_seconds)
        if message is not None:
            message = message.strip() or None
        if message is not None and len(message) > config.MAX_OFFER_MESSAGE_LENGTH:
            raise InvalidOffer(f"message must be at most {config.MAX_OFFER_MESSAGE_LENGTH} characters")

        async with self.locks.hold([ledger_key(owner_id)]):
            async with transaction(self.sessionmaker) as session:
                check = await self.ledger.has(owner_id, total_quantities(offer_items), session=session)
                if not check.sufficient:
                    raise InsufficientItems(check.missing)
                now = self.clock()
                row = TradeOffer(
                    id=new_id(),
                    owner_id=owner_id,
                    offering_items=[it.to_dict() for it in offer_items],
                    requesting_items=[it.to_dict() for it in request_items],
                    status=OfferStatus.ACTIVE.value,
                    message=message,
                    created_at=now,
                    expires_at=now + timedelta(seconds=ttl),
                )
                session.add(row)
                await session.flush()
                snapshot = offer_from_row(row)
        emit_trade_event({
            "type": "offer_created",
            "offer_id": snapshot.id,
            "owner_id": owner_id,
            "status": snapshot.status.value,
            "timestamp": isoformat_utc(now),
        })
        return snapshot

    async def get_offer(self, offer_id: str) -> OfferSnapshot:
        """Read an offer, persisting expiry first if its deadline has passed."""
        async with transaction(self.sessionmaker) as session:
            now = self.clock()
            expired = await expire_stale_offers(session, now, offer_id=offer_id)
            row = await session.get(TradeOffer, offer_id, populate_existing=True)
            if row is None:
                raise OfferNotFound(offer_id)
            snapshot = offer_from_row(row)
        if expired:
            self._emit_expired(snapshot, now)
        return snapshot

    async def list_my_offers(self, owner_id: str, status: Optional[Union[str, OfferStatus]] = None) -> List[OfferSnapshot]:
        """All of the owner's offers, newest first; stale ones are expired first."""
        wanted = OfferStatus(status) if status is not None else None
        async with transaction(self.sessionmaker) as session:
            await expire_stale_offers(session, self.clock(), owner_id=owner_id)
            stmt = select(TradeOffer).where(TradeOffer.owner_id == owner_id)
            if wanted is not None:
                stmt = stmt.where(TradeOffer.status == wanted.value)
            stmt = stmt.order_by(TradeOffer.created_at.desc(), TradeOffer.id)
            rows = (await session.execute(stmt)).scalars().all()
            return [offer_from_row(row) for row in rows]

    async def list_available_offers(self, viewer_id: str, limit: int = 50, offset: int = 0) -> List[OfferSnapshot]:
        """Other players' offers that are active and not yet expired, newest first."""
        now = self.clock()
        stmt = (
            select(TradeOffer)
            .where(TradeOffer.status == OfferStatus.ACTIVE.value)
            .where(TradeOffer.expires_at >= now)
            .where(TradeOffer.owner_id != viewer_id)
            .order_by(TradeOffer.created_at.desc(), TradeOffer.id)
            .offset(max(0, int(offset)))
            .limit(max(0, int(limit)))
        )
        async with transaction(self.sessionmaker) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [offer_from_row(row) for row in rows]

    def _offer_matches(
        self,
        offer: OfferSnapshot,
        item_ids: Optional[Set[str]],
        category: Optional[ItemCategory],
        min_quantity: Optional[int],
    ) -> bool:
        both_sides = offer.offering + offer.requesting
        if item_ids and not any(it.item_id in item_ids for it in both_sides):
            return False
        if category is not None:
            definitions = [self.catalog.item_definition(it.item_id) for it in both_sides]
            if not any(d is not None and d.category is category for d in definitions):
                return False
        if min_quantity is not None:
            # Only the offered side counts toward the minimum
            if max((it.quantity for it in offer.offering), default=0) < min_quantity:
                return False
        return True

    async def search_available_offers(
        self,
        viewer_id: str,
        item_ids: Optional[Iterable[str]] = None,
        category: Optional[Union[str, ItemCategory]] = None,
        min_quantity: Optional[int] = None,
        sort: Union[str, OfferSort] = OfferSort.NEWEST,
        limit: int = 50,
        offset: int = 0,
    ) -> List[OfferSnapshot]:
        """Available offers narrowed by item, item category and offered quantity.

        ``item_ids`` and ``category`` match either side of an offer;
        ``min_quantity`` is compared with the largest offered line. Raises
        ValueError for an unknown category or sort order.
        """
        wanted_category = ItemCategory(category) if category is not None else None
        order = OfferSort(sort)
        wanted_ids = set(item_ids) if item_ids else None
        now = self.clock()
        stmt = (
            select(TradeOffer)
            .where(TradeOffer.status == OfferStatus.ACTIVE.value)
            .where(TradeOffer.expires_at >= now)
            .where(TradeOffer.owner_id != viewer_id)
            .order_by(TradeOffer.created_at.desc(), TradeOffer.id)
        )
        async with transaction(self.sessionmaker) as session:
            rows = (await session.execute(stmt)).scalars().all()
            offers = [offer_from_row(row) for row in rows]
        offers = [o for o in offers if self._offer_matches(o, wanted_ids, wanted_category, min_quantity)]
        if order is OfferSort.EXPIRING:
            offers.sort(key=lambda o: (o.expires_at, o.id))
        elif order is OfferSort.OLDEST:
            offers.sort(key=lambda o: (o.created_at, o.id))
        start = max(0, int(offset))
        return offers[start:start + max(0, int(limit))]

    async def offers_containing_item(self, viewer_id: str, item_id: str) -> List[OfferSnapshot]:
        """Available offers that give or ask for ``item_id``."""
        self.catalog.require_item(item_id)
        return await self.search_available_offers(viewer_id, item_ids=[item_id], limit=config.MAX_SEARCH_RESULTS)

    async def accept_offer(self, offer_id: str, player_id: str) -> TradeRecord:
        """Settle an active offer against ``player_id``.

        Transfers ``offering`` owner -> acceptor and ``requesting`` acceptor ->
        owner, completes the offer and appends the history record, all in one
        transaction. An offer found past its deadline is persisted as expired
        before OfferExpired is raised.
        """
        started = time.perf_counter()
        # The owner never changes, so it is safe to read it before locking.
        async with transaction(self.sessionmaker) as session:
            existing = await session.get(TradeOffer, offer_id)
            if existing is None:
                raise OfferNotFound(offer_id)
            owner_id = existing.owner_id

        expired_snapshot: Optional[OfferSnapshot] = None
        async with self.locks.hold([offer_key(offer_id), ledger_key(owner_id), ledger_key(player_id)]):
            async with transaction(self.sessionmaker) as session:
                row = await self._load_offer_for_update(session, offer_id)
                now = self.clock()
                if row.status == OfferStatus.ACTIVE.value and now > ensure_aware_utc(row.expires_at):
                    row.status = OfferStatus.EXPIRED.value
                    expired_snapshot = offer_from_row(row)
                else:
                    record = await self._settle(session, row, player_id, now)
        if expired_snapshot is not None:
            self._emit_expired(expired_snapshot, now)
            raise OfferExpired(offer_id)

        metrics.record_timer("trade.accept_s", time.perf_counter() - started)
        emit_trade_event({
            "type": "offer_accepted",
            "offer_id": offer_id,
            "history_id": record.id,
            "owner_id": owner_id,
            "counterparty_id": player_id,
            "status": OfferStatus.COMPLETED.value,
            "timestamp": isoformat_utc(now),
        })
        return record

    async def _settle(self, session: AsyncSession, row: TradeOffer, player_id: str, now: datetime) -> TradeRecord:
        if row.status == OfferStatus.EXPIRED.value:
            raise OfferExpired(row.id)
        if row.status != OfferStatus.ACTIVE.value:
            raise OfferNotActive(row.id, row.status)
        if row.owner_id == player_id:
            raise CannotAcceptOwnOffer(row.id)

        offering = total_quantities([TradeItem.from_dict(it) for it in row.offering_items or []])
        requesting = total_quantities([TradeItem.from_dict(it) for it in row.requesting_items or []])
        await self.ledger.lock_accounts(session, [row.owner_id, player_id])
        await self.ledger.deduct(player_id, requesting, session=session, insufficient=InsufficientItems)
        await self.ledger.deduct(row.owner_id, offering, session=session, insufficient=InventoryItemNotFound)
        await self.ledger.credit(player_id, offering, session=session)
        await self.ledger.credit(row.owner_id, requesting, session=session)

        row.status = OfferStatus.COMPLETED.value
        row.completed_at = now
        row.completed_by = player_id
        history = await record_trade_history(session, row, player_id, now)
        return history_from_row(history)

    async def cancel_offer(self, offer_id: str, player_id: str) -> OfferSnapshot:
        """Withdraw the owner's active offer. Nothing is refunded; nothing was held."""
        expired = False
        async with self.locks.hold([offer_key(offer_id)]):
            async with transaction(self.sessionmaker) as session:
                row = await self._load_offer_for_update(session, offer_id)
                if row.owner_id != player_id:
                    raise PermissionDenied("Only the owner can cancel this offer")
                now = self.clock()
                if row.status == OfferStatus.ACTIVE.value and now > ensure_aware_utc(row.expires_at):
                    row.status = OfferStatus.EXPIRED.value
                    expired = True
                elif row.status == OfferStatus.EXPIRED.value:
                    raise OfferExpired(offer_id)
                elif row.status != OfferStatus.ACTIVE.value:
                    raise OfferNotActive(offer_id, row.status)
                else:
                    row.status = OfferStatus.CANCELLED.value
                snapshot = offer_from_row(row)
        if expired:
            self._emit_expired(snapshot, now)
            raise OfferExpired(offer_id)
        emit_trade_event({
            "type": "offer_cancelled",
            "offer_id": offer_id,
            "owner_id": player_id,
            "status": snapshot.status.value,
            "timestamp": isoformat_utc(now),
        })
        return snapshot

    def _emit_expired(self, snapshot: OfferSnapshot, now: datetime) -> None:
        emit_trade_event({
            "type": "offer_expired",
            "offer_id": snapshot.id,
            "owner_id": snapshot.owner_id,
            "status": OfferStatus.EXPIRED.value,
            "timestamp": isoformat_utc(now),
        })

    # --- History ---

    async def list_trade_history(self, player_id: str, limit: int = 50, offset: int = 0) -> List[TradeRecord]:
        async with transaction(self.sessionmaker) as session:
            rows = await list_trade_history(session, player_id, limit=limit, offset=offset)
            return [history_from_row(row) for row in rows]

    async def get_history(self, history_id: str, player_id: str) -> TradeRecord:
        async with transaction(self.sessionmaker) as session:
            row = await session.get(TradeHistory, history_id)
            if row is None:
                raise HistoryNotFound(history_id)
            if player_id not in (row.seller_id, row.buyer_id):
                raise PermissionDenied("Only trade participants can view this record")
            return history_from_row(row)

    async def rate_trade(self, history_id: str, rater_id: str, rating: int, comment: Optional[str] = None) -> TradeRecord:
        """Record one party's rating of the other.

        The seller rates the buyer (``buyer_rating``); the buyer rates the
        seller (``seller_rating``). Each direction can be set once.
        """
        async with self.locks.hold([history_key(history_id)]):
            async with transaction(self.sessionmaker) as session:
                result = await session.execute(
                    select(TradeHistory).where(TradeHistory.id == history_id).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise HistoryNotFound(history_id)
                if rater_id not in (row.seller_id, row.buyer_id):
                    raise PermissionDenied("Only trade participants can rate this trade")
                if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                    raise InvalidRating(rating)
                comment = (comment or "").strip() or None
                if rater_id == row.seller_id:
                    if row.buyer_rating is not None:
                        raise AlreadyRated(history_id)
                    row.buyer_rating = rating
                    row.buyer_comment = comment
                    counterparty = row.buyer_id
                else:
                    if row.seller_rating is not None:
                        raise AlreadyRated(history_id)
                    row.seller_rating = rating
                    row.seller_comment = comment
                    counterparty = row.seller_id
                await session.flush()
                record = history_from_row(row)
        emit_trade_event({
            "type": "trade_rated",
            "offer_id": record.offer_id,
            "history_id": history_id,
            "owner_id": rater_id,
            "counterparty_id": counterparty,
            "status": "rated",
            "timestamp": isoformat_utc(self.clock()),
        })
        return record

    # --- Statistics ---

    async def _participant_history(self, session: AsyncSession, player_id: str) -> List[TradeHistory]:
        stmt = select(TradeHistory).where(
            or_(TradeHistory.seller_id == player_id, TradeHistory.buyer_id == player_id)
        )
        return list((await session.execute(stmt)).scalars().all())

    async def rating_stats(self, player_id: str) -> RatingStats:
        """Trade counts and the ratings ``player_id`` has received, per role."""
        async with transaction(self.sessionmaker) as session:
            rows = await self._participant_history(session, player_id)
        as_seller = [r for r in rows if r.seller_id == player_id]
        as_buyer = [r for r in rows if r.buyer_id == player_id]
        return RatingStats(
            player_id=player_id,
            total_trades=len(rows),
            as_seller_count=len(as_seller),
            as_buyer_count=len(as_buyer),
            seller_ratings=[r.seller_rating for r in as_seller if r.seller_rating is not None],
            buyer_ratings=[r.buyer_rating for r in as_buyer if r.buyer_rating is not None],
        )

    async def my_trade_stats(self, player_id: str) -> TradeStats:
        """Offer and settlement counters for one player.

        ``total_items_traded`` sums the quantities the player gave away;
        ``pending_ratings`` counts trades where the player has not yet rated
        the counterparty.
        """
        async with transaction(self.sessionmaker) as session:
            await expire_stale_offers(session, self.clock(), owner_id=player_id)
            counts = await session.execute(
                select(TradeOffer.status, func.count())
                .where(TradeOffer.owner_id == player_id)
                .group_by(TradeOffer.status)
            )
            by_status = {status: int(n) for status, n in counts.all()}
            rows = await self._participant_history(session, player_id)

        items_traded = 0
        pending = 0
        for row in rows:
            if row.seller_id == player_id:
                given = row.seller_items
                rated = row.buyer_rating is not None
            else:
                given = row.buyer_items
                rated = row.seller_rating is not None
            items_traded += sum(int(it["quantity"]) for it in given or [])
            if not rated:
                pending += 1
        return TradeStats(
            active_offers=by_status.get(OfferStatus.ACTIVE.value, 0),
            completed_trades=len(rows),
            cancelled_offers=by_status.get(OfferStatus.CANCELLED.value, 0),
            total_items_traded=items_traded,
            pending_ratings=pending,
        )


__all__ = [
    "TradeEngine",
    "expire_stale_offers",
    "offer_from_row",
    "history_from_row",
]
