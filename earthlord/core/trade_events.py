from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, TypedDict

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from earthlord.core.metrics import metrics
from earthlord.core.time_utils import isoformat_utc
from earthlord.models.database import TradeHistory, TradeOffer, new_id

logger = logging.getLogger(__name__)


class TradeEventPayload(TypedDict, total=False):
    # Standardized event shape
    type: str  # offer_created | offer_accepted | offer_cancelled | offer_expired | trade_rated
    offer_id: str
    history_id: Optional[str]
    owner_id: str
    counterparty_id: Optional[str]
    status: str
    timestamp: str  # ISO8601


def emit_trade_event(event: TradeEventPayload) -> Dict[str, Any]:
    """Log a trade lifecycle event and count it under ``trade.<type>``."""
    payload: Dict[str, Any] = dict(event)
    logger.info(
        "trade_event",
        extra={
            "action_type": payload.get("type"),
            "offer_id": payload.get("offer_id"),
            "history_id": payload.get("history_id"),
            "owner_id": payload.get("owner_id"),
            "counterparty_id": payload.get("counterparty_id"),
            "status": payload.get("status"),
            "timestamp": payload.get("timestamp"),
        },
    )
    metrics.increment_event(f"trade.{payload.get('type', 'unknown')}")
    return payload


async def record_trade_history(
    session: AsyncSession,
    offer: TradeOffer,
    buyer_id: str,
    completed_at: datetime,
) -> TradeHistory:
    """Append the immutable history row for a completed offer.

    Joins the caller's transaction; the row is flushed but not committed.
    """
    row = TradeHistory(
        id=new_id(),
        offer_id=offer.id,
        seller_id=offer.owner_id,
        buyer_id=buyer_id,
        seller_items=list(offer.offering_items or []),
        buyer_items=list(offer.requesting_items or []),
        completed_at=completed_at,
    )
    session.add(row)
    await session.flush()
    logger.info(
        "trade_history_recorded",
        extra={
            "action_type": "trade_history_recorded",
            "history_id": row.id,
            "offer_id": offer.id,
            "seller_id": row.seller_id,
            "buyer_id": row.buyer_id,
            "timestamp": isoformat_utc(completed_at),
        },
    )
    metrics.increment_event("db.trade_history_recorded")
    return row


async def list_trade_history(session: AsyncSession, player_id: str, limit: int = 50, offset: int = 0) -> List[TradeHistory]:
    """History rows where the player was seller or buyer, newest first."""
    stmt = (
        select(TradeHistory)
        .where(or_(TradeHistory.seller_id == player_id, TradeHistory.buyer_id == player_id))
        .order_by(TradeHistory.completed_at.desc(), TradeHistory.id)
        .offset(max(0, int(offset)))
        .limit(max(0, int(limit)))
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


__all__ = [
    "TradeEventPayload",
    "emit_trade_event",
    "record_trade_history",
    "list_trade_history",
]
