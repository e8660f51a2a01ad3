from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from earthlord.auth.security import get_current_player_id, rate_limiter_dependency
from earthlord.core.state import Services, get_services
from earthlord.models.schemas import TradeItemModel

router = APIRouter(prefix="/trade", tags=["trade"])


class CreateOfferRequest(BaseModel):
    offering: List[TradeItemModel]
    requesting: List[TradeItemModel]
    message: Optional[str] = None
    ttl_seconds: Optional[int] = None


class RateTradeRequest(BaseModel):
    rating: int
    comment: Optional[str] = Field(default=None, max_length=500)


@router.post("/offers")
async def create_offer(
    payload: CreateOfferRequest,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    """Post an items-for-items offer.

    Body example:
    {"offering": [{"item_id": "item_wood", "quantity": 30}],
     "requesting": [{"item_id": "item_scrap_metal", "quantity": 10}],
     "ttl_seconds": 3600}
    """
    offer = await services.trade.create_offer(
        player_id,
        payload.offering,
        payload.requesting,
        message=payload.message,
        ttl_seconds=payload.ttl_seconds,
    )
    return offer.to_dict()


@router.get("/offers")
async def list_available_offers(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    item_id: Optional[List[str]] = Query(default=None),
    category: Optional[str] = Query(default=None),
    min_quantity: Optional[int] = Query(default=None, ge=1),
    sort: str = Query(default="newest"),
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    """Active, unexpired offers posted by other players.

    Without filters this is a newest-first page. ``item_id`` (repeatable),
    ``category`` and ``min_quantity`` narrow the results; ``sort`` is one of
    newest, oldest or expiring.
    """
    if not item_id and category is None and min_quantity is None and sort == "newest":
        offers = await services.trade.list_available_offers(player_id, limit=limit, offset=offset)
    else:
        try:
            offers = await services.trade.search_available_offers(
                player_id,
                item_ids=item_id,
                category=category,
                min_quantity=min_quantity,
                sort=sort,
                limit=limit,
                offset=offset,
            )
        except ValueError:
            raise HTTPException(status_code=422, detail="Unknown item category or sort order")
    return {"offers": [o.to_dict() for o in offers]}


@router.get("/offers/mine")
async def list_my_offers(
    status: Optional[str] = Query(default=None),
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    try:
        offers = await services.trade.list_my_offers(player_id, status=status)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown offer status: {status}")
    return {"offers": [o.to_dict() for o in offers]}


@router.get("/offers/{offer_id}")
async def get_offer(
    offer_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    return (await services.trade.get_offer(offer_id)).to_dict()


@router.post("/offers/{offer_id}/accept")
async def accept_offer(
    offer_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    record = await services.trade.accept_offer(offer_id, player_id)
    return {"accepted": True, "offer_id": offer_id, "history": record.to_dict()}


@router.post("/offers/{offer_id}/cancel")
async def cancel_offer(
    offer_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    return (await services.trade.cancel_offer(offer_id, player_id)).to_dict()


@router.get("/history")
async def list_trade_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    """The player's completed trades as seller or buyer, newest first."""
    records = await services.trade.list_trade_history(player_id, limit=limit, offset=offset)
    return {"history": [r.to_dict() for r in records]}


@router.get("/history/{history_id}")
async def get_trade_history(
    history_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    return (await services.trade.get_history(history_id, player_id)).to_dict()


@router.post("/history/{history_id}/rating")
async def rate_trade(
    history_id: str,
    payload: RateTradeRequest,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    record = await services.trade.rate_trade(history_id, player_id, payload.rating, comment=payload.comment)
    return record.to_dict()


@router.get("/stats/mine")
async def my_trade_stats(
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    return (await services.trade.my_trade_stats(player_id)).to_dict()


@router.get("/stats/ratings/{target_id}")
async def rating_stats(
    target_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    """Ratings received by any player, as seller and as buyer."""
    return (await services.trade.rating_stats(target_id)).to_dict()


__all__ = ["router"]
