import asyncio
from datetime import timedelta

import pytest

from earthlord.core.errors import (
    AlreadyRated,
    CannotAcceptOwnOffer,
    HistoryNotFound,
    InsufficientItems,
    InvalidOffer,
    InvalidRating,
    InventoryItemNotFound,
    ItemNotFound,
    OfferExpired,
    OfferNotActive,
    OfferNotFound,
    PermissionDenied,
)
from earthlord.models.domain import ItemQuality, OfferStatus, TradeItem

WOOD_30 = [{"item_id": "item_wood", "quantity": 30}]
SCRAP_10 = [{"item_id": "item_scrap_metal", "quantity": 10}]


def _post_wood_for_scrap(run, ttl_seconds=3600):
    async def scenario(svc):
        await svc.ledger.credit("alice", {"item_wood": 30})
        await svc.ledger.credit("bob", {"item_scrap_metal": 12})
        return await svc.trade.create_offer("alice", WOOD_30, SCRAP_10, message="fresh pine", ttl_seconds=ttl_seconds)

    return run(scenario)


def test_create_offer(run, t0):
    offer = _post_wood_for_scrap(run)
    assert offer.status is OfferStatus.ACTIVE
    assert offer.owner_id == "alice"
    assert offer.offering == [TradeItem("item_wood", 30)]
    assert offer.requesting == [TradeItem("item_scrap_metal", 10)]
    assert offer.message == "fresh pine"
    assert offer.expires_at == t0 + timedelta(seconds=3600)
    # Offers are not escrowed
    assert run(lambda svc: svc.ledger.balances("alice")) == {"item_wood": 30}


def test_create_offer_requires_holdings(run):
    async def scenario(svc):
        await svc.ledger.credit("alice", {"item_wood": 10})
        with pytest.raises(InsufficientItems) as exc:
            await svc.trade.create_offer("alice", WOOD_30, SCRAP_10)
        return exc.value

    err = run(scenario)
    assert err.missing == {"item_wood": 20}
    assert err.as_dict()["item_ids"] == ["item_wood"]


def test_create_offer_validation(run):
    async def scenario(svc):
        await svc.ledger.credit("alice", {"item_wood": 30})
        with pytest.raises(InvalidOffer):
            await svc.trade.create_offer("alice", [], SCRAP_10)
        with pytest.raises(InvalidOffer):
            await svc.trade.create_offer("alice", WOOD_30, [])
        with pytest.raises(InvalidOffer):
            await svc.trade.create_offer("alice", [{"item_id": "item_wood", "quantity": 0}], SCRAP_10)
        with pytest.raises(InvalidOffer):
            await svc.trade.create_offer("alice", WOOD_30, SCRAP_10, ttl_seconds=10)
        with pytest.raises(InvalidOffer):
            await svc.trade.create_offer("alice", WOOD_30, SCRAP_10, message="x" * 201)
        with pytest.raises(ItemNotFound):
            await svc.trade.create_offer("alice", WOOD_30, [{"item_id": "item_unobtainium", "quantity": 1}])
        return await svc.trade.list_my_offers("alice")

    assert run(scenario) == []


@pytest.mark.parametrize(
    "item",
    [
        {"quantity": 3},
        {"item_id": "item_wood", "quantity": "3"},
        {"item_id": "item_wood", "quantity": True},
        {"item_id": "item_wood", "quantity": -1},
        {"item_id": "item_wood", "quantity": 3, "quality": "shiny"},
    ],
)
def test_malformed_items_are_rejected_with_their_side(run, item):
    async def scenario(svc):
        await svc.ledger.credit("alice", {"item_wood": 30})
        with pytest.raises(InvalidOffer) as exc:
            await svc.trade.create_offer("alice", WOOD_30, [item])
        return exc.value

    err = run(scenario)
    assert err.params["side"] == "requesting"
    assert err.__cause__ is not None


def test_quality_is_carried_on_offer_items(run):
    async def scenario(svc):
        await svc.ledger.credit("alice", {"item_flashlight": 1})
        return await svc.trade.create_offer(
            "alice",
            [{"item_id": "item_flashlight", "quantity": 1, "quality": "worn"}],
            [{"item_id": "item_canned_food", "quantity": 3}],
        )

    offer = run(scenario)
    assert offer.offering[0].quality is ItemQuality.WORN
    assert offer.to_dict()["offering"][0]["quality"] == "worn"


def test_accept_swaps_items_and_records_history(run, clock, t0):
    offer = _post_wood_for_scrap(run)
    clock.advance(10)

    async def accept(svc):
        record = await svc.trade.accept_offer(offer.id, "bob")
        return (
            record,
            await svc.trade.get_offer(offer.id),
            await svc.ledger.balances("alice"),
            await svc.ledger.balances("bob"),
        )

    record, settled, alice, bob = run(accept)
    assert alice == {"item_scrap_metal": 10}
    assert bob == {"item_scrap_metal": 2, "item_wood": 30}
    assert settled.status is OfferStatus.COMPLETED
    assert settled.completed_by == "bob"
    assert settled.completed_at == t0 + timedelta(seconds=10)
    assert record.offer_id == offer.id
    assert record.seller_id == "alice"
    assert record.buyer_id == "bob"
    assert record.seller_items == [TradeItem("item_wood", 30)]
    assert record.buyer_items == [TradeItem("item_scrap_metal", 10)]
    assert record.completed_at == t0 + timedelta(seconds=10)


def test_accept_after_deadline_persists_expiry(run, clock):
    offer = _post_wood_for_scrap(run)
    clock.advance(3601)

    async def accept(svc):
        with pytest.raises(OfferExpired):
            await svc.trade.accept_offer(offer.id, "bob")
        with pytest.raises(OfferExpired):
            await svc.trade.accept_offer(offer.id, "bob")
        return await svc.trade.list_my_offers("alice", status="expired"), await svc.ledger.balances("bob")

    expired, bob = run(accept)
    assert [o.id for o in expired] == [offer.id]
    assert bob == {"item_scrap_metal": 12}


def test_offer_is_still_acceptable_at_its_deadline(run, clock):
    offer = _post_wood_for_scrap(run)
    clock.advance(3600)
    record = run(lambda svc: svc.trade.accept_offer(offer.id, "bob"))
    assert record.offer_id == offer.id


def test_get_offer_reports_expiry(run, clock):
    offer = _post_wood_for_scrap(run)
    clock.advance(3601)
    assert run(lambda svc: svc.trade.get_offer(offer.id)).status is OfferStatus.EXPIRED


def test_unknown_offer(run):
    async def scenario(svc):
        with pytest.raises(OfferNotFound):
            await svc.trade.accept_offer("missing", "bob")
        with pytest.raises(OfferNotFound):
            await svc.trade.get_offer("missing")

    run(scenario)


def test_cannot_accept_own_offer(run):
    offer = _post_wood_for_scrap(run)

    async def accept(svc):
        with pytest.raises(CannotAcceptOwnOffer):
            await svc.trade.accept_offer(offer.id, "alice")
        return await svc.trade.get_offer(offer.id)

    assert run(accept).status is OfferStatus.ACTIVE


def test_acceptor_without_requested_items(run):
    offer = _post_wood_for_scrap(run)

    async def accept(svc):
        with pytest.raises(InsufficientItems) as exc:
            await svc.trade.accept_offer(offer.id, "carol")
        return exc.value, await svc.trade.get_offer(offer.id), await svc.ledger.balances("alice")

    err, still_open, alice = run(accept)
    assert err.missing == {"item_scrap_metal": 10}
    assert still_open.status is OfferStatus.ACTIVE
    assert alice == {"item_wood": 30}


def test_owner_spent_the_offered_items(run):
    offer = _post_wood_for_scrap(run)

    async def accept(svc):
        await svc.construction.start_construction("alice", "campfire", "t1")
        with pytest.raises(InventoryItemNotFound) as exc:
            await svc.trade.accept_offer(offer.id, "bob")
        return exc.value, await svc.trade.get_offer(offer.id), await svc.ledger.balances("bob")

    err, still_open, bob = run(accept)
    assert err.missing == {"item_wood": 30}
    assert still_open.status is OfferStatus.ACTIVE
    assert bob == {"item_scrap_metal": 12}


def test_cancel_then_accept(run):
    offer = _post_wood_for_scrap(run)

    async def scenario(svc):
        with pytest.raises(PermissionDenied):
            await svc.trade.cancel_offer(offer.id, "bob")
        cancelled = await svc.trade.cancel_offer(offer.id, "alice")
        with pytest.raises(OfferNotActive):
            await svc.trade.cancel_offer(offer.id, "alice")
        with pytest.raises(OfferNotActive) as exc:
            await svc.trade.accept_offer(offer.id, "bob")
        return cancelled, exc.value, await svc.ledger.balances("alice")

    cancelled, err, alice = run(scenario)
    assert cancelled.status is OfferStatus.CANCELLED
    assert err.params["status"] == "cancelled"
    assert alice == {"item_wood": 30}


def test_cancel_after_deadline(run, clock):
    offer = _post_wood_for_scrap(run)
    clock.advance(3601)

    async def scenario(svc):
        with pytest.raises(OfferExpired):
            await svc.trade.cancel_offer(offer.id, "alice")
        return await svc.trade.get_offer(offer.id)

    assert run(scenario).status is OfferStatus.EXPIRED


def test_double_accept_race_settles_once(run):
    offer = _post_wood_for_scrap(run)

    async def race(svc):
        await svc.ledger.credit("carol", {"item_scrap_metal": 10})
        results = await asyncio.gather(
            svc.trade.accept_offer(offer.id, "bob"),
            svc.trade.accept_offer(offer.id, "carol"),
            return_exceptions=True,
        )
        balances = {pid: await svc.ledger.balances(pid) for pid in ("alice", "bob", "carol")}
        history = await svc.trade.list_trade_history("alice")
        return results, balances, history

    results, balances, history = run(race)
    assert sum(1 for r in results if isinstance(r, OfferNotActive)) == 1
    assert len(history) == 1
    # Totals across all players are conserved
    wood = sum(b.get("item_wood", 0) for b in balances.values())
    scrap = sum(b.get("item_scrap_metal", 0) for b in balances.values())
    assert wood == 30
    assert scrap == 22
    assert balances["alice"] == {"item_scrap_metal": 10}


def test_available_offers_excludes_own_and_expired(run, clock):
    first = _post_wood_for_scrap(run, ttl_seconds=60)

    async def post_second(svc):
        await svc.ledger.credit("dave", {"item_rope": 4})
        return await svc.trade.create_offer(
            "dave", [{"item_id": "item_rope", "quantity": 4}], [{"item_id": "item_bandage", "quantity": 2}]
        )

    clock.advance(1)
    second = run(post_second)

    board = run(lambda svc: svc.trade.list_available_offers("bob"))
    assert [o.id for o in board] == [second.id, first.id]
    assert [o.id for o in run(lambda svc: svc.trade.list_available_offers("alice"))] == [second.id]

    clock.advance(61)
    assert [o.id for o in run(lambda svc: svc.trade.list_available_offers("bob"))] == [second.id]
    mine = run(lambda svc: svc.trade.list_my_offers("alice"))
    assert [o.status for o in mine] == [OfferStatus.EXPIRED]


def test_list_my_offers_rejects_unknown_status(run):
    async def scenario(svc):
        with pytest.raises(ValueError):
            await svc.trade.list_my_offers("alice", status="pending")

    run(scenario)


def _settled_trade(run):
    offer = _post_wood_for_scrap(run)
    return run(lambda svc: svc.trade.accept_offer(offer.id, "bob"))


def test_history_visible_to_both_parties(run):
    record = _settled_trade(run)

    async def scenario(svc):
        with pytest.raises(PermissionDenied):
            await svc.trade.get_history(record.id, "mallory")
        with pytest.raises(HistoryNotFound):
            await svc.trade.get_history("missing", "alice")
        return (
            await svc.trade.list_trade_history("alice"),
            await svc.trade.list_trade_history("bob"),
            await svc.trade.list_trade_history("mallory"),
            await svc.trade.get_history(record.id, "bob"),
        )

    seller, buyer, outsider, fetched = run(scenario)
    assert [r.id for r in seller] == [record.id]
    assert [r.id for r in buyer] == [record.id]
    assert outsider == []
    assert fetched == record


def test_rating_rules(run):
    record = _settled_trade(run)

    async def scenario(svc):
        with pytest.raises(HistoryNotFound):
            await svc.trade.rate_trade("missing", "alice", 5)
        with pytest.raises(PermissionDenied):
            await svc.trade.rate_trade(record.id, "mallory", 5)
        with pytest.raises(InvalidRating):
            await svc.trade.rate_trade(record.id, "alice", 6)
        with pytest.raises(InvalidRating):
            await svc.trade.rate_trade(record.id, "alice", 0)
        by_seller = await svc.trade.rate_trade(record.id, "alice", 5, comment="quick trade")
        with pytest.raises(AlreadyRated):
            await svc.trade.rate_trade(record.id, "alice", 4)
        by_buyer = await svc.trade.rate_trade(record.id, "bob", 3)
        return by_seller, by_buyer

    by_seller, by_buyer = run(scenario)
    assert by_seller.buyer_rating == 5
    assert by_seller.buyer_comment == "quick trade"
    assert by_seller.seller_rating is None
    assert by_buyer.seller_rating == 3
    assert by_buyer.buyer_rating == 5


def _post_board(run, clock):
    """Three offers from different owners, one second apart."""
    wood = _post_wood_for_scrap(run)

    async def post(svc, owner, offering, requesting, ttl):
        await svc.ledger.credit(owner, {it["item_id"]: it["quantity"] for it in offering})
        return await svc.trade.create_offer(owner, offering, requesting, ttl_seconds=ttl)

    clock.advance(1)
    rope = run(lambda svc: post(
        svc, "dave", [{"item_id": "item_rope", "quantity": 4}], [{"item_id": "item_bandage", "quantity": 2}], 600
    ))
    clock.advance(1)
    food = run(lambda svc: post(
        svc, "erin", [{"item_id": "item_canned_food", "quantity": 2}], [{"item_id": "item_wood", "quantity": 5}], 7200
    ))
    return wood, rope, food


def test_search_available_offers_filters(run, clock):
    wood, rope, food = _post_board(run, clock)

    def ids(**kwargs):
        return [o.id for o in run(lambda svc: svc.trade.search_available_offers("bob", **kwargs))]

    assert ids() == [food.id, rope.id, wood.id]
    assert ids(item_ids=["item_wood"]) == [food.id, wood.id]
    assert ids(item_ids=["item_wood", "item_bandage"]) == [food.id, rope.id, wood.id]
    assert ids(category="medical") == [rope.id]
    assert ids(category="material") == [food.id, wood.id]
    assert ids(min_quantity=4) == [rope.id, wood.id]
    assert ids(category="material", min_quantity=10) == [wood.id]
    assert [o.id for o in run(lambda svc: svc.trade.search_available_offers("alice"))] == [food.id, rope.id]


def test_search_available_offers_sorting_and_paging(run, clock):
    wood, rope, food = _post_board(run, clock)

    def ids(**kwargs):
        return [o.id for o in run(lambda svc: svc.trade.search_available_offers("bob", **kwargs))]

    assert ids(sort="oldest") == [wood.id, rope.id, food.id]
    assert ids(sort="expiring") == [rope.id, wood.id, food.id]
    assert ids(sort="oldest", offset=1, limit=1) == [rope.id]

    clock.advance(600)
    assert ids(sort="expiring") == [wood.id, food.id]

    async def bad_input(svc):
        with pytest.raises(ValueError):
            await svc.trade.search_available_offers("bob", category="jewelry")
        with pytest.raises(ValueError):
            await svc.trade.search_available_offers("bob", sort="cheapest")

    run(bad_input)


def test_offers_containing_item(run, clock):
    wood, rope, food = _post_board(run, clock)

    async def scenario(svc):
        with pytest.raises(ItemNotFound):
            await svc.trade.offers_containing_item("bob", "item_unobtainium")
        return (
            await svc.trade.offers_containing_item("bob", "item_rope"),
            await svc.trade.offers_containing_item("bob", "item_wood"),
            await svc.trade.offers_containing_item("bob", "item_radio"),
        )

    ropes, woods, radios = run(scenario)
    assert [o.id for o in ropes] == [rope.id]
    assert [o.id for o in woods] == [food.id, wood.id]
    assert radios == []


def _two_trades(run):
    """alice sells wood to bob, then buys wood back from bob with scrap."""
    first = _settled_trade(run)

    async def second_trade(svc):
        offer = await svc.trade.create_offer(
            "bob", [{"item_id": "item_wood", "quantity": 10}], [{"item_id": "item_scrap_metal", "quantity": 10}]
        )
        return await svc.trade.accept_offer(offer.id, "alice")

    return first, run(second_trade)


def test_rating_stats(run):
    first, second = _two_trades(run)

    empty = run(lambda svc: svc.trade.rating_stats("alice"))
    assert (empty.total_trades, empty.as_seller_count, empty.as_buyer_count) == (2, 1, 1)
    assert empty.overall_rating is None

    async def rate(svc):
        await svc.trade.rate_trade(first.id, "bob", 4)
        await svc.trade.rate_trade(first.id, "alice", 2)
        await svc.trade.rate_trade(second.id, "bob", 5)
        return await svc.trade.rating_stats("alice"), await svc.trade.rating_stats("bob")

    alice, bob = run(rate)
    assert alice.average_seller_rating == 4.0
    assert alice.average_buyer_rating == 5.0
    assert alice.overall_rating == pytest.approx(4.5)
    assert bob.average_buyer_rating == 2.0
    assert bob.average_seller_rating is None
    assert bob.to_dict()["overall_rating"] == 2.0

    nobody = run(lambda svc: svc.trade.rating_stats("mallory"))
    assert nobody.to_dict() == {
        "player_id": "mallory",
        "total_trades": 0,
        "as_seller_count": 0,
        "as_buyer_count": 0,
        "average_seller_rating": None,
        "average_buyer_rating": None,
        "overall_rating": None,
    }


def test_my_trade_stats(run, clock):
    first, _ = _two_trades(run)

    async def more_offers(svc):
        await svc.trade.rate_trade(first.id, "alice", 3)
        cancelled = await svc.trade.create_offer(
            "alice", [{"item_id": "item_wood", "quantity": 5}], [{"item_id": "item_rope", "quantity": 1}]
        )
        await svc.trade.cancel_offer(cancelled.id, "alice")
        await svc.trade.create_offer(
            "alice", [{"item_id": "item_wood", "quantity": 5}], [{"item_id": "item_rope", "quantity": 1}], ttl_seconds=60
        )
        return await svc.trade.my_trade_stats("alice")

    stats = run(more_offers)
    assert stats.to_dict() == {
        "active_offers": 1,
        "completed_trades": 2,
        "cancelled_offers": 1,
        "total_items_traded": 40,
        "pending_ratings": 1,
    }

    clock.advance(61)
    later = run(lambda svc: svc.trade.my_trade_stats("alice"))
    assert later.active_offers == 0
    assert later.cancelled_offers == 1
