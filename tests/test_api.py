import asyncio

import pytest
from fastapi.testclient import TestClient

from earthlord.auth import security
from earthlord.auth.security import create_access_token
from earthlord.core import config
from earthlord.core.catalog import get_catalog
from earthlord.core.database import create_engine_for, create_sessionmaker, init_db
from earthlord.core.ledger import ResourceLedger
from earthlord.core.locks import LockManager
from earthlord.main import app


@pytest.fixture
def client(db_url, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_URL", db_url)
    monkeypatch.setattr(config, "DEV_CREATE_ALL", True)
    monkeypatch.setattr(config, "SWEEP_ENABLED", False)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def grant(db_url):
    """Credit items to a player directly through the ledger."""

    def _grant(player_id, amounts):
        async def _main():
            engine = create_engine_for(db_url)
            try:
                await init_db(engine)
                ledger = ResourceLedger(create_sessionmaker(engine), LockManager(), catalog=get_catalog())
                await ledger.credit(player_id, amounts)
            finally:
                await engine.dispose()

        asyncio.run(_main())

    return _grant


def _auth(player_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(player_id)}"}


def test_health_endpoints(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["database"]["status"] == "ok"
    assert body["sweeper"]["running"] is False

    r = client.get("/healthz/db")
    assert r.json() == {"database": {"enabled": True, "status": "ok"}}


def test_metrics_endpoint_counts_requests(client):
    client.get("/healthz")
    r = client.get("/metrics")
    assert r.status_code == 200
    snap = r.json()
    assert snap["http"]["total_count"] >= 1
    assert "GET:/healthz" in snap["http"]["by_route"]
    assert "sweeper" in snap and "events" in snap


def test_requires_bearer_token(client):
    r = client.get("/inventory")
    assert r.status_code == 401
    assert r.json()["error"] == "not_authenticated"

    r = client.get("/inventory", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_catalog_endpoints(client):
    r = client.get("/catalog/buildings")
    assert r.status_code == 200
    ids = [t["id"] for t in r.json()["templates"]]
    assert "campfire" in ids and "solar_array" in ids

    r = client.get("/catalog/buildings", params={"category": "energy"})
    assert {t["id"] for t in r.json()["templates"]} == {"generator", "solar_array"}

    r = client.get("/catalog/buildings", params={"category": "space"})
    assert r.status_code == 422

    r = client.get("/catalog/buildings/campfire")
    assert r.json()["required_resources"] == {"item_wood": 30}

    r = client.get("/catalog/buildings/castle")
    assert r.status_code == 404
    assert r.json() == {
        "error": "template_not_found",
        "detail": "Building template not found: castle",
        "template_id": "castle",
    }

    r = client.get("/catalog/items/item_wood")
    assert r.status_code == 200
    assert r.json()["category"] == "material"

    r = client.get("/catalog/items", params={"category": "water"})
    assert all(i["category"] == "water" for i in r.json()["items"])


def test_construction_flow(client, grant):
    grant("alice", {"item_wood": 40})
    headers = _auth("alice")

    r = client.get("/buildings/check", params={"template_id": "campfire", "territory_id": "t1"}, headers=headers)
    assert r.status_code == 200
    check = r.json()
    assert check["can_build"] is True
    assert check["current_count"] == 0
    assert check["max_per_territory"] == 3

    r = client.post(
        "/buildings",
        json={"template_id": "campfire", "territory_id": "t1", "location": {"lat": 31.2, "lon": 121.4}},
        headers=headers,
    )
    assert r.status_code == 200, r.text
    building = r.json()
    assert building["status"] == "constructing"
    assert building["level"] == 1
    assert building["location"] == [31.2, 121.4]

    r = client.post("/buildings", json={"template_id": "campfire", "territory_id": "t1"}, headers=headers)
    assert r.status_code == 409
    assert r.json()["error"] == "insufficient_resources"
    assert r.json()["missing"] == {"item_wood": 20}

    r = client.get("/inventory", headers=headers)
    assert r.json() == {"player_id": "alice", "items": {"item_wood": 10}}

    r = client.get("/buildings", headers=headers)
    assert [b["id"] for b in r.json()["buildings"]] == [building["id"]]

    r = client.get("/buildings/count", params={"category": "survival"}, headers=headers)
    assert r.json() == {"category": "survival", "count": 1}
    r = client.get("/buildings/count", params={"category": "space"}, headers=headers)
    assert r.status_code == 422

    r = client.get(f"/buildings/{building['id']}", headers=headers)
    assert r.json()["remaining_seconds"] > 0

    r = client.post(f"/buildings/{building['id']}/finalize", headers=headers)
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_status"

    r = client.post(f"/buildings/{building['id']}/upgrade", headers=headers)
    assert r.status_code == 409
    assert r.json()["error"] == "not_active"

    r = client.delete(f"/buildings/{building['id']}", headers=_auth("bob"))
    assert r.status_code == 403

    r = client.delete(f"/buildings/{building['id']}", headers=headers)
    assert r.status_code == 200
    assert r.json()["demolished"] is True

    r = client.get(f"/buildings/{building['id']}", headers=headers)
    assert r.status_code == 404
    assert r.json()["error"] == "building_not_found"


def test_start_construction_validates_body(client):
    r = client.post("/buildings", json={"template_id": "campfire", "territory_id": ""}, headers=_auth("alice"))
    assert r.status_code == 422


def test_trade_flow(client, grant):
    grant("alice", {"item_wood": 30})
    grant("bob", {"item_scrap_metal": 12})
    alice, bob = _auth("alice"), _auth("bob")

    r = client.post(
        "/trade/offers",
        json={
            "offering": [{"item_id": "item_wood", "quantity": 30}],
            "requesting": [{"item_id": "item_scrap_metal", "quantity": 10}],
            "message": "fresh pine",
            "ttl_seconds": 3600,
        },
        headers=alice,
    )
    assert r.status_code == 200, r.text
    offer = r.json()
    assert offer["status"] == "active"

    r = client.get("/trade/offers", headers=bob)
    assert [o["id"] for o in r.json()["offers"]] == [offer["id"]]
    r = client.get("/trade/offers", headers=alice)
    assert r.json()["offers"] == []

    r = client.post(f"/trade/offers/{offer['id']}/accept", headers=alice)
    assert r.status_code == 409
    assert r.json()["error"] == "cannot_accept_own_offer"

    r = client.post(f"/trade/offers/{offer['id']}/accept", headers=bob)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["accepted"] is True
    history_id = body["history"]["id"]

    r = client.post(f"/trade/offers/{offer['id']}/accept", headers=_auth("carol"))
    assert r.status_code == 409
    assert r.json()["error"] == "offer_not_active"

    assert client.get("/inventory", headers=alice).json()["items"] == {"item_scrap_metal": 10}
    assert client.get("/inventory", headers=bob).json()["items"] == {"item_scrap_metal": 2, "item_wood": 30}

    r = client.get("/trade/offers/mine", params={"status": "completed"}, headers=alice)
    assert [o["id"] for o in r.json()["offers"]] == [offer["id"]]
    r = client.get("/trade/offers/mine", params={"status": "pending"}, headers=alice)
    assert r.status_code == 422

    r = client.get("/trade/history", headers=bob)
    assert [h["id"] for h in r.json()["history"]] == [history_id]

    r = client.get(f"/trade/history/{history_id}", headers=_auth("mallory"))
    assert r.status_code == 403

    r = client.post(f"/trade/history/{history_id}/rating", json={"rating": 5, "comment": "fair"}, headers=bob)
    assert r.status_code == 200
    assert r.json()["seller_rating"] == 5

    r = client.post(f"/trade/history/{history_id}/rating", json={"rating": 4}, headers=bob)
    assert r.status_code == 409
    assert r.json()["error"] == "already_rated"

    r = client.post(f"/trade/history/{history_id}/rating", json={"rating": 9}, headers=alice)
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_rating"


def test_create_offer_without_items_held(client):
    r = client.post(
        "/trade/offers",
        json={
            "offering": [{"item_id": "item_wood", "quantity": 5}],
            "requesting": [{"item_id": "item_rope", "quantity": 1}],
        },
        headers=_auth("alice"),
    )
    assert r.status_code == 409
    assert r.json()["error"] == "insufficient_items"
    assert r.json()["item_ids"] == ["item_wood"]


def test_cancel_offer(client, grant):
    grant("alice", {"item_rope": 3})
    r = client.post(
        "/trade/offers",
        json={
            "offering": [{"item_id": "item_rope", "quantity": 3}],
            "requesting": [{"item_id": "item_bandage", "quantity": 1}],
        },
        headers=_auth("alice"),
    )
    offer_id = r.json()["id"]

    r = client.post(f"/trade/offers/{offer_id}/cancel", headers=_auth("bob"))
    assert r.status_code == 403

    r = client.post(f"/trade/offers/{offer_id}/cancel", headers=_auth("alice"))
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"

    r = client.get(f"/trade/offers/{offer_id}", headers=_auth("bob"))
    assert r.json()["status"] == "cancelled"

    r = client.get("/trade/offers/missing", headers=_auth("bob"))
    assert r.status_code == 404


def test_rate_limit(client, monkeypatch):
    monkeypatch.setattr(config, "RATE_LIMIT_PER_MINUTE", 2)
    monkeypatch.setattr(security.time, "time", lambda: 1_800_000_010.0)
    headers = _auth("alice")
    assert client.get("/inventory", headers=headers).status_code == 200
    assert client.get("/inventory", headers=headers).status_code == 200
    assert client.get("/inventory", headers=headers).status_code == 429


@pytest.mark.parametrize("path", ["/buildings/missing", "/trade/offers/missing", "/trade/history/missing"])
def test_detail_reads_are_rate_limited(client, monkeypatch, path):
    monkeypatch.setattr(config, "RATE_LIMIT_PER_MINUTE", 2)
    monkeypatch.setattr(security.time, "time", lambda: 1_800_000_010.0)
    headers = _auth("alice")
    assert client.get(path, headers=headers).status_code == 404
    assert client.get(path, headers=headers).status_code == 404
    assert client.get(path, headers=headers).status_code == 429


def test_offer_search_and_trade_stats(client, grant):
    grant("alice", {"item_wood": 30})
    grant("dave", {"item_rope": 4})
    grant("bob", {"item_scrap_metal": 10})
    wood = client.post(
        "/trade/offers",
        json={
            "offering": [{"item_id": "item_wood", "quantity": 30}],
            "requesting": [{"item_id": "item_scrap_metal", "quantity": 10}],
        },
        headers=_auth("alice"),
    ).json()
    rope = client.post(
        "/trade/offers",
        json={
            "offering": [{"item_id": "item_rope", "quantity": 4}],
            "requesting": [{"item_id": "item_bandage", "quantity": 2}],
        },
        headers=_auth("dave"),
    ).json()
    bob = _auth("bob")

    r = client.get("/trade/offers", params={"item_id": "item_rope"}, headers=bob)
    assert [o["id"] for o in r.json()["offers"]] == [rope["id"]]
    r = client.get("/trade/offers", params={"category": "material", "min_quantity": 5}, headers=bob)
    assert [o["id"] for o in r.json()["offers"]] == [wood["id"]]
    r = client.get("/trade/offers", params=[("item_id", "item_rope"), ("item_id", "item_wood")], headers=bob)
    assert {o["id"] for o in r.json()["offers"]} == {wood["id"], rope["id"]}
    assert client.get("/trade/offers", params={"sort": "cheapest"}, headers=bob).status_code == 422
    assert client.get("/trade/offers", params={"category": "jewelry"}, headers=bob).status_code == 422

    history = client.post(f"/trade/offers/{wood['id']}/accept", headers=bob).json()["history"]
    client.post(f"/trade/history/{history['id']}/rating", json={"rating": 4}, headers=bob)

    r = client.get("/trade/stats/ratings/alice", headers=bob)
    assert r.status_code == 200
    assert r.json()["as_seller_count"] == 1
    assert r.json()["average_seller_rating"] == 4.0
    assert r.json()["overall_rating"] == 4.0

    r = client.get("/trade/stats/mine", headers=_auth("alice"))
    assert r.json() == {
        "active_offers": 0,
        "completed_trades": 1,
        "cancelled_offers": 0,
        "total_items_traded": 30,
        "pending_ratings": 1,
    }
