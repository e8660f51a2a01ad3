"""
Locust load testing for the EarthLord construction & trade server.

Simulates many concurrent survivors that:
- Start buildings on a handful of shared territories (contending for per-territory caps)
- Post trade offers and race each other to accept them
- Poll inventory, buildings and the offer board

Usage examples:
  # Start your API server first (in another terminal):
  #   uvicorn earthlord.main:app --host 0.0.0.0 --port 8000
  # Then run Locust pointing to the host, with the same DATABASE_URL and JWT_SECRET:
  #   locust -f scripts/load/locustfile.py --host http://127.0.0.1:8000

Environment variables (optional):
- PLAYER_PREFIX: prefix for generated player ids (default: "load")
- WAIT_MIN / WAIT_MAX: wait time bounds between tasks in seconds (default: 0.1 / 0.5)
- TERRITORIES: number of shared territory ids to build on (default: 5)
- TEMPLATE_IDS: comma-separated building templates to use (default: "campfire,storage_box")
- SEED_QUANTITY: amount of each seeded item granted per player (default: 500)

Notes:
- Tokens are minted locally with the server's JWT secret; players are opaque ids.
- Starting inventory is credited straight through the ResourceLedger against
  DATABASE_URL before each simulated player starts.
- Expected 4xx responses (caps reached, offer already taken) are counted as successes.
"""
from __future__ import annotations

import asyncio
import os
import random
import uuid
from typing import List, Optional

from locust import FastHttpUser, between, task

from earthlord.auth.security import create_access_token
from earthlord.core.catalog import get_catalog
from earthlord.core.database import create_engine_for, create_sessionmaker, init_db
from earthlord.core.ledger import ResourceLedger
from earthlord.core.locks import LockManager
from earthlord.core import config

SEED_ITEMS = ["item_wood", "item_scrap_metal", "item_scrap_cloth", "item_rope", "item_matches"]

# Responses that are a normal outcome of contention rather than a failure
EXPECTED_CONFLICTS = {404, 409, 410}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


async def _seed_inventory(player_id: str, quantity: int) -> None:
    engine = create_engine_for(config.get_database_url())
    try:
        await init_db(engine)
        ledger = ResourceLedger(create_sessionmaker(engine), LockManager(), catalog=get_catalog())
        await ledger.credit(player_id, {item_id: quantity for item_id in SEED_ITEMS})
    finally:
        await engine.dispose()


class SurvivorUser(FastHttpUser):
    """Simulated player that builds and trades.

    Uses FastHttpUser for higher throughput with many concurrent users.
    """

    wait_time = between(_env_float("WAIT_MIN", 0.1), _env_float("WAIT_MAX", 0.5))

    def on_start(self) -> None:
        self.player_id = f"{os.getenv('PLAYER_PREFIX', 'load')}_{uuid.uuid4().hex[:12]}"
        asyncio.run(_seed_inventory(self.player_id, _env_int("SEED_QUANTITY", 500)))
        token = create_access_token(self.player_id)
        self.client.headers.update({"Authorization": f"Bearer {token}"})
        raw = os.getenv("TEMPLATE_IDS")
        self.templates: List[str] = [t.strip() for t in raw.split(",")] if raw else ["campfire", "storage_box"]
        self.territories: List[str] = [f"territory_{i}" for i in range(_env_int("TERRITORIES", 5))]

    def _post(self, path: str, name: str, json: Optional[dict] = None) -> Optional[dict]:
        with self.client.post(path, json=json, name=name, catch_response=True) as resp:
            if resp.status_code == 200:
                return resp.json()
            if resp.status_code in EXPECTED_CONFLICTS:
                resp.success()
            return None

    # ------------ Task definitions ------------
    @task(3)
    def inventory(self) -> None:
        self.client.get("/inventory", name="/inventory")

    @task(2)
    def buildings(self) -> None:
        self.client.get("/buildings", name="/buildings")

    @task(2)
    def start_construction(self) -> None:
        payload = {
            "template_id": random.choice(self.templates),
            "territory_id": random.choice(self.territories),
        }
        self._post("/buildings", "/buildings [start]", json=payload)

    @task(2)
    def post_offer(self) -> None:
        give, want = random.sample(SEED_ITEMS, 2)
        payload = {
            "offering": [{"item_id": give, "quantity": random.randint(1, 5)}],
            "requesting": [{"item_id": want, "quantity": random.randint(1, 5)}],
            "ttl_seconds": 600,
        }
        self._post("/trade/offers", "/trade/offers [create]", json=payload)

    @task(4)
    def accept_random_offer(self) -> None:
        resp = self.client.get("/trade/offers?limit=20", name="/trade/offers")
        if resp.status_code != 200:
            return
        offers = resp.json().get("offers", [])
        if not offers:
            return
        offer = random.choice(offers)
        self._post(f"/trade/offers/{offer['id']}/accept", "/trade/offers/:id/accept")
