import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from earthlord.core.database import transaction
from earthlord.core.errors import (
    GameError,
    InsufficientResources,
    InvalidStatus,
    InventoryItemNotFound,
    MaxLevelReached,
    NotActive,
    OfferExpired,
    OfferNotActive,
    StorageError,
)
from earthlord.core.locks import LockManager
from earthlord.core.time_utils import FixedClock, isoformat_utc, parse_utc


def test_error_payloads():
    err = InsufficientResources({"item_wood": 10})
    assert err.status_code == 409
    assert err.as_dict() == {
        "error": "insufficient_resources",
        "detail": "Insufficient resources: item_wood x10",
        "missing": {"item_wood": 10},
    }
    assert InventoryItemNotFound({"item_rope": 2}).as_dict()["item_ids"] == ["item_rope"]
    assert MaxLevelReached(3).params == {"limit": 3}
    assert OfferNotActive("o1", "completed").params == {"offer_id": "o1", "status": "completed"}
    assert OfferExpired("o1").status_code == 410
    assert isinstance(NotActive("b1"), InvalidStatus)
    assert isinstance(StorageError(), GameError)
    assert StorageError().status_code == 503


def test_transaction_wraps_storage_failures(run):
    async def scenario(svc):
        with pytest.raises(StorageError) as exc:
            async with transaction(svc.ledger.sessionmaker) as session:
                await session.execute(text("SELECT * FROM no_such_table"))
        return exc.value

    err = run(scenario)
    assert err.__cause__ is not None


def test_transaction_passes_game_errors_through(run):
    async def scenario(svc):
        with pytest.raises(OfferExpired):
            async with transaction(svc.ledger.sessionmaker):
                raise OfferExpired("o1")

    run(scenario)


def test_locks_serialize_overlapping_key_sets():
    order = []

    async def worker(name, keys):
        async with locks.hold(keys):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    locks = LockManager(timeout_s=1.0)

    async def main():
        await asyncio.gather(worker("a", ["ledger:x", "offer:1"]), worker("b", ["offer:1", "ledger:x"]))

    asyncio.run(main())
    assert order in (["a:in", "a:out", "b:in", "b:out"], ["b:in", "b:out", "a:in", "a:out"])


def test_lock_timeout_raises_storage_error():
    locks = LockManager(timeout_s=0.05)

    async def main():
        async with locks.hold(["ledger:x"]):
            with pytest.raises(StorageError):
                async with locks.hold(["ledger:x"]):
                    pass
        # Released after the holder exits
        async with locks.hold(["ledger:x"]) as held:
            return held

    assert asyncio.run(main()) == ["ledger:x"]


def test_time_helpers():
    start = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    clock = FixedClock(start)
    assert clock.advance(90) == start + timedelta(seconds=90)
    assert isoformat_utc(clock()) == "2026-01-01T12:01:30Z"
    assert parse_utc("2026-01-01T12:01:30Z") == clock()
    assert parse_utc(datetime(2026, 1, 1, 12, 0)) == start
    assert parse_utc("  ") is None


def test_lock_registry_drops_released_keys():
    locks = LockManager(timeout_s=0.05)

    async def main():
        for i in range(50):
            async with locks.hold([f"offer:{i}", "ledger:x"]):
                assert set(locks._locks) == {f"offer:{i}", "ledger:x"}
        async with locks.hold(["ledger:x"]):
            with pytest.raises(StorageError):
                async with locks.hold(["ledger:x", "offer:late"]):
                    pass
            assert set(locks._locks) == {"ledger:x"}

    asyncio.run(main())
    assert locks._locks == {}
    assert locks._users == {}


def test_lock_kept_while_another_task_waits():
    locks = LockManager(timeout_s=1.0)

    async def main():
        entered = asyncio.Event()

        async def first():
            async with locks.hold(["ledger:x"]):
                entered.set()
                await asyncio.sleep(0.02)

        async def second():
            await entered.wait()
            async with locks.hold(["ledger:x"]):
                return locks._users["ledger:x"]

        _, users = await asyncio.gather(first(), second())
        return users

    assert asyncio.run(main()) == 1
    assert locks._locks == {}


def test_service_operations_leave_no_locks_behind(run):
    async def scenario(svc):
        await svc.ledger.credit("alice", {"item_wood": 400})
        for _ in range(20):
            offer = await svc.trade.create_offer(
                "alice",
                [{"item_id": "item_wood", "quantity": 1}],
                [{"item_id": "item_rope", "quantity": 1}],
            )
            await svc.trade.cancel_offer(offer.id, "alice")
        await svc.construction.start_construction("alice", "campfire", "t1")
        return dict(svc.locks._locks)

    assert run(scenario) == {}
