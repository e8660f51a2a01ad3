import asyncio
from datetime import datetime, timezone

import pytest

from earthlord.auth.security import reset_rate_limits
from earthlord.core.catalog import get_catalog
from earthlord.core.database import create_engine_for, create_sessionmaker, init_db
from earthlord.core.state import build_services
from earthlord.core.time_utils import FixedClock

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'earthlord.db'}"


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def catalog():
    return get_catalog()


@pytest.fixture
def run(db_url, clock, catalog):
    """Run ``fn(services)`` on a fresh event loop against the test database.

    The database file persists across calls within a test, so state written by
    one call is visible to the next.
    """

    def _run(fn):
        async def _main():
            engine = create_engine_for(db_url)
            try:
                await init_db(engine)
                services = build_services(create_sessionmaker(engine), catalog=catalog, clock=clock)
                return await fn(services)
            finally:
                await engine.dispose()

        return asyncio.run(_main())

    return _run


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()
