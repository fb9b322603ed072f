import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from unihub.backend import assemble_backend
from unihub.cache import MemoryKeyValueStore
from unihub.db import OrderStore, init_db
from unihub.errors import BackendUnavailableError
from unihub.realtime import InMemoryRealtime


class OutageStore(OrderStore):
    """OrderStore whose listed tables fail like an unreachable backend."""

    def __init__(self, engine, realtime):
        super().__init__(engine, realtime)
        self.down: set[str] = set()

    def _check(self, op, table):
        if table in self.down:
            raise BackendUnavailableError(f"{op}:{table}", "simulated outage")

    async def select(self, table, *args, **kwargs):
        self._check("select", table)
        return await super().select(table, *args, **kwargs)

    async def insert(self, table, values):
        self._check("insert", table)
        return await super().insert(table, values)

    async def update(self, table, values, where):
        self._check("update", table)
        return await super().update(table, values, where)


async def make_test_backend(poll_interval_sec: float = 60.0):
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    backend = assemble_backend(engine, InMemoryRealtime(), MemoryKeyValueStore(), poll_interval_sec=poll_interval_sec)
    store = OutageStore(engine, backend.realtime)
    backend.store = store
    backend.notifier.store = store
    backend.stats.store = store
    backend.payments.store = store
    return backend


@pytest.fixture
def run_with_backend():
    """Run `scenario(backend)` on a fresh in-memory backend inside one event loop."""
    def runner(scenario, **kwargs):
        async def main():
            backend = await make_test_backend(**kwargs)
            try:
                return await scenario(backend)
            finally:
                await backend.close()
        return asyncio.run(main())
    return runner


async def add_order(backend, **values):
    row = {
        "customer_id": "cust-1",
        "pickup_address": "Main Gate",
        "delivery_address": "Library",
        "status": "pending",
        "service_type": "unimove",
        "total_amount": 7.5,
    }
    row.update(values)
    return await backend.store.insert("orders", row)


async def add_ride_request(backend, **values):
    row = {
        "customer_id": "cust-2",
        "pickup_location": "North Hostel",
        "dropoff_location": "Stadium",
        "price": 4.0,
        "status": "pending",
    }
    row.update(values)
    return await backend.store.insert("ride_requests", row)
