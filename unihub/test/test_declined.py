from unihub.cache import declined_key
from unihub.declined import DeclinedOrderLedger


def test_record_then_read_back(run_with_backend):
    async def scenario(backend):
        ledger = DeclinedOrderLedger(backend.store, backend.cache, "unimove")
        assert await ledger.record_declined("d1", "o1") is True
        assert await ledger.get_declined("d1") == {"o1"}
        assert await ledger.get_declined("d2") == set()
        rows = await backend.store.select("driver_declined_orders", {"driver_id": "d1"})
        assert len(rows) == 1 and rows[0]["order_type"] == "unimove"

    run_with_backend(scenario)


def test_duplicate_decline_is_idempotent(run_with_backend):
    async def scenario(backend):
        ledger = DeclinedOrderLedger(backend.store, backend.cache, "unimove")
        assert await ledger.record_declined("d1", "o1") is True
        assert await ledger.record_declined("d1", "o1") is True
        assert await backend.cache.get_ids(declined_key("unimove", "d1")) == ["o1"]
        rows = await backend.store.select("driver_declined_orders", {"driver_id": "d1"})
        assert len(rows) == 1

    run_with_backend(scenario)


def test_remote_write_failure_keeps_local_decline(run_with_backend):
    async def scenario(backend):
        ledger = DeclinedOrderLedger(backend.store, backend.cache, "unisend")
        backend.store.down.add("driver_declined_orders")
        assert await ledger.record_declined("d1", "o1") is False
        # still hidden while the remote stays down
        assert await ledger.get_declined("d1") == {"o1"}
        backend.store.down.clear()
        assert await ledger.get_declined("d1") == {"o1"}

    run_with_backend(scenario)


def test_remote_read_merges_into_local_cache(run_with_backend):
    async def scenario(backend):
        other_device = DeclinedOrderLedger(backend.store, backend.cache.__class__(), "unimove")
        await other_device.record_declined("d1", "remote-order")

        ledger = DeclinedOrderLedger(backend.store, backend.cache, "unimove")
        await ledger.record_declined("d1", "local-order")
        assert await ledger.get_declined("d1") == {"remote-order", "local-order"}
        cached = await backend.cache.get_ids(declined_key("unimove", "d1"))
        assert set(cached) == {"remote-order", "local-order"}

    run_with_backend(scenario)


def test_order_types_do_not_mix(run_with_backend):
    async def scenario(backend):
        rides = DeclinedOrderLedger(backend.store, backend.cache, "unimove")
        deliveries = DeclinedOrderLedger(backend.store, backend.cache, "unisend")
        await rides.record_declined("d1", "o1")
        assert await deliveries.get_declined("d1") == set()

    run_with_backend(scenario)
