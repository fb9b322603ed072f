from sqlalchemy import update

from unihub import models
from unihub.aggregator import DELIVERY
from unihub.customer_ride import CustomerRideController
from unihub.driver_orders import DriverOrderController
from unihub.errors import BackendUnavailableError
from unihub.schemas import OrderStatus, RideStatus


def _toast_titles(c):
    return [t.title for t in c.toast.drain()]


def test_request_creates_pending_order(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        order = await cust.request_ride("Main Gate", "Library", pickup_coordinates=(1.0, 2.0))
        assert order.status == OrderStatus.PENDING
        assert order.total_amount == 5.99
        assert order.pickup_coordinates == (1.0, 2.0)
        stored = await backend.store.fetch_one("orders", order.id)
        assert stored["pickup_coordinates"] == "(1.0,2.0)"
        assert stored["service_type"] == "unimove"
        assert stored["driver_id"] is None
        assert _toast_titles(cust) == ["Ride Requested"]
        # one active order at a time
        assert await cust.request_ride("A", "B") is None
        assert _toast_titles(cust) == ["Error"]
        await cust.stop()

    run_with_backend(scenario)


def test_delivery_request_keeps_package_size(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1", DELIVERY)
        order = await cust.request_ride("Shop", "Dorm 4", price=3.0, package_size="large")
        stored = await backend.store.fetch_one("orders", order.id)
        assert (stored["service_type"], stored["package_size"], stored["total_amount"]) == ("unisend", "large", 3.0)
        await cust.stop()

    run_with_backend(scenario)


def test_request_failure_is_reported(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        backend.store.down.add("orders")
        assert await cust.request_ride("A", "B") is None
        assert cust.order is None
        assert _toast_titles(cust) == ["Error"]

    run_with_backend(scenario)


def test_customer_and_driver_move_in_lockstep(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        driver = DriverOrderController(backend, "d1")
        await driver.start(poll=False)
        order = await cust.request_ride("Main Gate", "Library", price=6.0)
        assert order.id in driver.pending
        cust.toast.drain()

        await driver.accept_order(driver.pending.get(order.id))
        assert cust.status == RideStatus.ACCEPTING
        assert cust.order.driver_id == "d1"
        await driver.complete_pickup()
        assert cust.status == RideStatus.ONGOING
        await driver.complete_order()
        assert cust.status == RideStatus.COMPLETED
        assert _toast_titles(cust) == ["Driver Found!", "Ride Started", "Ride Completed"]
        assert [o.id for o in await cust.history()] == [order.id]
        await driver.stop()
        await cust.stop()

    run_with_backend(scenario)


def test_cancel_pending_order(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        order = await cust.request_ride("A", "B")
        cust.toast.drain()
        assert await cust.cancel() is True
        assert cust.order is None
        assert cust.status == RideStatus.SEARCHING
        assert [(t.title, t.variant) for t in cust.toast.drain()] == [("Ride Cancelled", "default")]
        assert (await backend.store.fetch_one("orders", order.id))["status"] == "cancelled"
        assert backend.realtime.active_channels() == []

    run_with_backend(scenario)


def test_cancel_after_accept_resets_driver(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        driver = DriverOrderController(backend, "d1")
        await driver.start(poll=False)
        order = await cust.request_ride("A", "B")
        await driver.accept_order(driver.pending.get(order.id))
        assert await cust.cancel() is True
        assert driver.status == RideStatus.SEARCHING
        assert driver.current_order is None
        rows = await backend.store.select("notifications", {"user_id": "d1"})
        assert [r["title"] for r in rows] == ["Ride Cancelled"]
        await driver.stop()

    run_with_backend(scenario)


def test_cancel_refused_once_in_progress(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        driver = DriverOrderController(backend, "d1")
        await driver.start(poll=False)
        order = await cust.request_ride("A", "B")
        await driver.accept_order(driver.pending.get(order.id))
        await driver.complete_pickup()
        cust.toast.drain()
        assert await cust.cancel() is False
        assert _toast_titles(cust) == ["Error"]
        assert (await backend.store.fetch_one("orders", order.id))["status"] == "in_progress"
        assert driver.status == RideStatus.ONGOING
        await driver.stop()
        await cust.stop()

    run_with_backend(scenario)


def test_cancel_loses_to_unseen_pickup(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        order = await cust.request_ride("A", "B")
        async with backend.store.engine.begin() as conn:
            await conn.execute(
                update(models.orders)
                .where(models.orders.c.id == order.id)
                .values(status="in_progress", driver_id="d1")
            )
        assert await cust.cancel() is False
        assert cust.status == RideStatus.ONGOING
        assert cust.order.status == OrderStatus.IN_PROGRESS
        # still watching the order
        assert len(backend.realtime.active_channels()) == 1
        await cust.stop()

    run_with_backend(scenario)


def test_cancel_write_failure_keeps_order(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        order = await cust.request_ride("A", "B")
        backend.store.down.add("orders")
        assert await cust.cancel() is False
        assert cust.order.id == order.id
        assert len(backend.realtime.active_channels()) == 1
        await cust.stop()

    run_with_backend(scenario)


def test_pay_requires_driver_then_captures(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        driver = DriverOrderController(backend, "d1")
        await driver.start(poll=False)
        order = await cust.request_ride("A", "B", price=8.0)
        assert await cust.pay() is None
        assert _toast_titles(cust)[-1] == "Error"

        await driver.accept_order(driver.pending.get(order.id))
        tx = await cust.pay("cash")
        assert tx["payment_status"] == "completed"
        assert (tx["driver_id"], tx["amount"], tx["payment_method"]) == ("d1", 8.0, "cash")
        assert tx["provider_response"]["provider"] == "simulated"
        assert await cust.pay() == tx
        rows = await backend.store.select("ride_transactions", {"order_id": order.id})
        assert len(rows) == 1
        await driver.stop()
        await cust.stop()

    run_with_backend(scenario)


class FlakyGateway:
    """Fails the first capture, then delegates to the real gateway."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    async def capture(self, transaction_id):
        self.calls += 1
        if self.calls == 1:
            raise BackendUnavailableError("capture", "provider timeout")
        return await self.inner.capture(transaction_id)


def test_failed_capture_can_be_retried(run_with_backend):
    async def scenario(backend):
        backend.payments = FlakyGateway(backend.payments)
        cust = CustomerRideController(backend, "cust-1")
        driver = DriverOrderController(backend, "d1")
        await driver.start(poll=False)
        order = await cust.request_ride("A", "B", price=8.0)
        await driver.accept_order(driver.pending.get(order.id))
        cust.toast.drain()

        first = await cust.pay()
        assert first["payment_status"] == "pending"
        assert _toast_titles(cust) == ["Error"]

        retry = await cust.pay()
        assert retry["payment_status"] == "completed"
        assert retry["id"] == first["id"]
        assert backend.payments.calls == 2
        rows = await backend.store.select("ride_transactions", {"order_id": order.id})
        assert [r["payment_status"] for r in rows] == ["completed"]
        await driver.stop()
        await cust.stop()

    run_with_backend(scenario)


def test_cancel_notifies_driver_from_stored_row(run_with_backend):
    async def scenario(backend):
        cust = CustomerRideController(backend, "cust-1")
        order = await cust.request_ride("A", "B")
        # accepted without a change event reaching the customer
        async with backend.store.engine.begin() as conn:
            await conn.execute(
                update(models.orders)
                .where(models.orders.c.id == order.id)
                .values(status="accepted", driver_id="d7")
            )
        assert cust.order.driver_id is None
        assert await cust.cancel() is True
        rows = await backend.store.select("notifications", {"user_id": "d7"})
        assert [r["title"] for r in rows] == ["Ride Cancelled"]

    run_with_backend(scenario)
