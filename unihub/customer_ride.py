from contextlib import asynccontextmanager
from typing import Optional
import logging

from . import models
from .adapters import order_to_row, to_order
from .aggregator import PendingOrderAggregator, Vertical, RIDE
from .backend import Backend
from .bridge import BridgeSubscription, OrderWatcher
from .declined import DeclinedOrderLedger
from .driver_orders import ToastLog, ToastSink
from .errors import BackendError
from .schemas import Coordinates, Order, OrderStatus, RideStatus, ServiceType, Toast
from .state_machine import ride_status_for

logger = logging.getLogger(__name__)

CANCELLABLE = (models.ORDER_PENDING, models.ORDER_ACCEPTED)


class CustomerRideController:
    """Requesting side of an order: create, watch, cancel, pay."""

    def __init__(self, backend: Backend, customer_id: str, vertical: Vertical = RIDE, toast: Optional[ToastSink] = None):
        self.backend = backend
        self.customer_id = customer_id
        self.vertical = vertical
        self.toast = toast or ToastLog()
        aggregator = PendingOrderAggregator(
            backend.store, DeclinedOrderLedger(backend.store, backend.cache, vertical.order_type), vertical,
        )
        self.watcher = OrderWatcher(backend.realtime, aggregator)

        self.order: Optional[Order] = None
        self.status = RideStatus.SEARCHING
        self.transaction: Optional[dict] = None
        self._in_flight: set[str] = set()
        self._watch: Optional[BridgeSubscription] = None

    @property
    def loading(self) -> bool:
        return bool(self._in_flight)

    def _notify(self, title: str, description: str, destructive: bool = False):
        self.toast(Toast(title=title, description=description, variant="destructive" if destructive else "default"))

    @asynccontextmanager
    async def _guard(self, operation: str):
        if operation in self._in_flight:
            logger.info("customer_op_ignored: customer=%s op=%s already in flight", self.customer_id, operation)
            yield False
            return
        self._in_flight.add(operation)
        try:
            yield True
        finally:
            self._in_flight.discard(operation)

    async def _unwatch(self):
        if self._watch is not None:
            watch, self._watch = self._watch, None
            await watch.unsubscribe()

    async def stop(self):
        await self._unwatch()

    def _reset(self):
        self.order = None
        self.status = RideStatus.SEARCHING
        self.transaction = None

    async def _on_order_update(self, order: Order):
        if self.order is None or order.id != self.order.id:
            return
        previous = self.order.status
        self.order = order
        if order.status == previous:
            return
        noun = self.vertical.noun
        if order.status == OrderStatus.CANCELLED:
            self._notify(f"{noun} Cancelled", f"Your {noun.lower()} request has been cancelled", destructive=True)
            self._reset()
            await self._unwatch()
            return
        target = ride_status_for(order.status)
        if target is None or target == self.status:
            return
        self.status = target
        logger.info("customer_status: customer=%s order=%s -> %s", self.customer_id, order.id, target.value)
        if order.status == OrderStatus.ACCEPTED:
            self._notify("Driver Found!", f"A driver has accepted your {noun.lower()} request")
        elif order.status == OrderStatus.IN_PROGRESS:
            self._notify(f"{noun} Started", f"Your {noun.lower()} is now in progress")
        elif order.status == OrderStatus.COMPLETED:
            self._notify(f"{noun} Completed", "Hope you enjoyed your ride!" if noun == "Ride" else "Your package has been delivered")

    async def request_ride(
        self,
        pickup_address: str,
        delivery_address: str,
        price: Optional[float] = None,
        pickup_coordinates: Optional[Coordinates] = None,
        delivery_coordinates: Optional[Coordinates] = None,
        package_size: Optional[str] = None,
    ) -> Optional[Order]:
        """Create a pending order in the `orders` table and start watching it."""
        async with self._guard("request") as go:
            if not go:
                return None
            if self.order is not None and self.order.status not in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
                self._notify("Error", f"You already have an active {self.vertical.noun.lower()}", destructive=True)
                return None
            amount = self.backend.default_ride_price if price is None else price
            draft = Order(
                id="",
                customer_id=self.customer_id,
                pickup_address=pickup_address,
                delivery_address=delivery_address,
                pickup_coordinates=pickup_coordinates,
                delivery_coordinates=delivery_coordinates,
                service_type=self.vertical.service_type,
                package_size=package_size if self.vertical.service_type == ServiceType.UNISEND else None,
                total_amount=amount,
            )
            values = order_to_row(draft)
            try:
                row = await self.backend.store.insert("orders", values)
            except BackendError as e:
                logger.error("request_ride_failed: customer=%s error=%s", self.customer_id, e)
                self._notify("Error", f"Failed to request {self.vertical.noun.lower()}. Please try again.", destructive=True)
                return None

            await self._unwatch()
            self.order = to_order(row)
            self.status = RideStatus.SEARCHING
            self.transaction = None
            self._watch = await self.watcher.watch(self.order, self._on_order_update, tag=f"customer-{self.customer_id}")
            # catch an accept that landed before the watch was live
            fresh = await self._refetch(self.order)
            if fresh is not None:
                await self._on_order_update(fresh)
            logger.info("request_ride: customer=%s order=%s amount=%.2f", self.customer_id, self.order.id, amount)
            self._notify(f"{self.vertical.noun} Requested", "Searching for drivers...")
            return self.order

    async def cancel(self) -> bool:
        """Cancel the current order; only before the driver starts it."""
        async with self._guard("cancel") as go:
            if not go or self.order is None:
                return False
            order = self.order
            noun = self.vertical.noun
            if order.status not in (OrderStatus.PENDING, OrderStatus.ACCEPTED):
                self._notify("Error", f"This {noun.lower()} can no longer be cancelled", destructive=True)
                return False
            # our own cancel push is not a status change to report
            await self._unwatch()
            try:
                rows = await self.backend.store.update(
                    order.source.value,
                    {"status": models.ORDER_CANCELLED},
                    {"id": order.id, "customer_id": self.customer_id, "status": CANCELLABLE},
                )
            except BackendError as e:
                logger.error("cancel_failed: customer=%s order=%s error=%s", self.customer_id, order.id, e)
                await self._rewatch()
                self._notify("Error", f"Failed to cancel {noun.lower()}. Please try again.", destructive=True)
                return False

            if not rows:
                current = await self._refetch(order)
                if current is None or current.status == OrderStatus.CANCELLED:
                    # already gone; nothing left to cancel
                    self._reset()
                    return True
                await self._on_order_update(current)
                await self._rewatch()
                self._notify("Error", f"This {noun.lower()} can no longer be cancelled", destructive=True)
                return False

            # driver as stored at cancel time
            driver_id = rows[0].get("driver_id")
            if driver_id:
                await self.backend.notifier.notify_user(
                    driver_id, f"{noun} Cancelled", f"The customer cancelled this {noun.lower()}", "error",
                )
            self._notify(f"{noun} Cancelled", f"Your {noun.lower()} request has been cancelled")
            self._reset()
            logger.info("cancel: customer=%s order=%s", self.customer_id, order.id)
            return True

    async def _rewatch(self):
        if self.order is not None and self._watch is None:
            self._watch = await self.watcher.watch(self.order, self._on_order_update, tag=f"customer-{self.customer_id}")

    async def _refetch(self, order: Order) -> Optional[Order]:
        try:
            return await self.watcher.aggregator.fetch_order(order.source, order.id)
        except BackendError as e:
            logger.error("customer_refetch_failed: order=%s error=%s", order.id, e)
            return order

    async def pay(self, payment_method: str = "card") -> Optional[dict]:
        """Record a transaction for the assigned driver and hand it to the gateway."""
        async with self._guard("pay") as go:
            if not go or self.order is None:
                return None
            order = self.order
            if not order.driver_id:
                self._notify("Error", "Payment is available once a driver is assigned", destructive=True)
                return None
            if self.transaction is not None and self.transaction.get("payment_status") == models.PAY_COMPLETED:
                return self.transaction
            try:
                if self.transaction is None:
                    self.transaction = await self.backend.store.insert("ride_transactions", {
                        "order_id": order.id,
                        "customer_id": self.customer_id,
                        "driver_id": order.driver_id,
                        "amount": order.total_amount,
                        "payment_method": payment_method,
                        "payment_status": models.PAY_PENDING,
                    })
                else:
                    # retry the capture of the pending row instead of inserting another
                    logger.info("pay_retry: customer=%s transaction=%s", self.customer_id, self.transaction["id"])
                tx = self.transaction
                captured = await self.backend.payments.capture(tx["id"])
            except BackendError as e:
                logger.error("pay_failed: customer=%s order=%s error=%s", self.customer_id, order.id, e)
                self._notify("Error", "Payment failed. Please try again.", destructive=True)
                return self.transaction
            self.transaction = captured or tx
            logger.info("pay: customer=%s order=%s transaction=%s status=%s", self.customer_id, order.id,
                        tx["id"], self.transaction.get("payment_status"))
            self._notify("Payment Complete", f"Paid ${order.total_amount:.2f} by {payment_method}")
            return self.transaction

    async def history(self) -> list[Order]:
        rows = await self.backend.store.select(
            "orders", {"customer_id": self.customer_id, "service_type": self.vertical.service_type.value}, newest_first=True,
        )
        return [to_order(r) for r in rows]
