"""Driver-side order lifecycle.

One controller per (driver, vertical). It owns the pending list, the current
order and the local `RideStatus`; every backend write goes through a
conditional update and local state only moves after the write is confirmed.
"""
from contextlib import asynccontextmanager
from typing import Callable, Optional
import logging

from . import models
from .adapters import adapt_row, to_order
from .aggregator import PendingOrderAggregator, Vertical, RIDE
from .backend import Backend
from .bridge import BridgeSubscription, OrderWatcher, PendingQueue, RealtimeEventBridge
from .declined import DeclinedOrderLedger
from .errors import AcceptConflictError, BackendError, OrderUnavailableError
from .schemas import Order, OrderStatus, RideStatus, ServiceType, Toast
from .state_machine import can_transition, ensure_valid_transition, ride_status_for

logger = logging.getLogger(__name__)

ToastSink = Callable[[Toast], None]


class ToastLog:
    """Collects toasts until the UI layer drains them."""

    def __init__(self):
        self.items: list[Toast] = []

    def __call__(self, toast: Toast):
        self.items.append(toast)

    def drain(self) -> list[Toast]:
        items, self.items = self.items, []
        return items


def customer_message(vertical: Vertical, status: OrderStatus) -> Optional[tuple[str, str, str]]:
    """(title, message, severity) sent to the customer when a driver moves an order."""
    noun = vertical.noun
    if status == OrderStatus.ACCEPTED:
        return "Driver Accepted", f"A driver has accepted your {noun.lower()} request!", "success"
    if status == OrderStatus.IN_PROGRESS:
        if vertical.service_type == ServiceType.UNISEND:
            return "Delivery Started", "Your delivery is on the way!", "success"
        return "Ride Started", "Your driver has picked you up!", "success"
    if status == OrderStatus.COMPLETED:
        return f"{noun} Complete", f"Your {noun.lower()} has been completed successfully!", "success"
    if status == OrderStatus.CANCELLED:
        return f"{noun} Cancelled", f"Your {noun.lower()} has been cancelled.", "error"
    return None


class DriverOrderController:

    def __init__(self, backend: Backend, driver_id: str, vertical: Vertical = RIDE, toast: Optional[ToastSink] = None):
        self.backend = backend
        self.driver_id = driver_id
        self.vertical = vertical
        self.toast = toast or ToastLog()
        self.ledger = DeclinedOrderLedger(backend.store, backend.cache, vertical.order_type)
        self.aggregator = PendingOrderAggregator(backend.store, self.ledger, vertical)
        self.bridge = RealtimeEventBridge(backend.realtime, backend.cache, self.aggregator, backend.poll_interval_sec)
        self.watcher = OrderWatcher(backend.realtime, self.aggregator)

        self.status = RideStatus.SEARCHING
        self.pending = PendingQueue()
        self.current_order: Optional[Order] = None
        self._in_flight: set[str] = set()
        self._feed: Optional[BridgeSubscription] = None
        self._order_watch: Optional[BridgeSubscription] = None

    @property
    def loading(self) -> bool:
        return bool(self._in_flight)

    @property
    def pending_orders(self) -> list[Order]:
        return self.pending.orders()

    def _notify(self, title: str, description: str, destructive: bool = False):
        self.toast(Toast(title=title, description=description, variant="destructive" if destructive else "default"))

    @asynccontextmanager
    async def _guard(self, operation: str):
        if operation in self._in_flight:
            logger.info("driver_op_ignored: driver=%s op=%s already in flight", self.driver_id, operation)
            yield False
            return
        self._in_flight.add(operation)
        try:
            yield True
        finally:
            self._in_flight.discard(operation)

    def _set_status(self, next_status: RideStatus):
        ensure_valid_transition(self.status, next_status)
        logger.info("driver_status: driver=%s %s -> %s", self.driver_id, self.status.value, next_status.value)
        self.status = next_status

    # feed

    async def start(self, poll: bool = True):
        await self.refresh_pending()
        if self._feed is None:
            self._feed = await self.bridge.subscribe(self._on_new_order, driver_id=self.driver_id, poll=poll)

    async def stop(self):
        if self._feed is not None:
            await self._feed.unsubscribe()
            self._feed = None
        await self._unwatch()

    async def refresh_pending(self) -> list[Order]:
        orders = await self.aggregator.fetch_pending(self.driver_id)
        self.pending.replace(orders)
        return self.pending.orders()

    async def _on_new_order(self, order: Order):
        if self.current_order is not None and order.id == self.current_order.id:
            return
        if self.pending.add(order):
            self._notify(f"New {self.vertical.noun} Request", f"A new {self.vertical.noun.lower()} request is available")

    # current order reconciliation

    async def _watch(self, order: Order):
        await self._unwatch()
        self._order_watch = await self.watcher.watch(order, self._on_order_update, tag=f"driver-{self.driver_id}")

    async def _unwatch(self):
        if self._order_watch is not None:
            watch, self._order_watch = self._order_watch, None
            await watch.unsubscribe()

    def _clear_current(self):
        self._set_status(RideStatus.SEARCHING)
        self.current_order = None

    async def _on_order_update(self, order: Order):
        if self.current_order is None or order.id != self.current_order.id:
            return
        if order.status == OrderStatus.CANCELLED or (order.driver_id and order.driver_id != self.driver_id):
            if self.status in (RideStatus.ACCEPTING, RideStatus.ONGOING):
                self._notify(f"{self.vertical.noun} Cancelled", f"The customer cancelled this {self.vertical.noun.lower()}", destructive=True)
                self._clear_current()
                await self._unwatch()
            return
        self.current_order = order
        target = ride_status_for(order.status)
        if target in (RideStatus.ONGOING, RideStatus.COMPLETED) and target != self.status and can_transition(self.status, target):
            self._set_status(target)

    async def _notify_customer(self, order: Order, status: OrderStatus):
        message = customer_message(self.vertical, status)
        if message is None or not order.customer_id:
            return
        title, body, severity = message
        await self.backend.notifier.notify_user(order.customer_id, title, body, severity)

    # operations

    async def accept_order(self, order: Order) -> bool:
        async with self._guard("accept") as go:
            if not go:
                return False
            if self.status != RideStatus.SEARCHING:
                self._notify("Error", f"Finish your current {self.vertical.noun.lower()} first", destructive=True)
                return False
            try:
                accepted = await self._claim(order)
            except AcceptConflictError:
                self.pending.remove(order.id)
                self._notify(f"{self.vertical.noun} Unavailable", f"This {self.vertical.noun.lower()} is no longer available", destructive=True)
                return False
            except OrderUnavailableError as e:
                self.pending.remove(order.id)
                logger.info("accept_order_unavailable: driver=%s order=%s status=%s", self.driver_id, order.id, e.status)
                self._notify(f"{self.vertical.noun} Unavailable", f"This {self.vertical.noun.lower()} is no longer available", destructive=True)
                return False
            except BackendError as e:
                logger.error("accept_order_failed: driver=%s order=%s error=%s", self.driver_id, order.id, e)
                self._notify("Error", f"Failed to accept {self.vertical.noun.lower()}. Please try again.", destructive=True)
                return False

            self.pending.remove(order.id)
            self.current_order = accepted
            self._set_status(RideStatus.ACCEPTING)
            await self._watch(accepted)
            if self.vertical.service_type == ServiceType.UNISEND:
                self._notify("Delivery Accepted", f"Pick up the package at {accepted.pickup_address}")
            else:
                self._notify("Ride Accepted", f"Picking up customer at {accepted.pickup_address}")
            await self._notify_customer(accepted, OrderStatus.ACCEPTED)
            return True

    async def _claim(self, order: Order) -> Order:
        """Conditional write: only a still-pending, unclaimed row is taken."""
        table = order.source.value
        rows = await self.backend.store.update(
            table,
            {"driver_id": self.driver_id, "status": models.ORDER_ACCEPTED},
            {"id": order.id, "status": models.ORDER_PENDING, "driver_id": None},
        )
        claimed = [r for r in rows if str(r.get("driver_id")) == self.driver_id and r.get("status") == models.ORDER_ACCEPTED]
        if claimed:
            logger.info("accept_order: driver=%s order=%s table=%s", self.driver_id, order.id, table)
            return adapt_row(order.source, claimed[0])

        current = await self.aggregator.fetch_order(order.source, order.id)
        if current is None:
            raise OrderUnavailableError("accept", order.id)
        if current.status.value in models.TERMINAL_STATUSES:
            raise OrderUnavailableError("accept", order.id, current.status.value)
        logger.info("accept_order_conflict: driver=%s order=%s holder=%s", self.driver_id, order.id, current.driver_id)
        raise AcceptConflictError(order.id)

    async def decline_order(self, order: Order) -> bool:
        """Hide an order from this driver; the order stays pending for others."""
        self.pending.remove(order.id)
        remote_ok = await self.ledger.record_declined(self.driver_id, order.id)
        self._notify(f"{self.vertical.noun} declined", f"You've declined this {self.vertical.noun.lower()} request")
        return remote_ok

    async def _advance(self, operation: str, expected: OrderStatus, next_backend: OrderStatus) -> Order:
        """Move the current order's backend status.

        Raises OrderUnavailableError when the row left `expected` without us.
        """
        order = self.current_order
        rows = await self.backend.store.update(
            order.source.value,
            {"status": next_backend.value},
            {"id": order.id, "driver_id": self.driver_id, "status": expected.value},
        )
        if rows:
            return adapt_row(order.source, rows[0])
        current = await self.aggregator.fetch_order(order.source, order.id)
        if current is not None and current.status == next_backend and current.driver_id == self.driver_id:
            return current
        raise OrderUnavailableError(operation, order.id, current.status.value if current else None)

    def _lost_current(self, e: OrderUnavailableError):
        """The order was cancelled or removed under us; go back to searching."""
        logger.info("driver_order_lost: driver=%s order=%s status=%s", self.driver_id, e.order_id, e.status)
        self._notify(f"{self.vertical.noun} Unavailable", f"This {self.vertical.noun.lower()} was cancelled or is no longer available", destructive=True)
        if self.status != RideStatus.SEARCHING:
            self._clear_current()

    async def complete_pickup(self) -> bool:
        async with self._guard("pickup") as go:
            if not go or self.current_order is None:
                return False
            if self.status == RideStatus.ONGOING:
                return True
            if self.status != RideStatus.ACCEPTING:
                return False
            try:
                updated = await self._advance("pickup", OrderStatus.ACCEPTED, OrderStatus.IN_PROGRESS)
            except OrderUnavailableError as e:
                self._lost_current(e)
                await self._unwatch()
                return False
            except BackendError as e:
                logger.error("complete_pickup_failed: driver=%s order=%s error=%s", self.driver_id, self.current_order.id, e)
                self._notify("Error", f"Failed to update {self.vertical.noun.lower()} status", destructive=True)
                return False
            if self.current_order is None:
                # cancelled by a push while the write was in flight
                return False
            self.current_order = updated
            self._set_status(RideStatus.ONGOING)
            if self.vertical.service_type == ServiceType.UNISEND:
                self._notify("Package Picked Up", f"Heading to {updated.delivery_address}")
            else:
                self._notify("Customer Picked Up", f"Heading to {updated.delivery_address}")
            await self._notify_customer(updated, OrderStatus.IN_PROGRESS)
            return True

    async def complete_order(self) -> bool:
        async with self._guard("complete") as go:
            if not go or self.current_order is None:
                return False
            if self.status == RideStatus.COMPLETED:
                return True
            if self.status != RideStatus.ONGOING:
                return False
            try:
                updated = await self._advance("complete", OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED)
            except OrderUnavailableError as e:
                self._lost_current(e)
                await self._unwatch()
                return False
            except BackendError as e:
                logger.error("complete_order_failed: driver=%s order=%s error=%s", self.driver_id, self.current_order.id, e)
                self._notify("Error", f"Failed to complete {self.vertical.noun.lower()}", destructive=True)
                return False
            if self.current_order is None:
                return False
            self.current_order = updated
            self._set_status(RideStatus.COMPLETED)
            await self._unwatch()
            self._notify(f"{self.vertical.noun} Completed", f"You earned ${updated.total_amount:.2f}")
            await self._notify_customer(updated, OrderStatus.COMPLETED)
            await self._record_earnings(updated)
            return True

    async def _record_earnings(self, order: Order):
        try:
            # deliveries earn money but do not count as rides
            rides = 1 if self.vertical.service_type == ServiceType.UNIMOVE else 0
            await self.backend.stats.record_completion(self.driver_id, rides, order.total_amount)
        except BackendError as e:
            # the order is already completed; stats are reconciled server-side
            logger.error("record_earnings_failed: driver=%s order=%s error=%s", self.driver_id, order.id, e)

    async def find_new_order(self) -> bool:
        """Local reset after completion; no backend call."""
        if self.status == RideStatus.SEARCHING:
            return True
        if self.status != RideStatus.COMPLETED:
            self._notify("Error", f"Finish your current {self.vertical.noun.lower()} first", destructive=True)
            return False
        self._clear_current()
        await self._unwatch()
        return True

    async def history(self) -> list[Order]:
        rows = await self.backend.store.select(
            "orders", {"driver_id": self.driver_id, "service_type": self.vertical.service_type.value}, newest_first=True,
        )
        return [to_order(r) for r in rows]
