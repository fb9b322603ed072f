"""Push + poll delivery of pending work to drivers.

Two producers feed a driver's pending list: realtime insert/update events on
every source table of a vertical, and a fixed-interval poll of the
aggregator. Neither is ordered nor exactly-once, so the consumer side is a
`PendingQueue` that merges by order id.
"""
from typing import Awaitable, Callable, Optional, Union
import asyncio
import logging

from .adapters import adapt_row
from .aggregator import PendingOrderAggregator, newest_first
from .cache import KeyValueStore, notified_key
from .errors import BackendError
from .realtime import INSERT, UPDATE, ALL_EVENTS, Channel, ChangeEvent, RealtimeHub
from .schemas import Order, OrderSource, OrderStatus

logger = logging.getLogger(__name__)

# notified ids kept per driver; older ids drop off first
NOTIFIED_ID_LIMIT = 500

OrderCallback = Callable[[Order], Union[None, Awaitable[None]]]


async def _invoke(callback: OrderCallback, order: Order):
    result = callback(order)
    if asyncio.iscoroutine(result):
        await result


class PendingQueue:
    """Driver-side pending list, merged by order id, newest first."""

    def __init__(self):
        self._orders: dict[str, Order] = {}

    def add(self, order: Order) -> bool:
        """Insert or refresh an order; True only when the id is new."""
        is_new = order.id not in self._orders
        self._orders[order.id] = order
        return is_new

    def remove(self, order_id: str) -> Optional[Order]:
        return self._orders.pop(order_id, None)

    def replace(self, orders: list[Order]):
        self._orders = {o.id: o for o in orders}

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def orders(self) -> list[Order]:
        return newest_first(list(self._orders.values()))


class BridgeSubscription:
    """Handle returned by `RealtimeEventBridge.subscribe`."""

    def __init__(self, realtime: RealtimeHub, channels: list[Channel], poll_task: Optional[asyncio.Task]):
        self.realtime = realtime
        self.channels = channels
        self.poll_task = poll_task
        self.closed = False

    async def unsubscribe(self):
        if self.closed:
            return
        self.closed = True
        if self.poll_task is not None:
            self.poll_task.cancel()
            try:
                await self.poll_task
            except asyncio.CancelledError:
                pass
        for channel in self.channels:
            await self.realtime.remove_channel(channel)
        logger.info("bridge_unsubscribed: channels=%d", len(self.channels))


class RealtimeEventBridge:
    """Surfaces newly pending orders of one vertical to a callback."""

    def __init__(self, realtime: RealtimeHub, cache: KeyValueStore, aggregator: PendingOrderAggregator,
                 poll_interval_sec: float = 60.0, notified_limit: int = NOTIFIED_ID_LIMIT):
        self.realtime = realtime
        self.cache = cache
        self.aggregator = aggregator
        self.vertical = aggregator.vertical
        self.poll_interval_sec = poll_interval_sec
        self.notified_limit = notified_limit

    def _notified_key(self, driver_id: Optional[str]) -> str:
        return notified_key(self.vertical.order_type, driver_id)

    async def _remember(self, driver_id: Optional[str], order_ids: list[str]):
        key = self._notified_key(driver_id)
        try:
            seen = await self.cache.get_ids(key)
            fresh = [i for i in order_ids if i not in seen]
            if fresh:
                await self.cache.set_ids(key, (seen + fresh)[-self.notified_limit:])
        except Exception as e:
            logger.error("bridge_remember_failed: driver=%s error=%s", driver_id, e)

    async def _is_declined(self, driver_id: Optional[str], order_id: str) -> bool:
        if not driver_id:
            return False
        return order_id in await self.aggregator.ledger.get_declined(driver_id)

    async def _handle_event(self, source: OrderSource, event: ChangeEvent, on_new_order: OrderCallback,
                            driver_id: Optional[str]):
        new = event.new or {}
        if new.get("status") != OrderStatus.PENDING.value or new.get("driver_id"):
            return
        if event.type == UPDATE and (event.old or {}).get("status") == OrderStatus.PENDING.value:
            # already pending before this update; not a new arrival
            return
        order_id = new.get("id")
        if not order_id:
            return
        try:
            # act on the full row, not the push payload
            order = await self.aggregator.fetch_order(source, str(order_id))
            if order is None or not self.aggregator.is_eligible(order):
                return
            if await self._is_declined(driver_id, order.id):
                logger.debug("bridge_skip_declined: driver=%s order=%s", driver_id, order.id)
                return
        except BackendError as e:
            logger.error("bridge_refetch_failed: source=%s order=%s error=%s", source.value, order_id, e)
            return
        logger.info("bridge_push: vertical=%s event=%s order=%s", self.vertical.order_type, event.type, order.id)
        await self._remember(driver_id, [order.id])
        await _invoke(on_new_order, order)

    async def poll_once(self, on_new_order: OrderCallback, driver_id: Optional[str] = None) -> list[Order]:
        """Run one poll cycle; returns the orders surfaced this cycle."""
        try:
            pending = await self.aggregator.fetch_pending(driver_id)
            seen = set(await self.cache.get_ids(self._notified_key(driver_id)))
        except Exception as e:
            logger.error("bridge_poll_failed: vertical=%s error=%s", self.vertical.order_type, e)
            return []
        fresh = [o for o in pending if o.id not in seen]
        if not fresh:
            return []
        logger.info("bridge_poll: vertical=%s driver=%s new=%d", self.vertical.order_type, driver_id, len(fresh))
        # oldest first, so the newest ids survive trimming
        await self._remember(driver_id, [o.id for o in reversed(fresh)])
        for order in fresh:
            try:
                await _invoke(on_new_order, order)
            except Exception:
                logger.exception("bridge_callback_failed: order=%s", order.id)
        return fresh

    async def _poll_loop(self, on_new_order: OrderCallback, driver_id: Optional[str]):
        while True:
            await asyncio.sleep(self.poll_interval_sec)
            await self.poll_once(on_new_order, driver_id)

    async def subscribe(self, on_new_order: OrderCallback, driver_id: Optional[str] = None,
                        poll: bool = True) -> BridgeSubscription:
        channels: list[Channel] = []
        for query in self.vertical.sources:
            source = query.source
            row_filter = {}
            if None not in query.service_types and len(query.service_types) == 1:
                row_filter = {"service_type": query.service_types[0]}
            for event_type in (INSERT, UPDATE):
                name = f"{self.vertical.order_type}_{source.value}_{event_type.lower()}_{driver_id or 'anonymous'}"

                async def handler(event, _source=source):
                    await self._handle_event(_source, event, on_new_order, driver_id)

                channel = self.realtime.channel(name).on(source.value, handler, events=event_type, row_filter=row_filter)
                channels.append(await self.realtime.subscribe(channel))

        poll_task = asyncio.create_task(self._poll_loop(on_new_order, driver_id)) if poll else None
        logger.info("bridge_subscribed: vertical=%s driver=%s channels=%d", self.vertical.order_type, driver_id, len(channels))
        return BridgeSubscription(self.realtime, channels, poll_task)


class OrderWatcher:
    """Scoped subscription to one order's row; yields the re-fetched Order."""

    def __init__(self, realtime: RealtimeHub, aggregator: PendingOrderAggregator):
        self.realtime = realtime
        self.aggregator = aggregator

    async def watch(self, order: Order, on_update: OrderCallback, tag: str = "order") -> BridgeSubscription:
        source = order.source

        async def handler(event: ChangeEvent):
            try:
                fresh = await self.aggregator.fetch_order(source, order.id)
            except BackendError as e:
                logger.error("order_watch_refetch_failed: order=%s error=%s", order.id, e)
                fresh = adapt_row(source, event.new)
            if fresh is not None:
                await _invoke(on_update, fresh)

        channel = self.realtime.channel(f"{tag}-{order.id}").on(
            source.value, handler, events=ALL_EVENTS, row_filter={"id": order.id},
        )
        await self.realtime.subscribe(channel)
        logger.debug("order_watch: order=%s source=%s", order.id, source.value)
        return BridgeSubscription(self.realtime, [channel], None)
