from dataclasses import dataclass
from datetime import timezone
from typing import Optional
import logging

from . import models
from .adapters import adapt_row
from .db import OrderStore
from .declined import DeclinedOrderLedger
from .errors import BackendError
from .schemas import Order, OrderSource, ServiceType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceQuery:
    source: OrderSource
    # service types matched on this table; None also matches rows that never set one
    service_types: tuple


@dataclass(frozen=True)
class Vertical:
    service_type: ServiceType
    order_type: str
    sources: tuple
    noun: str  # "Ride" / "Delivery", used in user-facing text


RIDE = Vertical(
    service_type=ServiceType.UNIMOVE,
    order_type="unimove",
    sources=(
        SourceQuery(OrderSource.ORDERS, ("unimove",)),
        SourceQuery(OrderSource.RIDE_REQUESTS, ("unimove", None)),
    ),
    noun="Ride",
)

DELIVERY = Vertical(
    service_type=ServiceType.UNISEND,
    order_type="unisend",
    sources=(SourceQuery(OrderSource.ORDERS, ("unisend",)),),
    noun="Delivery",
)

VERTICALS = {v.service_type: v for v in (RIDE, DELIVERY)}


def vertical_for(service_type) -> Vertical:
    return VERTICALS[ServiceType(service_type)]


def _created_key(order: Order) -> float:
    if order.created_at is None:
        return 0.0
    ts = order.created_at
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def newest_first(orders: list[Order]) -> list[Order]:
    return sorted(orders, key=_created_key, reverse=True)


class PendingOrderAggregator:
    """Unclaimed work for one vertical, merged from every source table."""

    def __init__(self, store: OrderStore, ledger: DeclinedOrderLedger, vertical: Vertical):
        self.store = store
        self.ledger = ledger
        self.vertical = vertical

    def pending_filter(self, query: SourceQuery) -> dict:
        return {
            "status": models.ORDER_PENDING,
            "driver_id": None,
            "service_type": query.service_types,
        }

    async def _fetch_source(self, query: SourceQuery) -> list[Order]:
        try:
            rows = await self.store.select(query.source.value, self.pending_filter(query), newest_first=True)
        except BackendError as e:
            # one failing source contributes nothing; the other still counts
            logger.error("fetch_pending_source_failed: source=%s error=%s", query.source.value, e)
            return []
        return [adapt_row(query.source, row) for row in rows]

    async def fetch_pending(self, driver_id: Optional[str] = None) -> list[Order]:
        combined: list[Order] = []
        for query in self.vertical.sources:
            combined.extend(await self._fetch_source(query))

        if driver_id:
            declined = await self.ledger.get_declined(driver_id)
            if declined:
                before = len(combined)
                combined = [o for o in combined if o.id not in declined]
                logger.debug("fetch_pending: driver=%s filtered %d declined", driver_id, before - len(combined))

        result = newest_first(combined)
        logger.info("fetch_pending: vertical=%s driver=%s count=%d", self.vertical.order_type, driver_id, len(result))
        return result

    def is_eligible(self, order: Order) -> bool:
        if not order.is_unclaimed:
            return False
        return any(
            q.source == order.source and (order.service_type.value in q.service_types)
            for q in self.vertical.sources
        )

    async def fetch_order(self, source: OrderSource, order_id: str) -> Optional[Order]:
        row = await self.store.fetch_one(source.value, order_id)
        return adapt_row(source, row) if row else None
