import logging

from .cache import KeyValueStore, declined_key
from .db import OrderStore
from .errors import BackendError, DuplicateKeyError

logger = logging.getLogger(__name__)


class DeclinedOrderLedger:
    """Per-driver "do not offer again" set for one order type.

    The local cache is written first and stays authoritative for this device;
    the `driver_declined_orders` table carries declines across devices. A
    remote failure never un-hides an order the cache already knows about.
    """

    def __init__(self, store: OrderStore, cache: KeyValueStore, order_type: str):
        self.store = store
        self.cache = cache
        self.order_type = order_type

    async def record_declined(self, driver_id: str, order_id: str) -> bool:
        """Returns True when the remote write landed (or already existed)."""
        key = declined_key(self.order_type, driver_id)
        try:
            local = await self.cache.get_ids(key)
            if order_id not in local:
                local.append(order_id)
                await self.cache.set_ids(key, local)
        except BackendError as e:
            logger.error("record_declined_cache_failed: driver=%s order=%s error=%s", driver_id, order_id, e)

        try:
            await self.store.insert("driver_declined_orders", {
                "driver_id": driver_id,
                "order_id": order_id,
                "order_type": self.order_type,
            })
        except DuplicateKeyError:
            logger.debug("record_declined: driver=%s order=%s already recorded", driver_id, order_id)
        except BackendError as e:
            logger.error("record_declined_remote_failed: driver=%s order=%s error=%s", driver_id, order_id, e)
            return False
        logger.info("record_declined: driver=%s order=%s type=%s", driver_id, order_id, self.order_type)
        return True

    async def get_declined(self, driver_id: str) -> set[str]:
        key = declined_key(self.order_type, driver_id)
        try:
            local = await self.cache.get_ids(key)
        except BackendError as e:
            logger.error("get_declined_cache_failed: driver=%s error=%s", driver_id, e)
            local = []

        try:
            rows = await self.store.select(
                "driver_declined_orders",
                {"driver_id": driver_id, "order_type": self.order_type},
                columns=["order_id"],
            )
        except BackendError as e:
            logger.warning("get_declined_remote_failed: driver=%s error=%s, using local set", driver_id, e)
            return set(local)

        merged = list(dict.fromkeys([*local, *(str(r["order_id"]) for r in rows)]))
        if len(merged) != len(local):
            try:
                await self.cache.set_ids(key, merged)
            except BackendError as e:
                logger.error("get_declined_cache_write_failed: driver=%s error=%s", driver_id, e)
        return set(merged)
