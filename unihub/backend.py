from dataclasses import dataclass
import logging

from redis.asyncio import Redis

from .cache import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from .collaborators import DriverStatsService, Notifier, PaymentGateway, SimulatedPaymentGateway
from .config import Settings
from .db import OrderStore, init_db, make_engine
from .realtime import InMemoryRealtime, RealtimeHub, RedisRealtime

logger = logging.getLogger(__name__)


@dataclass
class Backend:
    """Everything the dispatch components talk to, passed in explicitly."""
    store: OrderStore
    realtime: RealtimeHub
    cache: KeyValueStore
    notifier: Notifier
    stats: DriverStatsService
    payments: PaymentGateway
    poll_interval_sec: float = 60.0
    default_ride_price: float = 5.99
    redis: Redis | None = None

    async def close(self):
        await self.realtime.close()
        await self.store.engine.dispose()
        if self.redis is not None:
            await self.redis.aclose()


def assemble_backend(engine, realtime: RealtimeHub, cache: KeyValueStore, poll_interval_sec: float = 60.0,
                     payment_delay_sec: float = 0.0, default_ride_price: float = 5.99, redis: Redis | None = None) -> Backend:
    store = OrderStore(engine, realtime)
    return Backend(
        store=store,
        realtime=realtime,
        cache=cache,
        notifier=Notifier(store),
        stats=DriverStatsService(store),
        payments=SimulatedPaymentGateway(store, delay_sec=payment_delay_sec),
        poll_interval_sec=poll_interval_sec,
        default_ride_price=default_ride_price,
        redis=redis,
    )


async def build_backend(settings: Settings, create_tables: bool = True) -> Backend:
    engine = make_engine(settings)
    if create_tables:
        await init_db(engine)

    redis_client = None
    if "redis" in (settings.REALTIME_BACKEND, settings.CACHE_BACKEND):
        redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)

    realtime = RedisRealtime(redis_client) if settings.REALTIME_BACKEND == "redis" else InMemoryRealtime()
    cache = RedisKeyValueStore(redis_client) if settings.CACHE_BACKEND == "redis" else MemoryKeyValueStore()
    logger.info(
        "build_backend: realtime=%s cache=%s poll_interval=%s",
        settings.REALTIME_BACKEND, settings.CACHE_BACKEND, settings.POLL_INTERVAL_SEC,
    )
    return assemble_backend(
        engine,
        realtime,
        cache,
        poll_interval_sec=settings.POLL_INTERVAL_SEC,
        payment_delay_sec=settings.PAYMENT_CAPTURE_DELAY_SEC,
        default_ride_price=settings.DEFAULT_RIDE_PRICE,
        redis=redis_client,
    )
