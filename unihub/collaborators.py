"""Side effects the dispatch core triggers but does not own.

Customer notifications, driver statistics/earnings and payment capture. Each
is a small class over the store so tests can swap in a fake.
"""
from datetime import datetime, timezone
from typing import Literal, Optional, Protocol
import asyncio
import logging

from sqlalchemy import insert, update
from sqlalchemy.exc import SQLAlchemyError

from . import models
from .db import OrderStore
from .errors import BackendUnavailableError

logger = logging.getLogger(__name__)

Severity = Literal["success", "error", "info", "warning"]


class Notifier:
    """Enqueues durable, user-visible notification records."""

    def __init__(self, store: OrderStore):
        self.store = store

    async def notify_user(self, user_id: str, title: str, message: str, severity: Severity = "info", data: Optional[dict] = None) -> bool:
        try:
            await self.store.insert("notifications", {
                "user_id": user_id,
                "title": title,
                "message": message,
                "type": severity,
                "data": data,
                "is_read": False,
            })
        except BackendUnavailableError as e:
            logger.error("notify_user_failed: user=%s title=%s error=%s", user_id, title, e)
            return False
        logger.info("notify_user: user=%s title=%s", user_id, title)
        return True


class DriverStatsService:
    """Driver ride counts and earnings, kept in `driver_stats`."""

    def __init__(self, store: OrderStore):
        self.store = store

    async def _bump(self, driver_id: str, rides: int, earnings: float):
        t = models.driver_stats
        now = datetime.now(timezone.utc)
        try:
            async with self.store.engine.begin() as conn:
                res = await conn.execute(
                    update(t)
                    .where(t.c.driver_id == driver_id)
                    .values(total_rides=t.c.total_rides + rides, total_earnings=t.c.total_earnings + earnings, updated_at=now)
                )
                if res.rowcount == 0:
                    await conn.execute(
                        insert(t).values(driver_id=driver_id, total_rides=rides, total_earnings=earnings, updated_at=now)
                    )
        except SQLAlchemyError as e:
            raise BackendUnavailableError("driver_stats", str(e)) from e

    async def record_completion(self, driver_id: str, rides: int, amount: float):
        """Ride count and earnings for one completed order, in one transaction."""
        await self._bump(driver_id, rides, amount)
        logger.info("record_completion: driver=%s rides=%d amount=%.2f", driver_id, rides, amount)

    async def get(self, driver_id: str) -> Optional[dict]:
        rows = await self.store.select("driver_stats", {"driver_id": driver_id})
        return rows[0] if rows else None


class PaymentGateway(Protocol):
    async def capture(self, transaction_id: str) -> dict: ...


class SimulatedPaymentGateway:
    """Stands in for a real processor: every capture succeeds after a delay."""

    def __init__(self, store: OrderStore, delay_sec: float = 1.0):
        self.store = store
        self.delay_sec = delay_sec

    async def capture(self, transaction_id: str) -> dict:
        # small delay to simulate external call
        if self.delay_sec > 0:
            await asyncio.sleep(self.delay_sec)
        rows = await self.store.update(
            "ride_transactions",
            {
                "payment_status": models.PAY_COMPLETED,
                "provider_response": {"provider": "simulated", "id": f"pay_{transaction_id}"},
            },
            {"id": transaction_id, "payment_status": models.PAY_PENDING},
        )
        logger.info("capture: transaction=%s marked %s", transaction_id, models.PAY_COMPLETED if rows else "unchanged")
        if rows:
            return rows[0]
        return await self.store.fetch_one("ride_transactions", transaction_id) or {}
