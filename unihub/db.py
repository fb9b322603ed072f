from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional
import logging

from sqlalchemy import Table, and_, desc, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from . import models
from .config import Settings
from .errors import BackendUnavailableError, DuplicateKeyError
from .realtime import INSERT, UPDATE, ChangeEvent, RealtimeHub

logger = logging.getLogger(__name__)


def make_engine(settings: Settings) -> AsyncEngine:
    url = settings.DATABASE_URL
    # Ensure the DATABASE_URL uses an async driver (asyncpg) for SQLAlchemy asyncio
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        raise RuntimeError(
            "DATABASE_URL must use an async driver for async SQLAlchemy (e.g. postgresql+asyncpg://...). "
            "Update your DATABASE_URL or set the DATABASE_URL environment variable accordingly."
        )
    if url.startswith("sqlite"):
        # one shared connection so in-memory databases survive across checkouts
        return create_async_engine(
            url,
            echo=settings.DB_ECHO,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        url,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(models.metadata.create_all)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clause(table: Table, column: str, value: Any):
    col = table.c[column]
    if value is None:
        return col.is_(None)
    if isinstance(value, (list, tuple, set, frozenset)):
        values = [v for v in value if v is not None]
        parts = [col.in_(values)] if values else []
        if None in value:
            parts.append(col.is_(None))
        return or_(*parts)
    return col == value


def _where(table: Table, where: Mapping[str, Any]):
    return and_(*[_clause(table, k, v) for k, v in where.items()])


class OrderStore:
    """Durable relational store used by every dispatch component.

    `where` mappings are equality predicates; a `None` value means IS NULL
    and a sequence means IN (with `None` in it also matching NULL). Every
    successful write is published to the realtime hub.
    """

    def __init__(self, engine: AsyncEngine, realtime: RealtimeHub):
        self.engine = engine
        self.realtime = realtime

    async def select(
        self,
        table: str,
        where: Optional[Mapping[str, Any]] = None,
        newest_first: bool = False,
        columns: Optional[Iterable[str]] = None,
    ) -> list[dict]:
        t = models.TABLES[table]
        stmt = select(*[t.c[c] for c in columns]) if columns else select(t)
        if where:
            stmt = stmt.where(_where(t, where))
        if newest_first and "created_at" in t.c:
            stmt = stmt.order_by(desc(t.c.created_at))
        try:
            async with self.engine.connect() as conn:
                res = await conn.execute(stmt)
                return [dict(r._mapping) for r in res.fetchall()]
        except SQLAlchemyError as e:
            logger.error("store_select_failed: table=%s error=%s", table, e)
            raise BackendUnavailableError(f"select:{table}", str(e)) from e

    async def fetch_one(self, table: str, row_id: str) -> Optional[dict]:
        rows = await self.select(table, {"id": row_id})
        return rows[0] if rows else None

    async def insert(self, table: str, values: Mapping[str, Any]) -> dict:
        t = models.TABLES[table]
        try:
            async with self.engine.begin() as conn:
                res = await conn.execute(insert(t).values(**values).returning(*t.c))
                row = dict(res.first()._mapping)
        except IntegrityError as e:
            logger.info("store_insert_duplicate: table=%s", table)
            raise DuplicateKeyError(f"insert:{table}", str(e.orig)) from e
        except SQLAlchemyError as e:
            logger.error("store_insert_failed: table=%s error=%s", table, e)
            raise BackendUnavailableError(f"insert:{table}", str(e)) from e
        logger.debug("store_insert: table=%s id=%s", table, row.get("id"))
        await self._publish(ChangeEvent(table=table, type=INSERT, new=row))
        return row

    async def update(self, table: str, values: Mapping[str, Any], where: Mapping[str, Any]) -> list[dict]:
        """Conditional update; returns the rows that matched `where`.

        An empty result means the predicate no longer held at write time.
        """
        t = models.TABLES[table]
        values = dict(values)
        if "updated_at" in t.c and "updated_at" not in values:
            values["updated_at"] = _utcnow()
        cond = _where(t, where)
        try:
            async with self.engine.begin() as conn:
                old_rows = {}
                if "id" in t.c:
                    old_res = await conn.execute(select(t).where(cond))
                    old_rows = {r._mapping["id"]: dict(r._mapping) for r in old_res.fetchall()}
                res = await conn.execute(update(t).where(cond).values(**values).returning(*t.c))
                rows = [dict(r._mapping) for r in res.fetchall()]
        except SQLAlchemyError as e:
            logger.error("store_update_failed: table=%s error=%s", table, e)
            raise BackendUnavailableError(f"update:{table}", str(e)) from e
        logger.debug("store_update: table=%s matched=%d", table, len(rows))
        for row in rows:
            await self._publish(ChangeEvent(table=table, type=UPDATE, new=row, old=old_rows.get(row.get("id"))))
        return rows

    async def _publish(self, event: ChangeEvent):
        try:
            await self.realtime.publish(event)
        except Exception as e:
            # the write already committed; subscribers catch up on the next poll
            logger.error("store_publish_failed: table=%s type=%s error=%s", event.table, event.type, e)
