"""Change-data-capture push channels.

The store publishes a `ChangeEvent` after every successful insert/update. A
`Channel` groups handlers scoped by table, event type and an equality filter
on the row; it only receives events between `subscribe()` and
`remove_channel()`.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol
import asyncio
import json
import logging

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
ALL_EVENTS = frozenset({INSERT, UPDATE})


@dataclass
class ChangeEvent:
    table: str
    type: str
    new: dict
    old: Optional[dict] = None

    def to_json(self) -> str:
        return json.dumps({"table": self.table, "type": self.type, "new": self.new, "old": self.old}, default=str)

    @classmethod
    def from_json(cls, payload: str) -> "ChangeEvent":
        data = json.loads(payload)
        return cls(table=data["table"], type=data["type"], new=data.get("new") or {}, old=data.get("old"))


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass
class _Binding:
    table: str
    events: frozenset
    row_filter: Mapping[str, Any]
    handler: ChangeHandler

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.type not in self.events:
            return False
        return all(str(event.new.get(k)) == str(v) for k, v in self.row_filter.items())


@dataclass
class Channel:
    name: str
    bindings: list = field(default_factory=list)

    def on(self, table: str, handler: ChangeHandler, events=ALL_EVENTS, row_filter: Optional[Mapping[str, Any]] = None) -> "Channel":
        if isinstance(events, str):
            events = {events}
        self.bindings.append(_Binding(table=table, events=frozenset(events), row_filter=dict(row_filter or {}), handler=handler))
        return self

    async def dispatch(self, event: ChangeEvent) -> None:
        for binding in self.bindings:
            if not binding.matches(event):
                continue
            try:
                await binding.handler(event)
            except Exception:
                # a failing handler must not break delivery to other channels
                logger.exception("realtime_handler_failed: channel=%s table=%s", self.name, event.table)


class RealtimeHub(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...

    def channel(self, name: str) -> Channel: ...

    async def subscribe(self, channel: Channel) -> Channel: ...

    async def remove_channel(self, channel: Channel) -> None: ...

    def active_channels(self) -> list[Channel]: ...

    async def close(self) -> None: ...


class InMemoryRealtime:
    """Single-process hub: publishing awaits every matching handler."""

    def __init__(self):
        self._channels: list[Channel] = []

    def channel(self, name: str) -> Channel:
        return Channel(name=name)

    async def subscribe(self, channel: Channel) -> Channel:
        if channel not in self._channels:
            self._channels.append(channel)
        logger.debug("realtime_subscribed: channel=%s", channel.name)
        return channel

    async def remove_channel(self, channel: Channel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
            logger.debug("realtime_removed: channel=%s", channel.name)

    def active_channels(self) -> list[Channel]:
        return list(self._channels)

    async def publish(self, event: ChangeEvent) -> None:
        # snapshot: handlers may add or remove channels
        for channel in list(self._channels):
            if channel in self._channels:
                await channel.dispatch(event)

    async def close(self) -> None:
        self._channels.clear()


class RedisRealtime(InMemoryRealtime):
    """Fan events out through Redis pub/sub so every process sees every change.

    Events are published on `realtime:<table>`; a single listener task feeds
    received events to the local channels.
    """

    PREFIX = "realtime:"

    def __init__(self, redis_client: Redis):
        super().__init__()
        self.redis = redis_client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def _ensure_listener(self):
        if self._listener is not None:
            return
        self._pubsub = self.redis.pubsub()
        await self._pubsub.psubscribe(f"{self.PREFIX}*")
        self._listener = asyncio.create_task(self._listen())
        logger.info("realtime_listener_started")

    async def _listen(self):
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("realtime_listener_error: %s", e)
                await asyncio.sleep(1.0)
                continue
            if not message or message.get("type") != "pmessage":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode()
            try:
                event = ChangeEvent.from_json(data)
            except (ValueError, KeyError, TypeError):
                logger.warning("realtime_bad_payload: %r", data)
                continue
            await InMemoryRealtime.publish(self, event)

    async def subscribe(self, channel: Channel) -> Channel:
        await self._ensure_listener()
        return await super().subscribe(channel)

    async def publish(self, event: ChangeEvent) -> None:
        await self.redis.publish(f"{self.PREFIX}{event.table}", event.to_json())

    async def close(self) -> None:
        await super().close()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
