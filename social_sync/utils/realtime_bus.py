import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import redis.asyncio as redis
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as PayloadError
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from social_sync.config import Settings
from social_sync.schemas.change_event import ChangeEvent


logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], Awaitable[None]]
Filters = Optional[Dict[str, Any]]


def channel_for(table: str) -> str:
    return f"changes:{table}"


class LocalBus:
    """In-process fan-out of change events, one queue per subscription."""

    def __init__(self) -> None:
        self._subscriptions: List["_LocalSubscription"] = []

    async def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions):
            if sub.table == event.table and event.matches(sub.filters):
                sub.queue.put_nowait(event)

    async def subscribe(self, table: str, on_event: EventHandler, filters: Filters = None) -> "_LocalSubscription":
        sub = _LocalSubscription(self, table, on_event, filters)
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: "_LocalSubscription") -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await sub.cancel()


class _LocalSubscription:

    def __init__(self, bus: LocalBus, table: str, on_event: EventHandler, filters: Filters) -> None:
        self.table = table
        self.filters = filters
        self.queue: "asyncio.Queue[Optional[ChangeEvent]]" = asyncio.Queue()
        self._bus = bus
        self._on_event = on_event
        self._running = True

    async def run(self) -> None:
        while self._running:
            event = await self.queue.get()
            if event is None:
                break
            await self._on_event(event)

    async def cancel(self) -> None:
        self._running = False
        self._bus._remove(self)
        self.queue.put_nowait(None)


class RedisBus:

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, event: ChangeEvent) -> None:
        await self._redis.publish(channel_for(event.table), event.model_dump_json())

    async def subscribe(self, table: str, on_event: EventHandler, filters: Filters = None):
        channel = channel_for(table)
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except RedisError as exc:
                        logger.warning("Redis subscription on %s failed: %s", channel, exc)
                        await asyncio.sleep(0.5)
                        continue
                    if not msg or msg.get("type") != "message":
                        continue
                    data = msg.get("data")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    try:
                        event = ChangeEvent.model_validate_json(data)
                    except PayloadError:
                        logger.warning("Dropping malformed change event on %s", channel)
                        continue
                    if event.matches(filters):
                        await on_event(event)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except RedisError as exc:
                    logger.debug("Ignoring unsubscribe failure on %s: %s", channel, exc)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


def create_bus(settings: Settings):
    if settings.redis_url:
        return RedisBus(settings.redis_url)
    return LocalBus()


_OPERATION_TYPES = {"insert": "INSERT", "update": "UPDATE", "replace": "UPDATE", "delete": "DELETE"}


def _normalize(doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not doc:
        return {}
    return {key: str(value) if isinstance(value, ObjectId) else value for key, value in doc.items()}


def change_to_event(table: str, change: Dict[str, Any]) -> Optional[ChangeEvent]:
    change_type = _OPERATION_TYPES.get(change.get("operationType", ""))
    if change_type is None:
        return None
    new = _normalize(change.get("fullDocument"))
    # deletes carry only the key unless pre-images are enabled on the collection
    old = _normalize(change.get("fullDocumentBeforeChange") or change.get("documentKey"))
    return ChangeEvent(table=table, type=change_type, new=new if change_type != "DELETE" else {}, old=old)


class ChangeStreamRelay:
    """Tail MongoDB change streams and republish them as change events."""

    def __init__(self, db: AsyncIOMotorDatabase, bus, tables: Iterable[str], retry_delay: float = 1.0) -> None:
        self._db = db
        self._bus = bus
        self._tables = list(tables)
        self._retry_delay = retry_delay
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        for table in self._tables:
            self._tasks.append(asyncio.create_task(self._watch(table)))

    async def _watch(self, table: str) -> None:
        while True:
            try:
                async with self._db[table].watch(
                    full_document="updateLookup",
                    full_document_before_change="whenAvailable",
                ) as stream:
                    async for change in stream:
                        event = change_to_event(table, change)
                        if event is not None:
                            await self._bus.publish(event)
            except PyMongoError as exc:
                logger.warning("Change stream on %s interrupted: %s", table, exc)
                await asyncio.sleep(self._retry_delay)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
