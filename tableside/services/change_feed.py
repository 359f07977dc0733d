"""
Change notifications for device session rows.

Writers publish a ``SessionChange`` after every committed write; devices
subscribe per table. ``LocalChangeFeed`` delivers inside one process,
``RedisChangeFeed`` fans out through Redis pub/sub.
"""

import abc
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple
from uuid import UUID

import redis.asyncio as redis
from pydantic import ValidationError

from tableside.core.config import settings, Settings, ChangeFeedBackend
from tableside.core.logging import logger
from tableside.schemas.device_session import SessionChange

ChangeHandler = Callable[[SessionChange], Awaitable[None]]
TableKey = Tuple[str, str]


def table_key(restaurant_id: UUID, table_number: str) -> TableKey:
    return str(restaurant_id), table_number


class Subscription:
    """Handle returned by ``subscribe``; must be released on teardown."""

    def __init__(self, closer: Callable[[], Awaitable[None]]):
        self._closer = closer
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._closer()


class ChangeFeed(abc.ABC):
    @abc.abstractmethod
    async def publish(self, change: SessionChange) -> None: ...

    @abc.abstractmethod
    async def subscribe(
        self,
        restaurant_id: UUID,
        table_number: str,
        handler: ChangeHandler,
    ) -> Subscription: ...

    async def close(self) -> None:
        return None


class LocalChangeFeed(ChangeFeed):
    """
    In-process feed.

    Each delivery runs as its own task so a publisher never waits on a
    subscriber; ``drain()`` waits until every pending delivery (including
    deliveries triggered by other deliveries) has finished.
    """

    def __init__(self):
        self._handlers: Dict[TableKey, List[ChangeHandler]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, change: SessionChange) -> None:
        key = table_key(change.restaurant_id, change.table_number)
        for handler in list(self._handlers.get(key, [])):
            task = asyncio.get_running_loop().create_task(self._deliver(handler, change))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, handler: ChangeHandler, change: SessionChange) -> None:
        try:
            await handler(change)
        except Exception:
            logger.exception(f"Change handler failed for {change.event.value} on session {change.session.id}")

    async def subscribe(
        self,
        restaurant_id: UUID,
        table_number: str,
        handler: ChangeHandler,
    ) -> Subscription:
        key = table_key(restaurant_id, table_number)
        self._handlers.setdefault(key, []).append(handler)
        logger.debug(f"Subscribed to table {key[0]}/{key[1]}")

        async def closer() -> None:
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(key, None)
            logger.debug(f"Unsubscribed from table {key[0]}/{key[1]}")

        return Subscription(closer)

    def subscriber_count(self, restaurant_id: UUID, table_number: str) -> int:
        return len(self._handlers.get(table_key(restaurant_id, table_number), []))

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        self._handlers.clear()


class RedisChangeFeed(ChangeFeed):
    """Feed backed by Redis pub/sub, one channel per table."""

    def __init__(self, client: redis.Redis, channel_prefix: str = "device_sessions"):
        self._client = client
        self._channel_prefix = channel_prefix

    @classmethod
    def from_settings(cls, config: Settings) -> "RedisChangeFeed":
        redis_kwargs = {
            "host": config.redis.host,
            "port": config.redis.port,
            "db": config.redis.db,
            "decode_responses": True,
            "socket_connect_timeout": 5,
            "max_connections": config.redis.max_connections,
        }
        # Only include password if it's actually configured
        if config.redis.password_str:
            redis_kwargs["password"] = config.redis.password_str

        client = redis.Redis(**redis_kwargs)
        logger.info(f"Redis change feed configured: {config.redis.host}:{config.redis.port}, db={config.redis.db}")
        return cls(client, channel_prefix=config.redis.channel_prefix)

    def channel(self, restaurant_id: UUID, table_number: str) -> str:
        return f"{self._channel_prefix}:{restaurant_id}:{table_number}"

    async def publish(self, change: SessionChange) -> None:
        await self._client.publish(
            self.channel(change.restaurant_id, change.table_number),
            change.model_dump_json(),
        )

    async def subscribe(
        self,
        restaurant_id: UUID,
        table_number: str,
        handler: ChangeHandler,
    ) -> Subscription:
        channel = self.channel(restaurant_id, table_number)
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        listener = asyncio.get_running_loop().create_task(self._listen(pubsub, handler))
        logger.debug(f"Subscribed to {channel}")

        async def closer() -> None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.debug(f"Unsubscribed from {channel}")

        return Subscription(closer)

    async def _listen(self, pubsub, handler: ChangeHandler) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                change = SessionChange.model_validate_json(message["data"])
            except ValidationError as e:
                logger.warning(f"Dropping malformed change message: {e.error_count()} error(s)")
                continue
            try:
                await handler(change)
            except Exception:
                logger.exception(f"Change handler failed for session {change.session.id}")

    async def close(self) -> None:
        await self._client.aclose()


def build_change_feed(config: Optional[Settings] = None) -> ChangeFeed:
    """Feed selected by ``CHANGE_FEED_BACKEND``."""
    config = config or settings
    if config.session.change_feed_backend == ChangeFeedBackend.REDIS:
        return RedisChangeFeed.from_settings(config)
    return LocalChangeFeed()


change_feed: ChangeFeed = build_change_feed()


def get_change_feed() -> ChangeFeed:
    """Dependency returning the process-wide change feed."""
    return change_feed
