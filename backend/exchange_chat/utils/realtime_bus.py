import asyncio
import logging
from typing import Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from exchange_chat.config import get_settings
from exchange_chat.utils.errors import TransientIO

logger = logging.getLogger(__name__)


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class _LocalSubscription:

    def __init__(self, queues: Dict[str, Set[asyncio.Queue]], channel: str) -> None:
        self._queues = queues
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        queues.setdefault(channel, set()).add(self._queue)

    async def next_message(self, timeout: Optional[float] = None) -> Optional[str]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def cancel(self) -> None:
        listeners = self._queues.get(self._channel)
        if listeners is not None:
            listeners.discard(self._queue)
            if not listeners:
                del self._queues[self._channel]


class LocalBus:
    """In-process fan-out, used when no Redis is configured (single worker)."""

    enabled = False

    def __init__(self) -> None:
        self._queues: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str) -> _LocalSubscription:
        return _LocalSubscription(self._queues, channel)

    def listener_count(self, channel: str) -> int:
        return len(self._queues.get(channel, ()))

    async def close(self) -> None:
        self._queues.clear()


class _RedisSubscription:

    def __init__(self, pubsub, channel: str) -> None:
        self._pubsub = pubsub
        self._channel = channel

    async def next_message(self, timeout: Optional[float] = None) -> Optional[str]:
        try:
            msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        except RedisError as exc:
            raise TransientIO("Realtime bus unavailable") from exc
        if not msg or msg.get("type") != "message":
            return None
        data = msg.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return data

    async def cancel(self) -> None:
        try:
            await self._pubsub.unsubscribe(self._channel)
        except RedisError as exc:
            logger.debug("unsubscribe from %s failed: %s", self._channel, exc)
        finally:
            await self._pubsub.aclose()


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._redis.publish(channel, message)
        except RedisError as exc:
            raise TransientIO("Realtime bus unavailable") from exc

    async def subscribe(self, channel: str) -> _RedisSubscription:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as exc:
            await pubsub.aclose()
            raise TransientIO("Realtime bus unavailable") from exc
        return _RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if url:
        _bus = RedisBus(url)
        logger.info("Realtime bus: redis")
    else:
        _bus = LocalBus()
        logger.info("Realtime bus: in-process")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
