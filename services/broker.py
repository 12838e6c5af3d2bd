"""
Broker Connection (Redis pub/sub)

Premium ticks are produced by an external worker and published to a Redis
channel. This module owns the process-wide Redis handle and hands out one
dedicated subscriber per live stream connection.

Ownership:
    BrokerConnection is created once in the FastAPI lifespan, stored on
    app.state.broker and closed at shutdown. Nothing in this module is a
    module-level singleton.

    connection = BrokerConnection(settings.redis_dsn)
    subscriber = connection.create_subscriber()
    subscriber.on_message = lambda channel, data: print(channel, data)
    count = await subscriber.subscribe("kimchi:premium")
    ...
    await subscriber.disconnect()
    await connection.close()

A Redis connection in subscribe mode cannot issue other commands, which is
why each subscriber gets its own client instead of sharing the publisher.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.config import settings
from core.logging import get_logger


logger = get_logger(__name__)

MessageCallback = Callable[[str, str], None]
ErrorCallback = Callable[[Exception], None]


class BrokerSubscriber(ABC):
    """
    One channel subscription bound to one stream connection.

    Attributes:
        on_message: Called as on_message(channel, raw_message) for every message
        on_error: Called once if the subscription breaks after subscribe() succeeded
    """

    def __init__(self):
        self.on_message: Optional[MessageCallback] = None
        self.on_error: Optional[ErrorCallback] = None

    @abstractmethod
    async def subscribe(self, channel: str) -> int:
        """
        Subscribe to a channel.

        Returns:
            int: Number of channels this subscriber is now subscribed to

        Raises:
            Exception: If the broker is unreachable or rejects the subscription
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Unsubscribe and release the connection. Safe to call more than once."""
        ...

    def _dispatch(self, channel: str, data: str) -> None:
        if self.on_message is None:
            return
        try:
            self.on_message(channel, data)
        except Exception as e:
            logger.error(f"Error handling message from {channel}: {e}")


class RedisSubscriber(BrokerSubscriber):
    """
    Redis pub/sub subscriber with a background listener task.

    Example:
        >>> subscriber = RedisSubscriber(redis.from_url("redis://localhost:6379/0", decode_responses=True))
        >>> subscriber.on_message = handle
        >>> await subscriber.subscribe("kimchi:premium")
        1
    """

    def __init__(self, client: "redis.Redis", confirm_timeout: float = 5.0):
        super().__init__()
        self.client = client
        self.confirm_timeout = confirm_timeout
        self.pubsub = client.pubsub()
        self._listener: Optional[asyncio.Task] = None
        self._closed = False

    async def subscribe(self, channel: str) -> int:
        await self.pubsub.subscribe(channel)
        count = await self._await_confirmation(channel)

        self._listener = asyncio.create_task(self._listen(channel))
        logger.info(f"Subscribed to Redis channel: {channel} (count={count})")
        return count

    async def _await_confirmation(self, channel: str) -> int:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TimeoutError(f"No subscribe confirmation for {channel} within {self.confirm_timeout}s")

            message = await self.pubsub.get_message(timeout=remaining)
            if message and message.get("type") == "subscribe":
                return int(message.get("data") or 0)

    async def _listen(self, channel: str) -> None:
        try:
            async for message in self.pubsub.listen():
                if message.get("type") == "message":
                    self._dispatch(message.get("channel", channel), message.get("data"))
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as e:
            if self._closed:
                return
            logger.error(f"Redis listener for {channel} stopped: {e}")
            if self.on_error is not None:
                self.on_error(e)

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        # each step runs even if an earlier one fails on a dead connection
        for step in (self.pubsub.unsubscribe, self.pubsub.aclose, self.client.aclose):
            try:
                await step()
            except (RedisError, OSError) as e:
                logger.warning(f"Error while releasing Redis subscriber ({step.__name__}): {e}")


class BrokerConnection:
    """
    Process-wide broker handle.

    The publisher client is created lazily on first use; subscribers get a
    fresh client each.

    Attributes:
        url: Redis URL (defaults to settings.redis_dsn)
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.redis_dsn
        self._publisher: Optional["redis.Redis"] = None

    @property
    def publisher(self) -> "redis.Redis":
        if self._publisher is None:
            self._publisher = redis.from_url(self.url, decode_responses=True)
            logger.info("Redis publisher client created")
        return self._publisher

    def create_subscriber(self) -> BrokerSubscriber:
        """Dedicated subscriber for one stream connection."""
        return RedisSubscriber(redis.from_url(self.url, decode_responses=True))

    async def ping(self) -> bool:
        """True if the broker answers PING."""
        try:
            return bool(await self.publisher.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._publisher is not None:
            await self._publisher.aclose()
            self._publisher = None
            logger.info("Redis publisher client closed")
