import asyncio
import os
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from message_notifications.utils.logging import get_logger


logger = get_logger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]
StatusHandler = Callable[[str], None]

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"


def messages_channel() -> str:
    return os.getenv("MESSAGES_CHANNEL", "realtime:messages")


class _NoopSubscription:

    def __init__(self) -> None:
        self._stopped = asyncio.Event()

    async def run(self) -> None:
        await self._stopped.wait()

    async def cancel(self) -> None:
        self._stopped.set()


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(
        self,
        channel: str,
        on_message: MessageHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> _NoopSubscription:
        # never acknowledged: without Redis there is no live channel
        return _NoopSubscription()


class _RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: MessageHandler, on_status: Optional[StatusHandler]) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._on_status = on_status
        self._running = True
        self._started = False
        self._closed = False

    def _status(self, status: str) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status)
        except Exception:
            logger.exception("status callback failed", extra={"channel": self._channel, "status": status})

    async def run(self) -> None:
        self._started = True
        try:
            while self._running:
                try:
                    msg = await self._pubsub.get_message(ignore_subscribe_messages=False, timeout=1.0)
                except RedisError:
                    if not self._running:
                        break
                    logger.warning("realtime channel read failed", extra={"channel": self._channel}, exc_info=True)
                    self._status(CHANNEL_ERROR)
                    await asyncio.sleep(0.5)
                    continue
                if not msg or not self._running:
                    continue
                kind = msg.get("type")
                if kind == "subscribe":
                    self._status(SUBSCRIBED)
                elif kind == "message":
                    try:
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await self._on_message(data)
                    except Exception:
                        logger.exception("realtime handler failed", extra={"channel": self._channel})
        except Exception:
            if self._running:
                logger.exception("realtime channel loop stopped", extra={"channel": self._channel})
                self._status(CHANNEL_ERROR)
        finally:
            await self._close()

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        # a running loop closes the pubsub itself once it leaves get_message
        if not self._started:
            await self._close()
        self._status(CLOSED)

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError:
            logger.debug("unsubscribe failed", extra={"channel": self._channel}, exc_info=True)


class RedisBus:

    enabled = True

    def __init__(self, client: "redis.Redis") -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisBus":
        return cls(redis.from_url(url))

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(
        self,
        channel: str,
        on_message: MessageHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> _RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSubscription(pubsub, channel, on_message, on_status)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = os.getenv("REDIS_URL")
    if not url:
        logger.info("REDIS_URL not set, realtime channel disabled")
        _bus = NoopBus()
        return _bus
    _bus = RedisBus.from_url(url)
    return _bus


def set_bus(bus) -> None:
    global _bus
    _bus = bus
