import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from marketplace_chat.config import get_settings


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


def change_channel(email: str) -> str:
    return f"messages:{email}"


class InProcessBus:

    distributed = False

    def __init__(self) -> None:
        self._channels: Dict[str, List[OnMessage]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for handler in list(self._channels.get(channel, [])):
            try:
                await handler(message)
            except Exception:
                logger.exception("Subscriber on %s failed", channel)

    async def subscribe(self, channel: str, on_message: OnMessage):
        self._channels.setdefault(channel, []).append(on_message)
        bus = self

        class _Sub:
            def __init__(self_inner) -> None:
                self_inner._stopped = asyncio.Event()

            async def run(self_inner):
                await self_inner._stopped.wait()

            async def cancel(self_inner):
                handlers = bus._channels.get(channel, [])
                if on_message in handlers:
                    handlers.remove(on_message)
                if not handlers:
                    bus._channels.pop(channel, None)
                self_inner._stopped.set()

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, []))

    async def close(self) -> None:
        self._channels.clear()


class RedisBus:

    distributed = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except RedisError:
                        logger.warning("Redis read on %s failed, retrying", channel, exc_info=True)
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        try:
                            await on_message(data)
                        except Exception:
                            logger.exception("Subscriber on %s failed", channel)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except RedisError:
                    logger.warning("Redis unsubscribe from %s failed", channel, exc_info=True)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url: Optional[str] = get_settings().redis_url
    _bus = RedisBus(url) if url else InProcessBus()
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None
