import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from realtime_chat.errors import TransportDisconnected


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


class LocalBus:
    """In-process pub/sub used when no Redis URL is configured."""

    enabled = True

    def __init__(self) -> None:
        self._channels: Dict[str, Set[asyncio.Queue]] = {}
        self._presence: Dict[str, float] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._channels.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        queue: asyncio.Queue = asyncio.Queue()
        self._channels.setdefault(channel, set()).add(queue)
        channels = self._channels

        class _Sub:
            async def run(self_inner):
                while True:
                    message = await queue.get()
                    await on_message(message)

            async def cancel(self_inner):
                subscribers = channels.get(channel)
                if subscribers is None:
                    return
                subscribers.discard(queue)
                if not subscribers:
                    channels.pop(channel, None)

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        self._presence[user_id] = asyncio.get_running_loop().time() + ttl_seconds

    async def is_present(self, user_id: str) -> bool:
        expires = self._presence.get(user_id)
        return expires is not None and expires > asyncio.get_running_loop().time()

    async def close(self) -> None:
        self._channels.clear()


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        import redis.asyncio as redis

        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        from redis.exceptions import RedisError

        try:
            await self._redis.publish(channel, message)
        except (RedisError, OSError) as exc:
            raise TransportDisconnected(channel, exc) from exc

    async def subscribe(self, channel: str, on_message: OnMessage):
        from redis.exceptions import ConnectionError as RedisConnectionError
        from redis.exceptions import TimeoutError as RedisTimeoutError

        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            await pubsub.aclose()
            raise TransportDisconnected(channel, exc) from exc

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
                        logger.warning("Redis subscription on %s dropped: %s", channel, exc)
                        raise TransportDisconnected(channel, exc) from exc
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                if not self_inner._running:
                    return
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
                    logger.debug("Ignoring unsubscribe failure on %s: %s", channel, exc)
                await pubsub.aclose()

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        from redis.exceptions import RedisError

        key = f"presence:{user_id}"
        try:
            await self._redis.set(key, "online", ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            raise TransportDisconnected(key, exc) from exc

    async def is_present(self, user_id: str) -> bool:
        from redis.exceptions import RedisError

        key = f"presence:{user_id}"
        try:
            ttl = await self._redis.ttl(key)
        except (RedisError, OSError) as exc:
            raise TransportDisconnected(key, exc) from exc
        return bool(ttl and ttl > 0)

    async def close(self) -> None:
        await self._redis.aclose()


def create_bus(url: Optional[str]):
    if not url:
        logger.info("REDIS_URL not set; using in-process bus")
        return LocalBus()
    return RedisBus(url)
