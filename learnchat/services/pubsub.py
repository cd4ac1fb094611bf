"""
Publish/subscribe backends for live fan-out.

InMemoryPubSub only reaches subscribers inside this process and is meant for
single-instance deployments and tests. RedisPubSub reaches every process
connected to the same Redis, which is what horizontal scaling needs.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict], Awaitable[None]]


class PubSub:
    """Interface shared by the backends."""

    async def publish(self, channel: str, message: dict) -> None:
        raise NotImplementedError

    async def subscribe(self, channel: str, handler: Handler) -> None:
        raise NotImplementedError

    async def unsubscribe(self, channel: str, handler: Handler) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryPubSub(PubSub):
    def __init__(self):
        self._handlers: Dict[str, Set[Handler]] = {}

    async def publish(self, channel: str, message: dict) -> None:
        handlers = list(self._handlers.get(channel, ()))
        if not handlers:
            return
        # Serialise like the networked backend so subscribers never share mutable state with the publisher
        payload = json.dumps(message)
        for handler in handlers:
            try:
                await handler(channel, json.loads(payload))
            except Exception:
                logger.exception(f"Subscriber failed on channel {channel}")

    async def subscribe(self, channel: str, handler: Handler) -> None:
        self._handlers.setdefault(channel, set()).add(handler)

    async def unsubscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers.get(channel)
        if not handlers:
            return
        handlers.discard(handler)
        if not handlers:
            self._handlers.pop(channel, None)

    async def close(self) -> None:
        self._handlers.clear()


class RedisPubSub(PubSub):
    """One Redis pub/sub connection per process; channels are subscribed on demand."""

    def __init__(self, redis_client: Any, poll_timeout: float = 1.0):
        self.redis = redis_client
        self._pubsub = redis_client.pubsub(ignore_subscribe_messages=True)
        self._handlers: Dict[str, Set[Handler]] = {}
        self._listener: Optional[asyncio.Task] = None
        self._poll_timeout = poll_timeout
        self._closed = False

    async def publish(self, channel: str, message: dict) -> None:
        await self.redis.publish(channel, json.dumps(message))

    async def subscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers.get(channel)
        if handlers is None:
            handlers = set()
            self._handlers[channel] = handlers
            await self._pubsub.subscribe(channel)
        handlers.add(handler)
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())

    async def unsubscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers.get(channel)
        if not handlers:
            return
        handlers.discard(handler)
        if not handlers:
            self._handlers.pop(channel, None)
            await self._pubsub.unsubscribe(channel)

    async def _listen(self) -> None:
        while not self._closed:
            try:
                item = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Redis pub/sub listener error")
                await asyncio.sleep(self._poll_timeout)
                continue
            if item is None or item.get("type") != "message":
                continue
            channel = item["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode()
            try:
                data = json.loads(item["data"])
            except (TypeError, ValueError):
                logger.warning(f"Dropping malformed pub/sub payload on {channel}")
                continue
            for handler in list(self._handlers.get(channel, ())):
                try:
                    await handler(channel, data)
                except Exception:
                    logger.exception(f"Error processing pubsub message on {channel}")

    async def close(self) -> None:
        self._closed = True
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        self._handlers.clear()
        await self._pubsub.aclose()
